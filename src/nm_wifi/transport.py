"""Transport interface between nm-wifi and the NetworkManager daemon.

The components in this package never talk to the bus directly. They call the
operations below, which return plain Python values (variants already
unwrapped, SSIDs as ``bytes``) and raise :class:`~nm_wifi.errors.DaemonError`
carrying the daemon's error name when a call fails. Signals are delivered to
subscribers as :class:`BusSignal` records, in the order the daemon emitted
them for each object path.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

Settings = dict[str, dict[str, object]]


@dataclass(frozen=True, slots=True)
class BusSignal:
    """A signal emitted by the daemon."""

    path: str
    interface: str
    member: str
    args: tuple[object, ...] = ()


@dataclass(frozen=True, slots=True)
class SecretRequest:
    """A ``GetSecrets`` call made by the daemon to the secret agent."""

    connection_id: str
    connection_path: str
    setting_name: str
    hints: tuple[str, ...] = ()
    flags: int = 0
    ssid: bytes = b""


SignalHandler = Callable[[BusSignal], None]
SecretHandler = Callable[[SecretRequest], Mapping[str, str]]


class Subscription:
    """Handle returned by :meth:`NetworkManagerTransport.subscribe`."""

    def __init__(self, on_cancel: Callable[["Subscription"], None]) -> None:
        self._on_cancel = on_cancel
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        self._on_cancel(self)


@dataclass(slots=True)
class _SubscriberList:
    handlers: dict[Subscription, SignalHandler] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class NetworkManagerTransport:
    """Abstract interface for NetworkManager operations."""

    def __init__(self) -> None:
        self._subscribers = _SubscriberList()

    # ------------------------------- devices -------------------------------
    def list_devices(self) -> list[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_device_properties(self, device_path: str) -> dict[str, object]:  # pragma: no cover - interface only
        raise NotImplementedError

    def disconnect_device(self, device_path: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    # -------------------------------- scans --------------------------------
    def request_scan(self, device_path: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_access_points(self, device_path: str) -> list[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_access_point_properties(self, ap_path: str) -> dict[str, object]:  # pragma: no cover - interface only
        raise NotImplementedError

    # ------------------------------ profiles -------------------------------
    def list_connections(self) -> list[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_connection_settings(self, connection_path: str) -> Settings:  # pragma: no cover - interface only
        raise NotImplementedError

    def add_connection(self, settings: Settings) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    def update_connection(self, connection_path: str, settings: Settings) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete_connection(self, connection_path: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    # ----------------------------- activation ------------------------------
    def activate_connection(
        self,
        connection_path: str,
        device_path: str,
        specific_object: str = "/",
    ) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    def deactivate_connection(self, active_path: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_active_connection_properties(self, active_path: str) -> dict[str, object]:  # pragma: no cover - interface only
        raise NotImplementedError

    # ---------------------------- secret agent -----------------------------
    def register_secret_agent(self, identifier: str, handler: SecretHandler) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def unregister_secret_agent(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    # ------------------------------- signals -------------------------------
    def subscribe(self, handler: SignalHandler) -> Subscription:
        """Register ``handler`` for every daemon signal."""

        subscription = Subscription(self._unsubscribe)
        with self._subscribers.lock:
            self._subscribers.handlers[subscription] = handler
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._subscribers.lock:
            self._subscribers.handlers.pop(subscription, None)

    def _deliver(self, signal: BusSignal) -> None:
        """Hand ``signal`` to every subscriber on the calling thread."""

        with self._subscribers.lock:
            handlers: Sequence[SignalHandler] = list(self._subscribers.handlers.values())
        for handler in handlers:
            handler(signal)

    def close(self) -> None:
        with self._subscribers.lock:
            self._subscribers.handlers.clear()


__all__ = [
    "BusSignal",
    "NetworkManagerTransport",
    "SecretHandler",
    "SecretRequest",
    "Settings",
    "SignalHandler",
    "Subscription",
]
