"""Wireless device discovery and lifecycle tracking."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .errors import DaemonError, NotFoundError
from .networkmanager import NM_DEVICE_TYPE_WIFI, DeviceState, device_state_from_nm
from .transport import NetworkManagerTransport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Device:
    """A wireless device exposed by NetworkManager."""

    path: str
    interface: str
    state: DeviceState = DeviceState.UNMANAGED
    hw_address: str | None = None
    kind: str = "wifi"
    gone: bool = False

    @property
    def managed(self) -> bool:
        return self.state is not DeviceState.UNMANAGED and not self.gone

    def to_dict(self) -> dict[str, object | None]:
        return {
            "path": self.path,
            "interface": self.interface,
            "kind": self.kind,
            "state": self.state.value,
            "hw_address": self.hw_address,
        }


DeviceListener = Callable[[Device, DeviceState, DeviceState, int], None]


class DeviceRegistry:
    """Own the local mirror of NetworkManager's wireless devices.

    Entries change only through :meth:`refresh`, :meth:`discover`,
    :meth:`remove` and :meth:`apply_state`. Callers receive copies.
    """

    def __init__(self, transport: NetworkManagerTransport) -> None:
        self._transport = transport
        self._devices: dict[str, Device] = {}
        self._listeners: list[DeviceListener] = []
        self._lock = threading.Lock()

    # ------------------------------ operations -----------------------------
    def refresh(self) -> list[Device]:
        """Enumerate devices from the daemon and register the wireless ones."""

        paths = self._transport.list_devices()
        for path in paths:
            self.discover(path)
        with self._lock:
            for path, device in self._devices.items():
                if path not in paths:
                    device.gone = True
        return self.list_devices()

    def discover(self, path: str) -> Device | None:
        try:
            properties = self._transport.get_device_properties(path)
        except DaemonError as exc:
            logger.debug("Unable to inspect device %s: %s", path, exc)
            return None
        if properties.get("DeviceType") != NM_DEVICE_TYPE_WIFI:
            return None
        device = Device(
            path=path,
            interface=str(properties.get("Interface") or path.rsplit("/", 1)[-1]),
            state=device_state_from_nm(int(properties.get("State") or 0)),
            hw_address=str(properties.get("HwAddress") or "") or None,
        )
        with self._lock:
            self._devices[path] = device
        logger.debug("Registered wireless device %s (%s)", device.interface, path)
        return self._copy(device)

    def remove(self, path: str) -> None:
        with self._lock:
            device = self._devices.get(path)
            if device is None or device.gone:
                return
            device.gone = True
        logger.info("Wireless device %s removed", device.interface)

    def list_devices(self) -> list[Device]:
        with self._lock:
            devices = [self._copy(device) for device in self._devices.values() if not device.gone]
        devices.sort(key=lambda device: device.interface)
        return devices

    def get_device(self, identifier: str) -> Device:
        """Return the device for an object path or interface name."""

        with self._lock:
            device = self._devices.get(identifier)
            if device is None:
                for candidate in self._devices.values():
                    if candidate.interface == identifier and not candidate.gone:
                        device = candidate
                        break
            if device is None or device.gone:
                raise NotFoundError(f"Unknown wireless device: {identifier}")
            return self._copy(device)

    def default_device(self) -> Device:
        """Pick a connected device, else any managed one."""

        devices = self.list_devices()
        for device in devices:
            if device.state is DeviceState.CONNECTED:
                return device
        for device in devices:
            if device.managed:
                return device
        raise NotFoundError("No managed wireless device available")

    def apply_state(self, path: str, nm_state: int, reason: int = 0) -> bool:
        """Apply a daemon device state. Returns ``True`` when it changed."""

        new_state = device_state_from_nm(nm_state)
        with self._lock:
            device = self._devices.get(path)
            if device is None or device.gone:
                return False
            old_state = device.state
            if old_state is new_state:
                return False
            device.state = new_state
            snapshot = self._copy(device)
            listeners = list(self._listeners)
        logger.debug(
            "Device %s state %s -> %s (reason %s)",
            snapshot.interface,
            old_state.value,
            new_state.value,
            reason,
        )
        for listener in listeners:
            listener(snapshot, old_state, new_state, reason)
        return True

    def add_listener(self, listener: DeviceListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    @staticmethod
    def _copy(device: Device) -> Device:
        return Device(
            path=device.path,
            interface=device.interface,
            state=device.state,
            hw_address=device.hw_address,
            kind=device.kind,
            gone=device.gone,
        )


__all__ = ["Device", "DeviceListener", "DeviceRegistry"]
