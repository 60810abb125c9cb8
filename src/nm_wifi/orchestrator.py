"""Connection orchestration: resolve a network, activate it, await the outcome."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .devices import Device, DeviceRegistry
from .errors import (
    BusyError,
    DaemonError,
    FailureKind,
    InvalidParamsError,
    NotFoundError,
    SecretUnavailableError,
    UnsupportedError,
    WiFiError,
    error_for_kind,
)
from .networkmanager import (
    ERROR_NOT_ACTIVE,
    DeviceState,
    NMActiveConnectionState,
    NMActiveConnectionStateReason,
    NMDeviceStateReason,
    ssid_to_text,
)
from .profiles import ConnectionProfile, ProfileManager, SecurityParams
from .scanning import AccessPoint, ScanCoordinator
from .secrets import SecretAgent, SecretLease
from .system_log import EventLog
from .transport import NetworkManagerTransport

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    ACTIVATING = "activating"
    CONNECTED = "connected"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (AttemptState.CONNECTED, AttemptState.FAILED, AttemptState.CANCELLED)


@dataclass(frozen=True, slots=True)
class ConnectionResult:
    """Outcome of one connect attempt."""

    request_id: str
    device: str
    ssid: bytes
    state: AttemptState
    error_kind: FailureKind | None = None
    message: str | None = None
    profile_id: str | None = None
    handle: str | None = None
    bssid: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is AttemptState.CONNECTED

    def raise_for_failure(self) -> None:
        """Raise the matching :class:`WiFiError` unless the attempt connected."""

        if self.state is AttemptState.FAILED:
            raise error_for_kind(self.error_kind or FailureKind.DAEMON_ERROR, self.message or "Connection failed")

    def to_dict(self) -> dict[str, object | None]:
        return {
            "request_id": self.request_id,
            "device": self.device,
            "ssid": ssid_to_text(self.ssid),
            "state": self.state.value,
            "error": self.error_kind.value if self.error_kind is not None else None,
            "message": self.message,
            "profile_id": self.profile_id,
            "bssid": self.bssid,
        }


@dataclass(slots=True, eq=False)
class ActivationRequest:
    """Live record of a single connect attempt on one device."""

    device: str
    ssid: bytes
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: AttemptState = AttemptState.IDLE
    profile: ConnectionProfile | None = None
    access_point: AccessPoint | None = None
    handle: str | None = None
    failure: FailureKind | None = None
    message: str | None = None
    lease: SecretLease | None = None
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def result(self) -> ConnectionResult:
        return ConnectionResult(
            request_id=self.request_id,
            device=self.device,
            ssid=self.ssid,
            state=self.state,
            error_kind=self.failure,
            message=self.message,
            profile_id=self.profile.id if self.profile is not None else None,
            handle=self.handle,
            bssid=self.access_point.bssid if self.access_point is not None else None,
        )


class ConnectionOrchestrator:
    """Drive connect attempts through ``IDLE -> RESOLVING -> ACTIVATING``.

    An attempt ends in exactly one of ``CONNECTED``, ``FAILED`` or
    ``CANCELLED``; the first terminal transition wins and later signals for
    the same attempt are ignored. At most one attempt is live per device.
    """

    def __init__(
        self,
        transport: NetworkManagerTransport,
        devices: DeviceRegistry,
        scans: ScanCoordinator,
        profiles: ProfileManager,
        agent: SecretAgent,
        *,
        activation_timeout: float = 60.0,
        scan_timeout: float = 10.0,
        handle_wait: float = 5.0,
        event_log: EventLog | None = None,
    ) -> None:
        self._transport = transport
        self._devices = devices
        self._scans = scans
        self._profiles = profiles
        self._agent = agent
        self._activation_timeout = activation_timeout
        self._scan_timeout = scan_timeout
        self._handle_wait = handle_wait
        self._event_log = event_log
        self._requests: dict[str, ActivationRequest] = {}
        self._handles: dict[str, ActivationRequest] = {}
        self._results: dict[str, ConnectionResult] = {}
        self._lock = threading.Lock()
        self._calls = threading.Condition(self._lock)
        self._calls_in_flight = 0
        devices.add_listener(self.on_device_state)

    # ------------------------------ operations -----------------------------
    def connect(
        self,
        ssid: str | bytes,
        secret: str | None = None,
        *,
        device: str | None = None,
        timeout: float | None = None,
    ) -> ConnectionResult:
        """Connect ``device`` to ``ssid`` and block until the attempt ends.

        Resolution failures are raised; activation outcomes are returned.
        """

        target = ssid.encode("utf-8") if isinstance(ssid, str) else bytes(ssid)
        if not target:
            raise InvalidParamsError("SSID must not be empty")
        selected = self._devices.get_device(device) if device else self._devices.default_device()
        request = ActivationRequest(device=selected.path, ssid=target)
        with self._lock:
            live = self._requests.get(selected.path)
            if live is not None and not live.terminal:
                raise BusyError(f"A connection attempt is already running on {selected.interface}")
            self._requests[selected.path] = request
        self._log(request, "started", f"Connecting {selected.interface} to {ssid_to_text(target)}")
        try:
            self._transition(request, AttemptState.RESOLVING)
            try:
                profile = self._resolve(request, selected, secret)
            except WiFiError as exc:
                if not self._finish(request, AttemptState.FAILED, exc.kind, str(exc)):
                    return request.result()
                raise
            if profile is None:
                return request.result()
            return self._activate(request, profile, secret, timeout)
        finally:
            self._discard(request)

    def cancel(self, device: str | None = None) -> ConnectionResult | None:
        """Cancel the live attempt on ``device``; ``None`` when there is none."""

        path = self._devices.get_device(device).path if device else self._live_device()
        if path is None:
            return None
        with self._lock:
            request = self._requests.get(path)
        if request is None or request.terminal:
            return None
        handle = request.handle
        if self._finish(request, AttemptState.CANCELLED, None, "Cancelled by caller") and handle:
            self._deactivate_later(handle)
        return request.result()

    def disconnect(self, device: str | None = None) -> Device:
        selected = self._devices.get_device(device) if device else self._devices.default_device()
        self.cancel(selected.path)
        try:
            self._transport.disconnect_device(selected.path)
        except DaemonError as exc:
            if exc.code != ERROR_NOT_ACTIVE:
                raise
            logger.debug("Device %s was not active", selected.interface)
        if self._event_log is not None:
            self._event_log.record(
                "connection",
                "disconnect",
                f"Disconnected {selected.interface}",
                device=selected.path,
            )
        return selected

    def configure(self, *, activation_timeout: float, scan_timeout: float) -> None:
        """Change the timeouts used by attempts started from now on."""

        with self._lock:
            self._activation_timeout = activation_timeout
            self._scan_timeout = scan_timeout

    def attempt(self, device: str) -> ActivationRequest | None:
        with self._lock:
            return self._requests.get(device)

    def last_result(self, device: str) -> ConnectionResult | None:
        with self._lock:
            return self._results.get(device)

    # ------------------------------ signals --------------------------------
    def device_for_handle(self, handle: str, *, wait: bool = True) -> str | None:
        """Map an active connection path to its device.

        While activation calls are in flight the handle may not be registered
        yet, so the lookup waits for them before giving up.
        """

        deadline = time.monotonic() + self._handle_wait
        with self._calls:
            while True:
                request = self._handles.get(handle)
                if request is not None:
                    return request.device
                if not wait or not self._calls_in_flight:
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._calls.wait(remaining)

    def apply_activation_state(self, handle: str, state: int, reason: int = 0) -> None:
        with self._lock:
            request = self._handles.get(handle)
            if request is None or self._requests.get(request.device) is not request:
                logger.debug("Ignoring state %s for stale activation %s", state, handle)
                return
        if state == NMActiveConnectionState.ACTIVATED:
            self._finish(request, AttemptState.CONNECTED, None, "Connected")
        elif state == NMActiveConnectionState.DEACTIVATED:
            rejected = request.lease is not None and request.lease.rejected
            if reason == NMActiveConnectionStateReason.NO_SECRETS or rejected:
                self._finish(
                    request,
                    AttemptState.FAILED,
                    FailureKind.SECRET_UNAVAILABLE,
                    "NetworkManager did not receive a usable secret",
                )
            else:
                self._finish(
                    request,
                    AttemptState.FAILED,
                    FailureKind.DAEMON_ERROR,
                    f"Activation failed ({_reason_name(NMActiveConnectionStateReason, reason)})",
                )

    def on_device_state(self, device: Device, old: DeviceState, new: DeviceState, reason: int) -> None:
        if new is not DeviceState.FAILED:
            return
        with self._lock:
            request = self._requests.get(device.path)
            if request is None or request.handle is None or request.handle not in self._handles:
                return
        rejected = request.lease is not None and request.lease.rejected
        if reason == NMDeviceStateReason.NO_SECRETS or rejected:
            kind = FailureKind.SECRET_UNAVAILABLE
            message = "NetworkManager did not receive a usable secret"
        else:
            kind = FailureKind.DAEMON_ERROR
            message = f"Device failed ({_reason_name(NMDeviceStateReason, reason)})"
        self._finish(request, AttemptState.FAILED, kind, message)

    def device_removed(self, device: str) -> None:
        with self._lock:
            request = self._requests.get(device)
        if request is not None:
            self._finish(request, AttemptState.FAILED, FailureKind.NOT_FOUND, "Device was removed")

    # ----------------------------- implementation --------------------------
    def _resolve(
        self,
        request: ActivationRequest,
        device: Device,
        secret: str | None,
    ) -> ConnectionProfile | None:
        """Pick the access point and profile; ``None`` when the attempt ended meanwhile."""

        if not device.managed:
            raise UnsupportedError(f"Device {device.interface} is not managed by NetworkManager")
        access_point = self._scans.find(device.path, request.ssid)
        if access_point is None:
            logger.info("%s not in scan results, scanning %s", ssid_to_text(request.ssid), device.interface)
            self._scans.scan(device.path, self._scan_timeout, abort=lambda: request.terminal)
            if request.terminal:
                return None
            access_point = self._scans.find(device.path, request.ssid)
        if access_point is None:
            raise NotFoundError(f"Network {ssid_to_text(request.ssid)} was not found")
        params = SecurityParams(kind=access_point.security, key=secret)
        profile = self._profiles.find_or_create(request.ssid, params)
        with self._lock:
            request.access_point = access_point
            request.profile = profile
        return profile

    def _activate(
        self,
        request: ActivationRequest,
        profile: ConnectionProfile,
        secret: str | None,
        timeout: float | None,
    ) -> ConnectionResult:
        self._profiles.bind(profile.id)
        lease: SecretLease | None = None
        try:
            if request.terminal:
                return request.result()
            if profile.security.secured and profile.secrets is not None and profile.secrets.agent_owned:
                try:
                    lease = self._agent.acquire(profile, secret)
                except SecretUnavailableError as exc:
                    self._finish(request, AttemptState.FAILED, FailureKind.SECRET_UNAVAILABLE, str(exc))
                    return request.result()
                except WiFiError as exc:
                    self._finish(request, AttemptState.FAILED, exc.kind, str(exc))
                    return request.result()
                request.lease = lease
            elif secret:
                note = f"Profile {profile.name} stores its own secret; the supplied key was not used"
                logger.info("Profile %s stores its own secret; the supplied key was not used", profile.name)
                self._log(request, "secret_ignored", note)
            with self._calls:
                if request.terminal:
                    return request.result()
                request.state = AttemptState.ACTIVATING
                self._calls_in_flight += 1
            specific = request.access_point.path if request.access_point is not None else None
            try:
                handle = self._transport.activate_connection(profile.path, request.device, specific or "/")
            except DaemonError as exc:
                with self._calls:
                    self._calls_in_flight -= 1
                    self._calls.notify_all()
                self._finish(request, AttemptState.FAILED, FailureKind.DAEMON_ERROR, str(exc))
                return request.result()
            with self._calls:
                self._calls_in_flight -= 1
                request.handle = handle
                cancelled = request.terminal
                if not cancelled:
                    self._handles[handle] = request
                self._calls.notify_all()
            if cancelled:
                self._deactivate_later(handle)
                return request.result()
            logger.debug("Activation %s started for request %s", handle, request.request_id)
            window = self._activation_timeout if timeout is None else timeout
            if not request.done.wait(max(0.0, window)):
                if self._finish(
                    request,
                    AttemptState.FAILED,
                    FailureKind.TIMEOUT,
                    f"No outcome from NetworkManager within {window:g}s",
                ):
                    self._deactivate_later(handle)
            return request.result()
        finally:
            if lease is not None:
                lease.release(request.state is AttemptState.CONNECTED)
            self._profiles.release(profile.id)

    def _transition(self, request: ActivationRequest, state: AttemptState) -> bool:
        with self._lock:
            if request.terminal:
                return False
            request.state = state
            return True

    def _finish(
        self,
        request: ActivationRequest,
        state: AttemptState,
        kind: FailureKind | None,
        message: str,
    ) -> bool:
        """Move ``request`` to a terminal state once. Returns ``False`` if it already ended."""

        with self._lock:
            if request.terminal:
                return False
            request.state = state
            request.failure = kind
            request.message = message
            if request.handle is not None and self._handles.get(request.handle) is request:
                del self._handles[request.handle]
            result = request.result()
            self._results[request.device] = result
        request.done.set()
        self._scans.wake()
        self._log(request, state.value, message, error=kind.value if kind is not None else None)
        return True

    def _discard(self, request: ActivationRequest) -> None:
        with self._lock:
            if self._requests.get(request.device) is request:
                del self._requests[request.device]
            if request.handle is not None and self._handles.get(request.handle) is request:
                del self._handles[request.handle]
        request.lease = None

    def _live_device(self) -> str | None:
        with self._lock:
            for path, request in self._requests.items():
                if not request.terminal:
                    return path
        return None

    def _deactivate_later(self, handle: str) -> None:
        thread = threading.Thread(
            target=self._deactivate,
            args=(handle,),
            name="nm-wifi-deactivate",
            daemon=True,
        )
        thread.start()

    def _deactivate(self, handle: str) -> None:
        try:
            self._transport.deactivate_connection(handle)
        except DaemonError:
            logger.debug("Best-effort deactivation of %s failed", handle, exc_info=True)

    def _log(self, request: ActivationRequest, event: str, message: str, *, error: str | None = None) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            "connection",
            event,
            message,
            device=request.device,
            request_id=request.request_id,
            metadata={
                "ssid": ssid_to_text(request.ssid),
                "profile_id": request.profile.id if request.profile is not None else None,
                "error": error,
            },
        )


def _reason_name(enum_type, value: int) -> str:
    try:
        return enum_type(int(value)).name.lower()
    except ValueError:
        return f"reason {value}"


__all__ = ["ActivationRequest", "AttemptState", "ConnectionOrchestrator", "ConnectionResult"]
