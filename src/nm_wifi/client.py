"""High level Wi-Fi client wiring the NetworkManager components together."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from .config import ClientSettings
from .devices import Device, DeviceRegistry
from .errors import DaemonError
from .events import SerialDispatcher
from .networkmanager import (
    NM_ACCESS_POINT_IFACE,
    NM_ACTIVE_CONNECTION_IFACE,
    NM_CONNECTION_IFACE,
    NM_DEVICE_IFACE,
    NM_IFACE,
    NM_PROPERTIES_IFACE,
    NM_SETTINGS_IFACE,
    NM_WIRELESS_IFACE,
    DeviceState,
    ssid_to_text,
)
from .orchestrator import ActivationRequest, ConnectionOrchestrator, ConnectionResult
from .profiles import ConnectionProfile, ProfileManager
from .scanning import AccessPoint, Network, ScanCoordinator
from .secrets import SecretAgent, SecretPrompt
from .system_log import EventLog
from .transport import BusSignal, NetworkManagerTransport, Subscription

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"


@dataclass(slots=True)
class DeviceStatus:
    """Current connection state of one device."""

    device: Device
    ssid: bytes | None = None
    profile: ConnectionProfile | None = None
    active_connection: str | None = None
    attempt: str | None = None
    attempt_id: str | None = None
    last_result: ConnectionResult | None = None

    @property
    def connected(self) -> bool:
        return self.device.state is DeviceState.CONNECTED

    def to_dict(self) -> dict[str, object | None]:
        return {
            "device": self.device.to_dict(),
            "connected": self.connected,
            "ssid": ssid_to_text(self.ssid) if self.ssid is not None else None,
            "profile": self.profile.to_dict() if self.profile is not None else None,
            "attempt": self.attempt,
            "attempt_id": self.attempt_id,
            "last_result": self.last_result.to_dict() if self.last_result is not None else None,
        }


class WiFiClient:
    """Entry point for Wi-Fi operations against NetworkManager.

    The client owns one of each component and routes every transport signal
    onto a per-device queue so signals for one device are applied in order.
    """

    def __init__(
        self,
        transport: NetworkManagerTransport,
        *,
        settings: ClientSettings | None = None,
        prompt: SecretPrompt | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or ClientSettings()
        self._transport = transport
        self._event_log = event_log
        self.devices = DeviceRegistry(transport)
        self.scans = ScanCoordinator(transport, self.devices, max_age=self._settings.scan_max_age, clock=clock)
        self.profiles = ProfileManager(transport)
        self.agent = SecretAgent(
            transport,
            self.profiles,
            prompt=prompt,
            identifier=self._settings.agent_identifier,
            cache_secrets=self._settings.cache_secrets,
            allow_prompt=self._settings.prompt_for_secrets,
        )
        self.orchestrator = ConnectionOrchestrator(
            transport,
            self.devices,
            self.scans,
            self.profiles,
            self.agent,
            activation_timeout=self._settings.activation_timeout,
            scan_timeout=self._settings.scan_timeout,
            event_log=event_log,
        )
        self._dispatcher = SerialDispatcher()
        self._subscription: Subscription | None = None
        self._lock = threading.Lock()
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        *,
        prompt: SecretPrompt | None = None,
        transport: NetworkManagerTransport | None = None,
    ) -> "WiFiClient":
        if transport is None:
            from .dbus_transport import DBusTransport

            transport = DBusTransport()
        event_log = EventLog(settings.resolved_log_path, max_entries=settings.log_max_entries)
        return cls(transport, settings=settings, prompt=prompt, event_log=event_log)

    # ------------------------------ properties -----------------------------
    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def event_log(self) -> EventLog | None:
        return self._event_log

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------ lifecycle ------------------------------
    def start(self) -> None:
        """Subscribe to signals, load devices and profiles, register the agent."""

        with self._lock:
            if self._started:
                return
            self._subscription = self._transport.subscribe(self._on_signal)
            self.devices.refresh()
            self.profiles.refresh()
            self.agent.register()
            self._started = True
        logger.info("Wi-Fi client started with %d device(s)", len(self.devices.list_devices()))

    def close(self) -> None:
        with self._lock:
            if not self._started:
                self._transport.close()
                return
            self._started = False
            try:
                self.agent.unregister()
            except DaemonError as exc:
                logger.debug("Unable to unregister secret agent: %s", exc)
            if self._subscription is not None:
                self._subscription.cancel()
                self._subscription = None
            self._dispatcher.close()
            self._transport.close()

    def __enter__(self) -> "WiFiClient":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def apply_settings(self, settings: ClientSettings) -> None:
        """Apply new settings to the running components.

        Timeouts, scan age and secret handling change in place. The agent
        identifier and the event log location only change on restart.
        """

        self.scans.max_age = settings.scan_max_age
        self.agent.configure(cache_secrets=settings.cache_secrets, allow_prompt=settings.prompt_for_secrets)
        self.orchestrator.configure(
            activation_timeout=settings.activation_timeout,
            scan_timeout=settings.scan_timeout,
        )
        previous, self._settings = self._settings, settings
        if (previous.agent_identifier, previous.log_path) != (settings.agent_identifier, settings.log_path):
            logger.info("Agent identifier and log path changes take effect after a restart")
        logger.info("Applied new Wi-Fi client settings")

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until every routed signal has been applied."""

        return self._dispatcher.wait_idle(timeout)

    # ------------------------------ operations -----------------------------
    def connect(
        self,
        ssid: str | bytes,
        secret: str | None = None,
        *,
        device: str | None = None,
        timeout: float | None = None,
    ) -> ConnectionResult:
        return self.orchestrator.connect(ssid, secret, device=self._device_id(device), timeout=timeout)

    def cancel(self, device: str | None = None) -> ConnectionResult | None:
        return self.orchestrator.cancel(self._device_id(device))

    def disconnect(self, device: str | None = None) -> Device:
        return self.orchestrator.disconnect(self._device_id(device))

    def scan(self, device: str | None = None, timeout: float | None = None) -> list[AccessPoint]:
        selected = self._device(device)
        access_points = self.scans.scan(
            selected.path, self._settings.scan_timeout if timeout is None else timeout
        )
        if self._event_log is not None:
            self._event_log.record(
                "scan",
                "completed",
                f"Scan on {selected.interface} found {len(access_points)} access point(s)",
                device=selected.path,
            )
        return access_points

    def list_networks(self, device: str | None = None, *, rescan: bool = False) -> list[Network]:
        """Return visible networks, scanning first when asked or when none are cached."""

        selected = self._device(device)
        if rescan or not self.scans.snapshot(selected.path):
            self.scan(selected.path)
        status = self.status(selected.path)
        return self.scans.networks(
            selected.path,
            connected_ssid=status.ssid if status.connected else None,
            known=self.profiles.known_ssids(),
        )

    def status(self, device: str | None = None) -> DeviceStatus:
        selected = self._device(device)
        status = DeviceStatus(device=selected)
        try:
            properties = self._transport.get_device_properties(selected.path)
        except DaemonError as exc:
            logger.debug("Unable to read properties of %s: %s", selected.interface, exc)
            properties = {}
        active = properties.get("ActiveConnection")
        if isinstance(active, str) and active not in ("", "/"):
            status.active_connection = active
            try:
                active_properties = self._transport.get_active_connection_properties(active)
            except DaemonError as exc:
                logger.debug("Unable to read active connection %s: %s", active, exc)
            else:
                connection = active_properties.get("Connection")
                if isinstance(connection, str):
                    status.profile = self.profiles.by_path(connection)
        if status.profile is not None:
            status.ssid = status.profile.ssid
        attempt: ActivationRequest | None = self.orchestrator.attempt(selected.path)
        if attempt is not None:
            status.attempt = attempt.state.value
            status.attempt_id = attempt.request_id
        status.last_result = self.orchestrator.last_result(selected.path)
        return status

    def list_devices(self) -> list[Device]:
        return self.devices.list_devices()

    def list_profiles(self) -> list[ConnectionProfile]:
        return self.profiles.list_profiles()

    def update_profile(
        self,
        profile_id: str,
        changes: Mapping[str, object],
        version: str,
    ) -> ConnectionProfile:
        profile = self.profiles.update(profile_id, changes, version)
        if self._event_log is not None:
            self._event_log.record(
                "profile",
                "updated",
                f"Updated profile {profile.name}",
                metadata={"profile_id": profile.id, "fields": sorted(changes)},
            )
        return profile

    def forget(self, profile_id: str) -> None:
        """Delete a profile and drop any cached secret for it."""

        profile = self.profiles.get(profile_id)
        self.profiles.delete(profile_id)
        self.agent.forget(profile_id)
        if self._event_log is not None:
            self._event_log.record(
                "profile",
                "deleted",
                f"Forgot network {profile.name}",
                metadata={"profile_id": profile_id},
            )

    # ------------------------------ routing --------------------------------
    def _device(self, device: str | None) -> Device:
        identifier = self._device_id(device)
        if identifier:
            return self.devices.get_device(identifier)
        return self.devices.default_device()

    def _device_id(self, device: str | None) -> str | None:
        return device or self._settings.interface

    def _on_signal(self, signal: BusSignal) -> None:
        route = self._route(signal)
        if route is None:
            return
        key, handler, args = route
        self._dispatcher.submit(key, handler, *args)

    def _route(self, signal: BusSignal) -> tuple[str, Callable[..., object], tuple[object, ...]] | None:
        interface, member, args = signal.interface, signal.member, signal.args
        if interface in (NM_SETTINGS_IFACE, NM_CONNECTION_IFACE):
            return SETTINGS_KEY, self.profiles.apply_signal, (signal,)
        if interface == NM_IFACE and member == "DeviceAdded" and args:
            return str(args[0]), self.devices.discover, (str(args[0]),)
        if interface == NM_IFACE and member == "DeviceRemoved" and args:
            return str(args[0]), self._remove_device, (str(args[0]),)
        if interface == NM_DEVICE_IFACE and member == "StateChanged" and len(args) >= 3:
            return signal.path, self.devices.apply_state, (signal.path, int(args[0]), int(args[2]))
        if interface == NM_WIRELESS_IFACE and member == "AccessPointAdded" and args:
            return signal.path, self.scans.refresh_access_point, (signal.path, str(args[0]))
        if interface == NM_ACTIVE_CONNECTION_IFACE and member == "StateChanged" and len(args) >= 2:
            device = self.orchestrator.device_for_handle(signal.path)
            if device is None:
                logger.debug("Dropping state for untracked activation %s", signal.path)
                return None
            return device, self.orchestrator.apply_activation_state, (signal.path, int(args[0]), int(args[1]))
        if interface == NM_PROPERTIES_IFACE and member == "PropertiesChanged" and len(args) >= 2:
            changed_interface, changed = args[0], args[1]
            if not isinstance(changed, Mapping):
                return None
            if changed_interface == NM_WIRELESS_IFACE and "LastScan" in changed:
                return signal.path, self.scans.complete_scan, (signal.path,)
            if changed_interface == NM_ACCESS_POINT_IFACE:
                device = self.scans.device_for_access_point(signal.path)
                if device is not None:
                    return device, self.scans.refresh_access_point, (device, signal.path)
        return None

    def _remove_device(self, path: str) -> None:
        self.devices.remove(path)
        self.scans.forget_device(path)
        self.orchestrator.device_removed(path)


__all__ = ["DeviceStatus", "WiFiClient"]
