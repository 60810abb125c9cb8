from __future__ import annotations

import copy
import itertools
import logging
import queue
import threading
from pathlib import Path
from typing import Callable

import pytest

from nm_wifi.client import WiFiClient
from nm_wifi.config import ClientSettings
from nm_wifi.errors import DaemonError, WiFiError
from nm_wifi.networkmanager import (
    AP_FLAGS_PRIVACY,
    AP_SEC_KEY_MGMT_PSK,
    AP_SEC_KEY_MGMT_SAE,
    ERROR_NOT_ACTIVE,
    ERROR_UNKNOWN_CONNECTION,
    ERROR_UNKNOWN_OBJECT,
    GET_SECRETS_ALLOW_INTERACTION,
    GET_SECRETS_REQUEST_NEW,
    NM_ACTIVE_CONNECTION_IFACE,
    NM_DEVICE_IFACE,
    NM_DEVICE_TYPE_WIFI,
    NM_PATH,
    NM_PROPERTIES_IFACE,
    NM_SETTINGS_IFACE,
    NM_SETTINGS_PATH,
    NM_WIRELESS_IFACE,
    SECRET_FLAG_AGENT_OWNED,
    WIRELESS_SECURITY_SETTING,
    WIRELESS_SETTING,
    NMActiveConnectionState,
    NMActiveConnectionStateReason,
    NMDeviceState,
    NMDeviceStateReason,
)
from nm_wifi.system_log import EventLog
from nm_wifi.transport import BusSignal, NetworkManagerTransport, SecretHandler, SecretRequest

logger = logging.getLogger(__name__)

_SECURITY_FLAGS = {
    "none": (0, 0, 0),
    "wep": (AP_FLAGS_PRIVACY, 0, 0),
    "wpa-psk": (AP_FLAGS_PRIVACY, 0, AP_SEC_KEY_MGMT_PSK),
    "sae": (AP_FLAGS_PRIVACY, 0, AP_SEC_KEY_MGMT_SAE),
}


class FakeNetworkManager(NetworkManagerTransport):
    """In-memory NetworkManager that emits signals from its own thread.

    ``activation_mode`` controls what happens after ``activate_connection``:
    ``"connect"`` reports success, ``"fail"`` deactivates with a generic
    reason and ``"silent"`` never reports anything.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.devices: dict[str, dict[str, object]] = {}
        self.access_points: dict[str, dict[str, object]] = {}
        self.visible: dict[str, list[str]] = {}
        self.connections: dict[str, dict[str, dict[str, object]]] = {}
        self.active: dict[str, dict[str, object]] = {}
        self.passwords: dict[bytes, str] = {}
        self.received_secrets: list[dict[str, str]] = []
        self.activation_mode = "connect"
        self.scan_mode = "results"
        self.scan_error: DaemonError | None = None
        self.agent: SecretHandler | None = None
        self.agent_identifier: str | None = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="fake-nm", daemon=True)
        self._thread.start()

    # ------------------------------ fixtures -------------------------------
    def add_device(self, interface: str = "wlan0", state: int = NMDeviceState.DISCONNECTED) -> str:
        path = f"/org/freedesktop/NetworkManager/Devices/{next(self._ids)}"
        self.devices[path] = {
            "DeviceType": NM_DEVICE_TYPE_WIFI,
            "Interface": interface,
            "State": int(state),
            "HwAddress": "02:00:00:00:00:01",
            "ActiveConnection": "/",
        }
        self.visible[path] = []
        return path

    def add_ethernet(self, interface: str = "eth0") -> str:
        path = f"/org/freedesktop/NetworkManager/Devices/{next(self._ids)}"
        self.devices[path] = {"DeviceType": 1, "Interface": interface, "State": 100}
        return path

    def add_access_point(
        self,
        device: str,
        ssid: bytes | str,
        bssid: str,
        strength: int = 60,
        security: str = "wpa-psk",
        frequency: int = 2412,
    ) -> str:
        path = f"/org/freedesktop/NetworkManager/AccessPoint/{next(self._ids)}"
        flags, wpa_flags, rsn_flags = _SECURITY_FLAGS[security]
        self.access_points[path] = {
            "Ssid": ssid.encode("utf-8") if isinstance(ssid, str) else ssid,
            "HwAddress": bssid,
            "Strength": strength,
            "Flags": flags,
            "WpaFlags": wpa_flags,
            "RsnFlags": rsn_flags,
            "Frequency": frequency,
        }
        self.visible.setdefault(device, []).append(path)
        return path

    def add_profile(
        self,
        ssid: bytes | str,
        *,
        key_mgmt: str | None = "wpa-psk",
        agent_owned: bool = True,
        uuid: str | None = None,
        name: str | None = None,
    ) -> str:
        raw = ssid.encode("utf-8") if isinstance(ssid, str) else ssid
        settings: dict[str, dict[str, object]] = {
            "connection": {
                "id": name or raw.decode("utf-8", "replace"),
                "uuid": uuid or f"00000000-0000-4000-8000-{next(self._ids):012d}",
                "type": WIRELESS_SETTING,
                "autoconnect": True,
            },
            WIRELESS_SETTING: {"ssid": raw, "mode": "infrastructure"},
            "ipv4": {"method": "auto"},
        }
        if key_mgmt is not None:
            settings[WIRELESS_SECURITY_SETTING] = {
                "key-mgmt": key_mgmt,
                "psk-flags": SECRET_FLAG_AGENT_OWNED if agent_owned else 0,
            }
        path = f"{NM_SETTINGS_PATH}/{next(self._ids)}"
        self.connections[path] = settings
        return path

    def emit(self, path: str, interface: str, member: str, *args: object) -> None:
        self._queue.put(BusSignal(path=path, interface=interface, member=member, args=tuple(args)))

    def post(self, action: Callable[[], None]) -> None:
        self._queue.put(action)

    def flush(self) -> None:
        """Wait until every queued signal and action has been delivered."""

        self._queue.join()

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _record(self, method: str, *args: object) -> None:
        with self._lock:
            self.calls.append((method, args))

    # ------------------------------- devices -------------------------------
    def list_devices(self) -> list[str]:
        self._record("list_devices")
        return list(self.devices)

    def get_device_properties(self, device_path: str) -> dict[str, object]:
        if device_path not in self.devices:
            raise DaemonError(f"No device at {device_path}", code=ERROR_UNKNOWN_OBJECT)
        return dict(self.devices[device_path])

    def disconnect_device(self, device_path: str) -> None:
        self._record("disconnect_device", device_path)
        device = self.devices[device_path]
        if device.get("ActiveConnection") in (None, "/"):
            raise DaemonError("This device is not active", code=ERROR_NOT_ACTIVE)
        self.active.pop(str(device["ActiveConnection"]), None)
        self._set_device_state(device_path, NMDeviceState.DISCONNECTED, NMDeviceStateReason.USER_REQUESTED)
        device["ActiveConnection"] = "/"

    # -------------------------------- scans --------------------------------
    def request_scan(self, device_path: str) -> None:
        self._record("request_scan", device_path)
        if self.scan_error is not None:
            raise self.scan_error
        if self.scan_mode == "silent":
            return
        self.emit(device_path, NM_PROPERTIES_IFACE, "PropertiesChanged", NM_WIRELESS_IFACE, {"LastScan": 1}, ())

    def get_access_points(self, device_path: str) -> list[str]:
        self._record("get_access_points", device_path)
        return list(self.visible.get(device_path, []))

    def get_access_point_properties(self, ap_path: str) -> dict[str, object]:
        if ap_path not in self.access_points:
            raise DaemonError(f"No access point at {ap_path}", code=ERROR_UNKNOWN_OBJECT)
        return dict(self.access_points[ap_path])

    # ------------------------------ profiles -------------------------------
    def list_connections(self) -> list[str]:
        return list(self.connections)

    def get_connection_settings(self, connection_path: str) -> dict[str, dict[str, object]]:
        if connection_path not in self.connections:
            raise DaemonError(f"No connection at {connection_path}", code=ERROR_UNKNOWN_CONNECTION)
        return copy.deepcopy(self.connections[connection_path])

    def add_connection(self, settings: dict[str, dict[str, object]]) -> str:
        self._record("add_connection", copy.deepcopy(settings))
        path = f"{NM_SETTINGS_PATH}/{next(self._ids)}"
        self.connections[path] = copy.deepcopy(settings)
        self.emit(NM_SETTINGS_PATH, NM_SETTINGS_IFACE, "NewConnection", path)
        return path

    def update_connection(self, connection_path: str, settings: dict[str, dict[str, object]]) -> None:
        self._record("update_connection", connection_path, copy.deepcopy(settings))
        if connection_path not in self.connections:
            raise DaemonError("Unknown connection", code=ERROR_UNKNOWN_CONNECTION)
        self.connections[connection_path] = copy.deepcopy(settings)

    def delete_connection(self, connection_path: str) -> None:
        self._record("delete_connection", connection_path)
        if self.connections.pop(connection_path, None) is None:
            raise DaemonError("Unknown connection", code=ERROR_UNKNOWN_CONNECTION)
        self.emit(NM_SETTINGS_PATH, NM_SETTINGS_IFACE, "ConnectionRemoved", connection_path)

    # ----------------------------- activation ------------------------------
    def activate_connection(self, connection_path: str, device_path: str, specific_object: str = "/") -> str:
        self._record("activate_connection", connection_path, device_path, specific_object)
        if connection_path not in self.connections:
            raise DaemonError("Unknown connection", code=ERROR_UNKNOWN_CONNECTION)
        handle = f"{NM_PATH}/ActiveConnection/{next(self._ids)}"
        self.active[handle] = {"Connection": connection_path, "Devices": [device_path], "State": 1}
        self.post(lambda: self._run_activation(handle, connection_path, device_path))
        return handle

    def deactivate_connection(self, active_path: str) -> None:
        self._record("deactivate_connection", active_path)
        self.active.pop(active_path, None)

    def get_active_connection_properties(self, active_path: str) -> dict[str, object]:
        if active_path not in self.active:
            raise DaemonError("Unknown active connection", code=ERROR_UNKNOWN_OBJECT)
        return dict(self.active[active_path])

    # ---------------------------- secret agent -----------------------------
    def register_secret_agent(self, identifier: str, handler: SecretHandler) -> None:
        self._record("register_secret_agent", identifier)
        self.agent_identifier = identifier
        self.agent = handler

    def unregister_secret_agent(self) -> None:
        self._record("unregister_secret_agent")
        self.agent = None

    def close(self) -> None:
        self._record("close")
        super().close()

    def shutdown(self) -> None:
        """Stop the delivery thread. ``close`` only drops subscribers so clients can share one fake."""

        super().close()
        if not self._closed:
            self._closed = True
            self._queue.put(None)
            self._thread.join(timeout=2.0)

    # ----------------------------- simulation ------------------------------
    def request_secrets(self, connection_path: str, flags: int = GET_SECRETS_ALLOW_INTERACTION) -> dict[str, str]:
        settings = self.connections[connection_path]
        if self.agent is None:
            raise DaemonError("No agent registered")
        return self.agent(
            SecretRequest(
                connection_id=str(settings["connection"]["uuid"]),
                connection_path=connection_path,
                setting_name=WIRELESS_SECURITY_SETTING,
                hints=("psk",),
                flags=flags,
                ssid=bytes(settings[WIRELESS_SETTING]["ssid"]),
            )
        )

    def _run_activation(self, handle: str, connection_path: str, device_path: str) -> None:
        self._set_device_state(device_path, NMDeviceState.PREPARE, NMDeviceStateReason.NONE)
        self.emit(handle, NM_ACTIVE_CONNECTION_IFACE, "StateChanged", int(NMActiveConnectionState.ACTIVATING), 0)
        if self.activation_mode == "silent":
            return
        settings = self.connections.get(connection_path, {})
        security = settings.get(WIRELESS_SECURITY_SETTING, {})
        if security and int(security.get("psk-flags", 0) or 0) & SECRET_FLAG_AGENT_OWNED:
            ssid = bytes(settings[WIRELESS_SETTING]["ssid"])
            flags = GET_SECRETS_ALLOW_INTERACTION
            while True:
                try:
                    secrets = self.request_secrets(connection_path, flags)
                except (WiFiError, KeyError):
                    self._fail(handle, device_path, NMActiveConnectionStateReason.NO_SECRETS, NMDeviceStateReason.NO_SECRETS)
                    return
                self.received_secrets.append(dict(secrets))
                expected = self.passwords.get(ssid)
                if expected is None or secrets.get("psk") == expected:
                    break
                flags = GET_SECRETS_ALLOW_INTERACTION | GET_SECRETS_REQUEST_NEW
        if self.activation_mode == "fail":
            self._fail(
                handle,
                device_path,
                NMActiveConnectionStateReason.CONNECT_TIMEOUT,
                NMDeviceStateReason.SUPPLICANT_TIMEOUT,
            )
            return
        self.devices[device_path]["ActiveConnection"] = handle
        self.active[handle]["State"] = 2
        self._set_device_state(device_path, NMDeviceState.ACTIVATED, NMDeviceStateReason.NONE)
        self.emit(handle, NM_ACTIVE_CONNECTION_IFACE, "StateChanged", int(NMActiveConnectionState.ACTIVATED), 0)

    def _fail(self, handle: str, device_path: str, reason: int, device_reason: int) -> None:
        self.active.pop(handle, None)
        self._set_device_state(device_path, NMDeviceState.FAILED, device_reason)
        self.emit(handle, NM_ACTIVE_CONNECTION_IFACE, "StateChanged", int(NMActiveConnectionState.DEACTIVATED), int(reason))

    def _set_device_state(self, device_path: str, state: int, reason: int) -> None:
        device = self.devices[device_path]
        old = int(device["State"])
        device["State"] = int(state)
        self.emit(device_path, NM_DEVICE_IFACE, "StateChanged", int(state), old, int(reason))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                if callable(item):
                    item()
                else:
                    self._deliver(item)
            except Exception:
                logger.exception("Fake NetworkManager failed to deliver %r", item)
            finally:
                self._queue.task_done()


@pytest.fixture
def nm() -> FakeNetworkManager:
    fake = FakeNetworkManager()
    yield fake
    fake.shutdown()


@pytest.fixture
def settings(tmp_path: Path) -> ClientSettings:
    return ClientSettings(
        activation_timeout=2.0,
        scan_timeout=1.0,
        log_path=str(tmp_path / "events.jsonl"),
    )


@pytest.fixture
def make_client(nm: FakeNetworkManager, settings: ClientSettings):
    clients: list[WiFiClient] = []

    def factory(**kwargs) -> WiFiClient:
        client_settings = kwargs.pop("settings", settings)
        event_log = kwargs.pop("event_log", EventLog(client_settings.resolved_log_path))
        client = WiFiClient(nm, settings=client_settings, event_log=event_log, **kwargs)
        client.start()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def settle(nm: FakeNetworkManager):
    """Return a helper waiting for the fake daemon and a client to go quiet."""

    def wait(client: WiFiClient) -> None:
        for _ in range(3):
            nm.flush()
            assert client.wait_idle(2.0)

    return wait
