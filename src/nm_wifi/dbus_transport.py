"""NetworkManager transport backed by the system D-Bus via jeepney."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Mapping

from jeepney import (
    DBusAddress,
    HeaderFields,
    Message,
    MessageType,
    new_error,
    new_method_call,
    new_method_return,
)
from jeepney.bus_messages import MatchRule, message_bus
from jeepney.io.blocking import DBusConnection, open_dbus_connection
from jeepney.io.threading import DBusRouter
from jeepney.io.threading import open_dbus_connection as open_threading_connection
from jeepney.wrappers import Properties

from .errors import DaemonError
from .networkmanager import (
    ERROR_NO_SECRETS,
    NM,
    NM_ACCESS_POINT_IFACE,
    NM_ACTIVE_CONNECTION_IFACE,
    NM_AGENT_MANAGER_IFACE,
    NM_AGENT_MANAGER_PATH,
    NM_CONNECTION_IFACE,
    NM_DEVICE_IFACE,
    NM_DEVICE_TYPE_WIFI,
    NM_IFACE,
    NM_PATH,
    NM_PROPERTIES_IFACE,
    NM_SECRET_AGENT_IFACE,
    NM_SECRET_AGENT_PATH,
    NM_SETTINGS_IFACE,
    NM_SETTINGS_PATH,
    NM_WIRELESS_IFACE,
    WIRELESS_SECURITY_SETTING,
    WIRELESS_SETTING,
)
from .transport import BusSignal, NetworkManagerTransport, SecretHandler, SecretRequest, Settings

logger = logging.getLogger(__name__)

_SETTING_SIGNATURES: dict[tuple[str, str], str] = {
    ("connection", "id"): "s",
    ("connection", "uuid"): "s",
    ("connection", "type"): "s",
    ("connection", "autoconnect"): "b",
    ("connection", "autoconnect-priority"): "i",
    ("connection", "interface-name"): "s",
    ("connection", "timestamp"): "t",
    ("connection", "permissions"): "as",
    (WIRELESS_SETTING, "ssid"): "ay",
    (WIRELESS_SETTING, "mode"): "s",
    (WIRELESS_SETTING, "hidden"): "b",
    (WIRELESS_SETTING, "mac-address"): "ay",
    (WIRELESS_SETTING, "seen-bssids"): "as",
    (WIRELESS_SECURITY_SETTING, "key-mgmt"): "s",
    (WIRELESS_SECURITY_SETTING, "auth-alg"): "s",
    (WIRELESS_SECURITY_SETTING, "psk"): "s",
    (WIRELESS_SECURITY_SETTING, "psk-flags"): "u",
    (WIRELESS_SECURITY_SETTING, "wep-key0"): "s",
    (WIRELESS_SECURITY_SETTING, "wep-key-flags"): "u",
    (WIRELESS_SECURITY_SETTING, "wep-key-type"): "u",
    ("ipv4", "method"): "s",
    ("ipv6", "method"): "s",
}


def unwrap_variant(variant: Any) -> Any:
    """Convert a jeepney ``(signature, value)`` variant to a plain value."""

    signature, value = variant
    return _unwrap_value(signature, value)


def _unwrap_value(signature: str, value: Any) -> Any:
    if signature == "v":
        return unwrap_variant(value)
    if signature == "ay":
        return bytes(value)
    if signature == "a{sv}":
        return {key: unwrap_variant(item) for key, item in value.items()}
    if signature == "aa{sv}":
        return [{key: unwrap_variant(item) for key, item in entry.items()} for entry in value]
    return value


def unwrap_settings(raw: Mapping[str, Mapping[str, Any]]) -> Settings:
    """Unwrap an ``a{sa{sv}}`` connection settings body."""

    return {
        setting: {key: unwrap_variant(variant) for key, variant in values.items()}
        for setting, values in raw.items()
    }


def _infer_signature(value: object) -> str:
    if isinstance(value, bool):
        return "b"
    if isinstance(value, int):
        return "i"
    if isinstance(value, (bytes, bytearray)):
        return "ay"
    if isinstance(value, str):
        return "s"
    if isinstance(value, (list, tuple)):
        if all(isinstance(item, str) for item in value):
            return "as"
        if all(isinstance(item, int) and not isinstance(item, bool) for item in value):
            return "au"
    raise DaemonError(f"Cannot encode setting value {value!r} for D-Bus")


def wrap_settings(
    settings: Settings,
    original: Mapping[str, Mapping[str, Any]] | None = None,
) -> dict[str, dict[str, tuple[str, Any]]]:
    """Wrap plain settings into ``a{sa{sv}}`` variants.

    Values unchanged since ``original`` was fetched reuse the daemon's own
    variant so nested and deprecated properties round-trip untouched.
    """

    wrapped: dict[str, dict[str, tuple[str, Any]]] = {}
    for setting, values in settings.items():
        raw_setting = original.get(setting, {}) if original else {}
        entries: dict[str, tuple[str, Any]] = {}
        for key, value in values.items():
            raw_variant = raw_setting.get(key)
            if raw_variant is not None and unwrap_variant(raw_variant) == value:
                entries[key] = raw_variant
                continue
            signature = _SETTING_SIGNATURES.get((setting, key))
            if signature is None and raw_variant is not None:
                signature = raw_variant[0]
            if signature is None:
                signature = _infer_signature(value)
            if signature == "ay":
                value = bytes(value)
            entries[key] = (signature, value)
        wrapped[setting] = entries
    return wrapped


class DBusTransport(NetworkManagerTransport):
    """Interact with NetworkManager over the system bus.

    Method calls go through a thread-safe router connection. A second,
    blocking connection is owned by a monitor thread which receives signals
    and serves the secret agent object, so a slow credential prompt never
    stalls method replies.
    """

    def __init__(
        self,
        *,
        bus: str = "SYSTEM",
        timeout: float = 25.0,
        poll_interval: float = 0.5,
    ) -> None:
        super().__init__()
        self._bus = bus
        self._timeout = timeout
        self._poll_interval = max(0.05, poll_interval)
        self._nm = DBusAddress(NM_PATH, bus_name=NM, interface=NM_IFACE)
        self._settings = DBusAddress(NM_SETTINGS_PATH, bus_name=NM, interface=NM_SETTINGS_IFACE)
        self._router: DBusRouter | None = None
        self._monitor: DBusConnection | None = None
        self._monitor_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._send_lock = threading.Lock()
        self._pending: dict[int, list[Any]] = {}
        self._pending_lock = threading.Lock()
        self._agent_handler: SecretHandler | None = None
        self._raw_settings: dict[str, Mapping[str, Mapping[str, Any]]] = {}
        self._start_lock = threading.Lock()

    # ------------------------------- helpers -------------------------------
    def _ensure_router(self) -> DBusRouter:
        with self._start_lock:
            if self._router is None:
                try:
                    self._router = DBusRouter(open_threading_connection(bus=self._bus))
                except (OSError, KeyError) as exc:
                    raise DaemonError(f"Unable to connect to the {self._bus.lower()} bus: {exc}") from exc
            return self._router

    def _call(self, message: Message) -> tuple[Any, ...]:
        router = self._ensure_router()
        try:
            reply = router.send_and_get_reply(message, timeout=self._timeout)
        except TimeoutError as exc:
            member = message.header.fields.get(HeaderFields.member, "call")
            raise DaemonError(f"NetworkManager did not answer {member} in time") from exc
        except OSError as exc:
            raise DaemonError(f"D-Bus call failed: {exc}") from exc
        return self._check_reply(reply)

    @staticmethod
    def _check_reply(reply: Message) -> tuple[Any, ...]:
        if reply.header.message_type == MessageType.error:
            code = reply.header.fields.get(HeaderFields.error_name)
            detail = reply.body[0] if reply.body and isinstance(reply.body[0], str) else code
            raise DaemonError(str(detail or "NetworkManager call failed"), code=code)
        return tuple(reply.body)

    def _method(
        self,
        path: str,
        interface: str,
        method: str,
        signature: str | None = None,
        body: tuple[Any, ...] = (),
    ) -> tuple[Any, ...]:
        address = DBusAddress(path, bus_name=NM, interface=interface)
        return self._call(new_method_call(address, method, signature, body))

    def _properties(self, path: str, interface: str) -> dict[str, object]:
        address = DBusAddress(path, bus_name=NM, interface=interface)
        (raw,) = self._call(Properties(address).get_all())
        return {name: unwrap_variant(variant) for name, variant in raw.items()}

    # ------------------------------- devices -------------------------------
    def list_devices(self) -> list[str]:
        (paths,) = self._call(new_method_call(self._nm, "GetDevices"))
        return [str(path) for path in paths]

    def get_device_properties(self, device_path: str) -> dict[str, object]:
        properties = self._properties(device_path, NM_DEVICE_IFACE)
        if properties.get("DeviceType") == NM_DEVICE_TYPE_WIFI:
            properties.update(self._properties(device_path, NM_WIRELESS_IFACE))
        return properties

    def disconnect_device(self, device_path: str) -> None:
        self._method(device_path, NM_DEVICE_IFACE, "Disconnect")

    # -------------------------------- scans --------------------------------
    def request_scan(self, device_path: str) -> None:
        self._method(device_path, NM_WIRELESS_IFACE, "RequestScan", "a{sv}", ({},))

    def get_access_points(self, device_path: str) -> list[str]:
        (paths,) = self._method(device_path, NM_WIRELESS_IFACE, "GetAllAccessPoints")
        return [str(path) for path in paths]

    def get_access_point_properties(self, ap_path: str) -> dict[str, object]:
        return self._properties(ap_path, NM_ACCESS_POINT_IFACE)

    # ------------------------------ profiles -------------------------------
    def list_connections(self) -> list[str]:
        (paths,) = self._call(new_method_call(self._settings, "ListConnections"))
        return [str(path) for path in paths]

    def get_connection_settings(self, connection_path: str) -> Settings:
        (raw,) = self._method(connection_path, NM_CONNECTION_IFACE, "GetSettings")
        self._raw_settings[connection_path] = raw
        return unwrap_settings(raw)

    def add_connection(self, settings: Settings) -> str:
        (path,) = self._call(
            new_method_call(self._settings, "AddConnection", "a{sa{sv}}", (wrap_settings(settings),))
        )
        return str(path)

    def update_connection(self, connection_path: str, settings: Settings) -> None:
        original = self._raw_settings.get(connection_path)
        self._method(
            connection_path,
            NM_CONNECTION_IFACE,
            "Update",
            "a{sa{sv}}",
            (wrap_settings(settings, original),),
        )
        self._raw_settings.pop(connection_path, None)

    def delete_connection(self, connection_path: str) -> None:
        self._method(connection_path, NM_CONNECTION_IFACE, "Delete")
        self._raw_settings.pop(connection_path, None)

    # ----------------------------- activation ------------------------------
    def activate_connection(
        self,
        connection_path: str,
        device_path: str,
        specific_object: str = "/",
    ) -> str:
        (active_path,) = self._call(
            new_method_call(
                self._nm,
                "ActivateConnection",
                "ooo",
                (connection_path, device_path, specific_object or "/"),
            )
        )
        return str(active_path)

    def deactivate_connection(self, active_path: str) -> None:
        self._call(new_method_call(self._nm, "DeactivateConnection", "o", (active_path,)))

    def get_active_connection_properties(self, active_path: str) -> dict[str, object]:
        return self._properties(active_path, NM_ACTIVE_CONNECTION_IFACE)

    # ---------------------------- secret agent -----------------------------
    def register_secret_agent(self, identifier: str, handler: SecretHandler) -> None:
        self._ensure_monitor()
        self._agent_handler = handler
        address = DBusAddress(NM_AGENT_MANAGER_PATH, bus_name=NM, interface=NM_AGENT_MANAGER_IFACE)
        self._monitor_call(new_method_call(address, "RegisterWithCapabilities", "su", (identifier, 0)))

    def unregister_secret_agent(self) -> None:
        if self._agent_handler is None:
            return
        self._agent_handler = None
        if self._monitor is None:
            return
        address = DBusAddress(NM_AGENT_MANAGER_PATH, bus_name=NM, interface=NM_AGENT_MANAGER_IFACE)
        try:
            self._monitor_call(new_method_call(address, "Unregister"))
        except DaemonError as exc:
            logger.debug("Secret agent unregister failed: %s", exc)

    # ------------------------------- signals -------------------------------
    def subscribe(self, handler):
        subscription = super().subscribe(handler)
        self._ensure_monitor()
        return subscription

    def _ensure_monitor(self) -> None:
        with self._start_lock:
            if self._monitor_thread is not None and self._monitor_thread.is_alive():
                return
            try:
                connection = open_dbus_connection(bus=self._bus)
            except (OSError, KeyError) as exc:
                raise DaemonError(f"Unable to connect to the {self._bus.lower()} bus: {exc}") from exc
            rule = MatchRule(type="signal", sender=NM, path_namespace=NM_PATH)
            try:
                reply = connection.send_and_get_reply(message_bus.AddMatch(rule), timeout=self._timeout)
                self._check_reply(reply)
            except (OSError, TimeoutError) as exc:
                connection.close()
                raise DaemonError(f"Unable to subscribe to NetworkManager signals: {exc}") from exc
            self._monitor = connection
            self._stop_event.clear()
            thread = threading.Thread(target=self._run_monitor, name="nm-wifi-monitor", daemon=True)
            self._monitor_thread = thread
            thread.start()

    def _send_on_monitor(self, message: Message) -> int:
        connection = self._monitor
        if connection is None:
            raise DaemonError("Signal monitor is not running")
        with self._send_lock:
            serial = next(connection.outgoing_serial)
            connection.send(message, serial=serial)
        return serial

    def _monitor_call(self, message: Message) -> tuple[Any, ...]:
        """Issue a call on the monitor connection and wait for its reply."""

        slot: list[Any] = [threading.Event(), None]
        with self._pending_lock:
            serial = self._send_on_monitor(message)
            self._pending[serial] = slot
        try:
            if not slot[0].wait(self._timeout):
                raise DaemonError("NetworkManager did not answer the agent manager in time")
        finally:
            with self._pending_lock:
                self._pending.pop(serial, None)
        return self._check_reply(slot[1])

    def _run_monitor(self) -> None:
        connection = self._monitor
        while connection is not None and not self._stop_event.is_set():
            try:
                message = connection.receive(timeout=self._poll_interval)
            except TimeoutError:
                continue
            except (OSError, ValueError) as exc:
                if not self._stop_event.is_set():
                    logger.warning("NetworkManager signal monitor stopped: %s", exc)
                return
            try:
                self._dispatch(message)
            except Exception:  # pragma: no cover - keep the monitor alive
                logger.exception("Failed to dispatch NetworkManager message")

    def _dispatch(self, message: Message) -> None:
        header = message.header
        kind = header.message_type
        if kind in (MessageType.method_return, MessageType.error):
            reply_serial = header.fields.get(HeaderFields.reply_serial)
            with self._pending_lock:
                slot = self._pending.get(reply_serial)
            if slot is not None:
                slot[1] = message
                slot[0].set()
            return
        if kind == MessageType.method_call:
            self._handle_agent_call(message)
            return
        if kind != MessageType.signal:
            return
        self._deliver(self._to_signal(message))

    @staticmethod
    def _to_signal(message: Message) -> BusSignal:
        fields = message.header.fields
        interface = fields.get(HeaderFields.interface, "")
        member = fields.get(HeaderFields.member, "")
        args: tuple[Any, ...] = tuple(message.body)
        if interface == NM_PROPERTIES_IFACE and member == "PropertiesChanged" and len(args) >= 2:
            changed = {name: unwrap_variant(variant) for name, variant in args[1].items()}
            args = (args[0], changed, tuple(args[2]) if len(args) > 2 else ())
        return BusSignal(
            path=str(fields.get(HeaderFields.path, "")),
            interface=str(interface),
            member=str(member),
            args=args,
        )

    # ---------------------------- agent serving ----------------------------
    def _handle_agent_call(self, message: Message) -> None:
        fields = message.header.fields
        path = fields.get(HeaderFields.path)
        interface = fields.get(HeaderFields.interface)
        member = fields.get(HeaderFields.member)
        if path != NM_SECRET_AGENT_PATH or interface not in (NM_SECRET_AGENT_IFACE, None):
            self._send_on_monitor(
                new_error(message, "org.freedesktop.DBus.Error.UnknownObject", "s", (f"No object at {path}",))
            )
            return
        if member == "GetSecrets":
            worker = threading.Thread(
                target=self._answer_get_secrets,
                args=(message,),
                name="nm-wifi-secret-request",
                daemon=True,
            )
            worker.start()
            return
        if member in {"CancelGetSecrets", "SaveSecrets", "DeleteSecrets"}:
            # Secrets are never persisted by this agent.
            self._send_on_monitor(new_method_return(message))
            return
        self._send_on_monitor(
            new_error(message, "org.freedesktop.DBus.Error.UnknownMethod", "s", (f"Unknown method {member}",))
        )

    def _answer_get_secrets(self, message: Message) -> None:
        raw_connection, connection_path, setting_name, hints, flags = message.body
        connection = unwrap_settings(raw_connection)
        request = SecretRequest(
            connection_id=str(connection.get("connection", {}).get("uuid", "")),
            connection_path=str(connection_path),
            setting_name=str(setting_name),
            hints=tuple(str(hint) for hint in hints),
            flags=int(flags),
            ssid=bytes(connection.get(WIRELESS_SETTING, {}).get("ssid", b"")),
        )
        handler = self._agent_handler
        try:
            if handler is None:
                raise DaemonError("Secret agent is not registered", code=ERROR_NO_SECRETS)
            secrets = handler(request)
        except Exception as exc:
            logger.info("Refusing secrets for %s: %s", request.connection_id, exc)
            code = getattr(exc, "code", None) or ERROR_NO_SECRETS
            self._send_on_monitor(new_error(message, code, "s", (str(exc) or "No secrets available",)))
            return
        body = {setting_name: {key: ("s", value) for key, value in secrets.items()}}
        self._send_on_monitor(new_method_return(message, "a{sa{sv}}", (body,)))

    # ------------------------------- shutdown ------------------------------
    def close(self) -> None:
        super().close()
        try:
            self.unregister_secret_agent()
        finally:
            self._stop_event.set()
            thread = self._monitor_thread
            if thread is not None:
                thread.join(timeout=5.0)
            self._monitor_thread = None
            if self._monitor is not None:
                self._monitor.close()
                self._monitor = None
            if self._router is not None:
                self._router.close()
                self._router.conn.close()
                self._router = None


__all__ = ["DBusTransport", "unwrap_settings", "unwrap_variant", "wrap_settings"]
