"""Connection profile management on top of NetworkManager's settings service."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import string
import threading
import uuid
from dataclasses import dataclass, field
from typing import Mapping

from .errors import ConflictError, DaemonError, InUseError, InvalidParamsError, NotFoundError
from .networkmanager import (
    ERROR_UNKNOWN_CONNECTION,
    SECRET_FLAG_AGENT_OWNED,
    SECRET_FLAG_NOT_SAVED,
    WIRELESS_SECURITY_SETTING,
    WIRELESS_SETTING,
    SecurityKind,
    security_from_settings,
    ssid_to_text,
)
from .transport import BusSignal, NetworkManagerTransport, Settings

logger = logging.getLogger(__name__)

_SECRET_KEYS = frozenset({"psk", "wep-key0", "wep-key1", "wep-key2", "wep-key3", "leap-password", "password"})
_VOLATILE_KEYS = frozenset({("connection", "timestamp")})
_MUTABLE_FIELDS = frozenset({"name", "autoconnect", "priority", "hidden"})
_KEY_MGMT = {
    SecurityKind.WEP: "none",
    SecurityKind.WPA_PSK: "wpa-psk",
    SecurityKind.SAE: "sae",
}


def _is_hex(value: str) -> bool:
    return all(char in string.hexdigits for char in value)


@dataclass(frozen=True, slots=True)
class SecurityParams:
    """Security requested for a network, optionally carrying its key."""

    kind: SecurityKind = SecurityKind.OPEN
    key: str | None = field(default=None, repr=False)
    hidden: bool = False

    def validate(self) -> None:
        key = self.key
        if self.kind is SecurityKind.ENTERPRISE:
            raise InvalidParamsError("Enterprise (802.1X) networks are not supported")
        if not self.kind.secured:
            if key:
                raise InvalidParamsError("A key was supplied for an open network")
            return
        if key is None:
            return
        if self.kind is SecurityKind.WEP:
            if len(key) in (5, 13) and key.isascii():
                return
            if len(key) in (10, 26) and _is_hex(key):
                return
            raise InvalidParamsError("WEP keys must be 5 or 13 characters, or 10 or 26 hex digits")
        if self.kind is SecurityKind.WPA_PSK:
            if len(key) == 64 and _is_hex(key):
                return
            if 8 <= len(key) <= 63 and key.isascii() and key.isprintable():
                return
            raise InvalidParamsError("WPA passphrases must be 8-63 printable characters or 64 hex digits")
        if self.kind is SecurityKind.SAE and not key:
            raise InvalidParamsError("SAE networks require a non-empty password")


@dataclass(frozen=True, slots=True)
class SecretsReference:
    """Where a profile's secret lives, never the secret itself."""

    profile_id: str
    setting_name: str
    key: str
    agent_owned: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "setting": self.setting_name,
            "key": self.key,
            "agent_owned": self.agent_owned,
        }


@dataclass(slots=True)
class ConnectionProfile:
    """A wireless connection profile stored by NetworkManager."""

    id: str
    path: str
    name: str
    ssid: bytes
    security: SecurityKind
    version: str
    secrets: SecretsReference | None = None
    autoconnect: bool = True
    priority: int = 0
    hidden: bool = False

    def to_dict(self) -> dict[str, object | None]:
        return {
            "id": self.id,
            "name": self.name,
            "ssid": ssid_to_text(self.ssid),
            "security": self.security.value,
            "autoconnect": self.autoconnect,
            "priority": self.priority,
            "hidden": self.hidden,
            "version": self.version,
            "secrets": self.secrets.to_dict() if self.secrets is not None else None,
        }


def version_token(settings: Mapping[str, Mapping[str, object]]) -> str:
    """Return a stable digest of ``settings`` with secrets left out."""

    cleaned = {
        setting: {
            key: value
            for key, value in values.items()
            if key not in _SECRET_KEYS and (setting, key) not in _VOLATILE_KEYS
        }
        for setting, values in settings.items()
    }
    payload = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=_encode_value)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _encode_value(value: object) -> object:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Unsupported settings value {value!r}")


def profile_from_settings(path: str, settings: Settings) -> ConnectionProfile | None:
    """Build a profile for a wireless connection, ``None`` for other types."""

    connection = settings.get("connection", {})
    if connection.get("type") != WIRELESS_SETTING:
        return None
    wireless = settings.get(WIRELESS_SETTING, {})
    if wireless.get("mode", "infrastructure") not in ("infrastructure", None):
        return None
    profile_id = str(connection.get("uuid") or "")
    if not profile_id:
        return None
    security = security_from_settings(settings)
    secrets: SecretsReference | None = None
    secret_key = security.secret_key
    if secret_key is not None:
        security_setting = settings.get(WIRELESS_SECURITY_SETTING, {})
        secret_flags = int(security_setting.get(security.secret_flags_key or "", 0) or 0)
        secrets = SecretsReference(
            profile_id=profile_id,
            setting_name=WIRELESS_SECURITY_SETTING,
            key=secret_key,
            agent_owned=bool(secret_flags & (SECRET_FLAG_AGENT_OWNED | SECRET_FLAG_NOT_SAVED)),
        )
    ssid = bytes(wireless.get("ssid") or b"")
    return ConnectionProfile(
        id=profile_id,
        path=path,
        name=str(connection.get("id") or ssid_to_text(ssid)),
        ssid=ssid,
        security=security,
        version=version_token(settings),
        secrets=secrets,
        autoconnect=bool(connection.get("autoconnect", True)),
        priority=int(connection.get("autoconnect-priority", 0) or 0),
        hidden=bool(wireless.get("hidden", False)),
    )


class ProfileManager:
    """Create, update and delete wireless connection profiles."""

    def __init__(self, transport: NetworkManagerTransport) -> None:
        self._transport = transport
        self._profiles: dict[str, ConnectionProfile] = {}
        self._paths: dict[str, str] = {}
        self._bindings: dict[str, int] = {}
        self._lock = threading.Lock()
        self._create_lock = threading.Lock()
        self._update_lock = threading.Lock()

    # ------------------------------ operations -----------------------------
    def refresh(self) -> list[ConnectionProfile]:
        """Reload every wireless profile from the daemon."""

        loaded: dict[str, ConnectionProfile] = {}
        for path in self._transport.list_connections():
            profile = self._fetch(path)
            if profile is not None:
                loaded[profile.id] = profile
        with self._lock:
            self._profiles = loaded
            self._paths = {profile.path: profile.id for profile in loaded.values()}
        logger.debug("Loaded %d wireless profiles", len(loaded))
        return self.list_profiles()

    def list_profiles(self) -> list[ConnectionProfile]:
        with self._lock:
            profiles = [copy.copy(profile) for profile in self._profiles.values()]
        profiles.sort(key=lambda profile: (profile.name.lower(), profile.id))
        return profiles

    def get(self, profile_id: str) -> ConnectionProfile:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                raise NotFoundError(f"Unknown connection profile: {profile_id}")
            return copy.copy(profile)

    def by_path(self, path: str) -> ConnectionProfile | None:
        with self._lock:
            profile_id = self._paths.get(path)
            profile = self._profiles.get(profile_id) if profile_id else None
            return copy.copy(profile) if profile is not None else None

    def find(self, ssid: bytes, kind: SecurityKind | None = None) -> list[ConnectionProfile]:
        """Return profiles for ``ssid``, highest priority first."""

        with self._lock:
            matches = [
                copy.copy(profile)
                for profile in self._profiles.values()
                if profile.ssid == ssid and (kind is None or profile.security is kind)
            ]
        matches.sort(key=lambda profile: (-profile.priority, profile.id))
        return matches

    def known_ssids(self) -> set[bytes]:
        with self._lock:
            return {profile.ssid for profile in self._profiles.values()}

    def find_or_create(self, ssid: bytes, params: SecurityParams) -> ConnectionProfile:
        """Return the profile for ``ssid`` with ``params.kind``, creating it once."""

        params.validate()
        ssid = bytes(ssid)
        if not ssid:
            raise InvalidParamsError("SSID must not be empty")
        with self._create_lock:
            existing = self.find(ssid, params.kind)
            if existing:
                return existing[0]
            settings = self._new_settings(ssid, params)
            path = self._transport.add_connection(settings)
            profile = self._fetch(path)
            if profile is None:
                raise DaemonError(f"NetworkManager stored an unexpected profile at {path}")
            self._store(profile)
        logger.info("Created profile %s for %s", profile.id, profile.name)
        return copy.copy(profile)

    def update(
        self,
        profile_id: str,
        changes: Mapping[str, object],
        version: str,
    ) -> ConnectionProfile:
        """Apply ``changes`` if the daemon's copy still matches ``version``."""

        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise InvalidParamsError(f"Profile fields cannot be changed: {', '.join(sorted(unknown))}")
        profile = self.get(profile_id)
        with self._update_lock:
            refreshed = self._apply_update(profile, changes, version)
        logger.info("Updated profile %s", refreshed.id)
        return copy.copy(refreshed)

    def _apply_update(
        self,
        profile: ConnectionProfile,
        changes: Mapping[str, object],
        version: str,
    ) -> ConnectionProfile:
        # Version check and write happen under _update_lock.
        settings = self._transport.get_connection_settings(profile.path)
        current = version_token(settings)
        if current != version:
            self._store_settings(profile.path, settings)
            raise ConflictError(f"Profile {profile.name} was changed by another client")
        updated = copy.deepcopy(settings)
        connection = updated.setdefault("connection", {})
        wireless = updated.setdefault(WIRELESS_SETTING, {})
        if "name" in changes:
            name = str(changes["name"] or "").strip()
            if not name:
                raise InvalidParamsError("Profile name must not be empty")
            connection["id"] = name
        if "autoconnect" in changes:
            connection["autoconnect"] = bool(changes["autoconnect"])
        if "priority" in changes:
            try:
                connection["autoconnect-priority"] = int(changes["priority"])
            except (TypeError, ValueError) as exc:
                raise InvalidParamsError("Profile priority must be an integer") from exc
        if "hidden" in changes:
            wireless["hidden"] = bool(changes["hidden"])
        self._transport.update_connection(profile.path, updated)
        refreshed = self._fetch(profile.path)
        if refreshed is None:
            raise NotFoundError(f"Profile {profile.name} disappeared during update")
        self._store(refreshed)
        return refreshed

    def delete(self, profile_id: str) -> None:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                raise NotFoundError(f"Unknown connection profile: {profile_id}")
            if self._bindings.get(profile_id, 0) > 0:
                raise InUseError(f"Profile {profile.name} is bound to an activation in progress")
        try:
            self._transport.delete_connection(profile.path)
        except DaemonError as exc:
            if exc.code != ERROR_UNKNOWN_CONNECTION:
                raise
            logger.debug("Profile %s was already removed by the daemon", profile_id)
        self._drop(profile.path)
        logger.info("Deleted profile %s", profile_id)

    def bind(self, profile_id: str) -> None:
        with self._lock:
            if profile_id not in self._profiles:
                raise NotFoundError(f"Unknown connection profile: {profile_id}")
            self._bindings[profile_id] = self._bindings.get(profile_id, 0) + 1

    def release(self, profile_id: str) -> None:
        with self._lock:
            count = self._bindings.get(profile_id, 0) - 1
            if count > 0:
                self._bindings[profile_id] = count
            else:
                self._bindings.pop(profile_id, None)

    def is_bound(self, profile_id: str) -> bool:
        with self._lock:
            return self._bindings.get(profile_id, 0) > 0

    def is_managed(self, profile_id: str) -> bool:
        """Whether the secret agent answers for ``profile_id``."""

        with self._lock:
            profile = self._profiles.get(profile_id)
            return bool(profile and profile.secrets and profile.secrets.agent_owned)

    def apply_signal(self, signal: BusSignal) -> None:
        """Track ``NewConnection``, ``ConnectionRemoved`` and ``Updated``."""

        if signal.member == "NewConnection" and signal.args:
            path = str(signal.args[0])
            if self.by_path(path) is None:
                profile = self._fetch(path)
                if profile is not None:
                    self._store(profile)
        elif signal.member == "ConnectionRemoved" and signal.args:
            self._drop(str(signal.args[0]))
        elif signal.member == "Removed":
            self._drop(signal.path)
        elif signal.member == "Updated":
            profile = self._fetch(signal.path)
            if profile is not None:
                self._store(profile)
            else:
                self._drop(signal.path)

    # ----------------------------- implementation --------------------------
    def _fetch(self, path: str) -> ConnectionProfile | None:
        try:
            settings = self._transport.get_connection_settings(path)
        except DaemonError as exc:
            logger.debug("Unable to read connection %s: %s", path, exc)
            return None
        return profile_from_settings(path, settings)

    def _store(self, profile: ConnectionProfile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile
            self._paths[profile.path] = profile.id

    def _store_settings(self, path: str, settings: Settings) -> None:
        profile = profile_from_settings(path, settings)
        if profile is not None:
            self._store(profile)

    def _drop(self, path: str) -> None:
        with self._lock:
            profile_id = self._paths.pop(path, None)
            if profile_id is not None:
                self._profiles.pop(profile_id, None)

    @staticmethod
    def _new_settings(ssid: bytes, params: SecurityParams) -> Settings:
        wireless: dict[str, object] = {"ssid": ssid, "mode": "infrastructure"}
        if params.hidden:
            wireless["hidden"] = True
        settings: Settings = {
            "connection": {
                "id": ssid_to_text(ssid),
                "uuid": str(uuid.uuid4()),
                "type": WIRELESS_SETTING,
                "autoconnect": True,
            },
            WIRELESS_SETTING: wireless,
            "ipv4": {"method": "auto"},
            "ipv6": {"method": "auto"},
        }
        kind = params.kind
        if kind.secured:
            wireless["security"] = WIRELESS_SECURITY_SETTING
            security: dict[str, object] = {"key-mgmt": _KEY_MGMT[kind]}
            # The key itself is never stored; the daemon asks the agent.
            security[kind.secret_flags_key or "psk-flags"] = SECRET_FLAG_AGENT_OWNED
            if kind is SecurityKind.WEP:
                security["wep-key-type"] = 1
            settings[WIRELESS_SECURITY_SETTING] = security
        return settings


__all__ = [
    "ConnectionProfile",
    "ProfileManager",
    "SecretsReference",
    "SecurityParams",
    "profile_from_settings",
    "version_token",
]
