"""NetworkManager D-Bus names, enumerations and flag decoding."""

from __future__ import annotations

from enum import Enum, IntEnum

NM = "org.freedesktop.NetworkManager"
NM_PATH = "/org/freedesktop/NetworkManager"
NM_IFACE = "org.freedesktop.NetworkManager"
NM_SETTINGS_PATH = "/org/freedesktop/NetworkManager/Settings"
NM_SETTINGS_IFACE = "org.freedesktop.NetworkManager.Settings"
NM_CONNECTION_IFACE = "org.freedesktop.NetworkManager.Settings.Connection"
NM_DEVICE_IFACE = "org.freedesktop.NetworkManager.Device"
NM_WIRELESS_IFACE = "org.freedesktop.NetworkManager.Device.Wireless"
NM_ACCESS_POINT_IFACE = "org.freedesktop.NetworkManager.AccessPoint"
NM_ACTIVE_CONNECTION_IFACE = "org.freedesktop.NetworkManager.Connection.Active"
NM_AGENT_MANAGER_PATH = "/org/freedesktop/NetworkManager/AgentManager"
NM_AGENT_MANAGER_IFACE = "org.freedesktop.NetworkManager.AgentManager"
NM_SECRET_AGENT_PATH = "/org/freedesktop/NetworkManager/SecretAgent"
NM_SECRET_AGENT_IFACE = "org.freedesktop.NetworkManager.SecretAgent"
NM_PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"

NM_DEVICE_TYPE_WIFI = 2

# Error names raised by the daemon that callers map to specific failures.
ERROR_NOT_ALLOWED = "org.freedesktop.NetworkManager.Device.NotAllowed"
ERROR_UNKNOWN_CONNECTION = "org.freedesktop.NetworkManager.UnknownConnection"
ERROR_NOT_ACTIVE = "org.freedesktop.NetworkManager.Device.NotActive"
ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
ERROR_NO_SECRETS = "org.freedesktop.NetworkManager.SecretAgent.NoSecrets"

WIRELESS_SETTING = "802-11-wireless"
WIRELESS_SECURITY_SETTING = "802-11-wireless-security"

# NM_802_11_AP_FLAGS / NM_802_11_AP_SEC flags
AP_FLAGS_PRIVACY = 0x1
AP_SEC_KEY_MGMT_PSK = 0x100
AP_SEC_KEY_MGMT_802_1X = 0x200
AP_SEC_KEY_MGMT_SAE = 0x400
AP_SEC_KEY_MGMT_OWE = 0x800

# NMSettingSecretFlags
SECRET_FLAG_AGENT_OWNED = 0x1
SECRET_FLAG_NOT_SAVED = 0x2

# NMSecretAgentGetSecretsFlags
GET_SECRETS_ALLOW_INTERACTION = 0x1
GET_SECRETS_REQUEST_NEW = 0x2


class NMDeviceState(IntEnum):
    UNKNOWN = 0
    UNMANAGED = 10
    UNAVAILABLE = 20
    DISCONNECTED = 30
    PREPARE = 40
    CONFIG = 50
    NEED_AUTH = 60
    IP_CONFIG = 70
    IP_CHECK = 80
    SECONDARIES = 90
    ACTIVATED = 100
    DEACTIVATING = 110
    FAILED = 120


class NMDeviceStateReason(IntEnum):
    NONE = 0
    UNKNOWN = 1
    NO_SECRETS = 7
    SUPPLICANT_DISCONNECT = 8
    SUPPLICANT_TIMEOUT = 11
    SSID_NOT_FOUND = 53
    CONNECTION_REMOVED = 38
    USER_REQUESTED = 39
    NEW_ACTIVATION = 60


class NMActiveConnectionState(IntEnum):
    UNKNOWN = 0
    ACTIVATING = 1
    ACTIVATED = 2
    DEACTIVATING = 3
    DEACTIVATED = 4


class NMActiveConnectionStateReason(IntEnum):
    UNKNOWN = 0
    NONE = 1
    USER_DISCONNECTED = 2
    DEVICE_DISCONNECTED = 3
    SERVICE_STOPPED = 4
    IP_CONFIG_INVALID = 5
    CONNECT_TIMEOUT = 6
    SERVICE_START_TIMEOUT = 7
    SERVICE_START_FAILED = 8
    NO_SECRETS = 9
    LOGIN_FAILED = 10
    CONNECTION_REMOVED = 11
    DEPENDENCY_FAILED = 12
    DEVICE_REALIZE_FAILED = 13
    DEVICE_REMOVED = 14


class DeviceState(str, Enum):
    """Coarse device lifecycle states tracked by the registry."""

    UNMANAGED = "unmanaged"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class SecurityKind(str, Enum):
    """Key management family advertised by an access point or profile."""

    OPEN = "none"
    WEP = "wep"
    WPA_PSK = "wpa-psk"
    SAE = "sae"
    ENTERPRISE = "wpa-eap"

    @property
    def secured(self) -> bool:
        return self is not SecurityKind.OPEN

    @property
    def secret_key(self) -> str | None:
        """Name of the secret inside the wireless security setting."""

        if self is SecurityKind.WEP:
            return "wep-key0"
        if self in (SecurityKind.WPA_PSK, SecurityKind.SAE):
            return "psk"
        return None

    @property
    def secret_flags_key(self) -> str | None:
        if self is SecurityKind.WEP:
            return "wep-key-flags"
        if self in (SecurityKind.WPA_PSK, SecurityKind.SAE):
            return "psk-flags"
        return None


def device_state_from_nm(value: int) -> DeviceState:
    """Collapse a numeric NetworkManager device state into a ``DeviceState``."""

    try:
        state = NMDeviceState(int(value))
    except ValueError:
        return DeviceState.UNMANAGED
    if state in (NMDeviceState.UNKNOWN, NMDeviceState.UNMANAGED, NMDeviceState.UNAVAILABLE):
        return DeviceState.UNMANAGED
    if state in (NMDeviceState.DISCONNECTED, NMDeviceState.DEACTIVATING):
        return DeviceState.DISCONNECTED
    if state is NMDeviceState.ACTIVATED:
        return DeviceState.CONNECTED
    if state is NMDeviceState.FAILED:
        return DeviceState.FAILED
    return DeviceState.CONNECTING


def security_from_flags(flags: int, wpa_flags: int, rsn_flags: int) -> SecurityKind:
    """Derive the security family from access point flag words."""

    key_mgmt = int(wpa_flags) | int(rsn_flags)
    if key_mgmt & AP_SEC_KEY_MGMT_802_1X:
        return SecurityKind.ENTERPRISE
    if key_mgmt & AP_SEC_KEY_MGMT_PSK:
        return SecurityKind.WPA_PSK
    if key_mgmt & AP_SEC_KEY_MGMT_SAE:
        return SecurityKind.SAE
    if key_mgmt & AP_SEC_KEY_MGMT_OWE:
        # Opportunistic wireless encryption needs no user secret.
        return SecurityKind.OPEN
    if int(flags) & AP_FLAGS_PRIVACY:
        return SecurityKind.WEP
    return SecurityKind.OPEN


def security_from_settings(settings: dict[str, dict[str, object]]) -> SecurityKind:
    """Derive the security family from a connection settings mapping."""

    security = settings.get(WIRELESS_SECURITY_SETTING)
    if not isinstance(security, dict) or not security:
        return SecurityKind.OPEN
    key_mgmt = str(security.get("key-mgmt") or "").strip().lower()
    if key_mgmt in {"wpa-psk", "wpa-none"}:
        return SecurityKind.WPA_PSK
    if key_mgmt == "sae":
        return SecurityKind.SAE
    if key_mgmt in {"wpa-eap", "wpa-eap-suite-b-192", "ieee8021x"}:
        return SecurityKind.ENTERPRISE
    if key_mgmt == "none":
        # Static WEP keys use key-mgmt "none" with a security setting present.
        return SecurityKind.WEP
    return SecurityKind.OPEN


def channel_from_frequency(freq_mhz: float | None) -> int | None:
    """Best-effort conversion from MHz to Wi-Fi channel numbers."""

    if freq_mhz is None or freq_mhz <= 0:
        return None
    if freq_mhz == 2484:
        return 14
    if 2400 <= freq_mhz < 2484:
        channel = int(round((freq_mhz - 2407) / 5))
        return channel if 1 <= channel <= 13 else None
    if 4900 <= freq_mhz <= 5900:
        channel = int(round((freq_mhz - 5000) / 5))
        return channel if channel > 0 else None
    if 5925 <= freq_mhz <= 7125:
        channel = int(round((freq_mhz - 5950) / 5))
        return channel if channel > 0 else None
    return None


def ssid_to_text(ssid: bytes) -> str:
    """Render an SSID for display; SSIDs are not guaranteed to be UTF-8."""

    return bytes(ssid).decode("utf-8", "replace")
