"""nm-wifi: a NetworkManager Wi-Fi client with a connection orchestrator."""

from typing import Any

from .client import DeviceStatus, WiFiClient
from .config import ClientSettings, ConfigManager
from .errors import FailureKind, WiFiError
from .orchestrator import AttemptState, ConnectionResult
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "AttemptState",
    "ClientSettings",
    "ConfigManager",
    "ConnectionResult",
    "DeviceStatus",
    "FailureKind",
    "WiFiClient",
    "WiFiError",
    "create_app",
]
