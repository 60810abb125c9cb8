"""Configuration management for nm-wifi."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

DEFAULT_CONFIG_PATH = Path("~/.config/nm-wifi/config.json")
DEFAULT_LOG_PATH = Path("~/.local/state/nm-wifi/events.jsonl")
DEFAULT_AGENT_IDENTIFIER = "io.nmwifi.agent"

ENV_INTERFACE = "NM_WIFI_INTERFACE"
ENV_ACTIVATION_TIMEOUT = "NM_WIFI_ACTIVATION_TIMEOUT"
ENV_SCAN_TIMEOUT = "NM_WIFI_SCAN_TIMEOUT"
ENV_CONFIG = "NM_WIFI_CONFIG"


@dataclass(frozen=True, slots=True)
class ClientSettings:
    """Policy values for scans, activation and secret handling."""

    interface: str | None = None
    scan_max_age: float = 120.0
    scan_timeout: float = 10.0
    activation_timeout: float = 60.0
    agent_identifier: str = DEFAULT_AGENT_IDENTIFIER
    prompt_for_secrets: bool = True
    cache_secrets: bool = True
    log_path: str | None = str(DEFAULT_LOG_PATH)
    log_max_entries: int = 500

    def __post_init__(self) -> None:
        if self.scan_max_age <= 0:
            raise ValueError("Scan max age must be positive")
        if not 0 < self.scan_timeout <= 300:
            raise ValueError("Scan timeout must be between 0 and 300 seconds")
        if not 0 < self.activation_timeout <= 600:
            raise ValueError("Activation timeout must be between 0 and 600 seconds")
        if not self.agent_identifier or len(self.agent_identifier) > 255:
            raise ValueError("Agent identifier must be 1-255 characters")
        if self.log_max_entries < 1:
            raise ValueError("Log size must be positive")

    @property
    def resolved_log_path(self) -> Path | None:
        if not self.log_path:
            return None
        return Path(self.log_path).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_SETTINGS = ClientSettings()


def _parse_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if math.isnan(float(value)):
            raise ValueError("Flags must be boolean values")
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"true", "1", "yes", "on", "enabled"}:
            return True
        if text in {"false", "0", "no", "off", "disabled"}:
            return False
    raise ValueError("Flags must be boolean values")


def _parse_seconds(value: Any, *, default: float, name: str) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number of seconds")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number of seconds") from exc
    if math.isnan(seconds) or math.isinf(seconds):
        raise ValueError(f"{name} must be finite")
    return seconds


def _parse_interface(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("Interface must be a string")
    text = value.strip()
    return text or None


def _parse_log(value: Any, *, default: ClientSettings) -> tuple[str | None, int]:
    if value is None:
        return default.log_path, default.log_max_entries
    if isinstance(value, (str, Path)):
        return str(value).strip() or None, default.log_max_entries
    if not isinstance(value, Mapping):
        raise ValueError("Log settings must be provided as a mapping")
    path_raw = value.get("path", default.log_path)
    if path_raw is None or path_raw is False:
        path = None
    elif isinstance(path_raw, (str, Path)):
        path = str(path_raw).strip() or None
    else:
        raise ValueError("Log path must be a string")
    try:
        max_entries = int(value.get("max_entries", default.log_max_entries))
    except (TypeError, ValueError) as exc:
        raise ValueError("Log max_entries must be an integer") from exc
    return path, max_entries


def parse_settings(payload: Mapping[str, Any], *, default: ClientSettings = DEFAULT_SETTINGS) -> ClientSettings:
    """Build settings from a JSON payload, keeping defaults for missing keys."""

    scan_payload = payload.get("scan")
    if scan_payload is None:
        scan_payload = {}
    if not isinstance(scan_payload, Mapping):
        raise ValueError("Scan settings must be provided as a mapping")
    secrets_payload = payload.get("secrets")
    if secrets_payload is None:
        secrets_payload = {}
    if not isinstance(secrets_payload, Mapping):
        raise ValueError("Secret settings must be provided as a mapping")
    agent_raw = secrets_payload.get("agent_identifier", default.agent_identifier)
    if not isinstance(agent_raw, str):
        raise ValueError("Agent identifier must be a string")
    log_path, log_max_entries = _parse_log(payload.get("log"), default=default)
    return ClientSettings(
        interface=_parse_interface(payload.get("interface", default.interface)),
        scan_max_age=_parse_seconds(
            scan_payload.get("max_age"), default=default.scan_max_age, name="Scan max age"
        ),
        scan_timeout=_parse_seconds(
            scan_payload.get("timeout"), default=default.scan_timeout, name="Scan timeout"
        ),
        activation_timeout=_parse_seconds(
            payload.get("activation_timeout"),
            default=default.activation_timeout,
            name="Activation timeout",
        ),
        agent_identifier=agent_raw.strip() or default.agent_identifier,
        prompt_for_secrets=_parse_flag(secrets_payload.get("prompt"), default=default.prompt_for_secrets),
        cache_secrets=_parse_flag(secrets_payload.get("cache"), default=default.cache_secrets),
        log_path=log_path,
        log_max_entries=log_max_entries,
    )


def settings_payload(settings: ClientSettings) -> Dict[str, Any]:
    return {
        "interface": settings.interface,
        "activation_timeout": settings.activation_timeout,
        "scan": {"max_age": settings.scan_max_age, "timeout": settings.scan_timeout},
        "secrets": {
            "agent_identifier": settings.agent_identifier,
            "prompt": settings.prompt_for_secrets,
            "cache": settings.cache_secrets,
        },
        "log": {"path": settings.log_path, "max_entries": settings.log_max_entries},
    }


def apply_environment(settings: ClientSettings, environ: Mapping[str, str] | None = None) -> ClientSettings:
    """Overlay ``NM_WIFI_*`` environment overrides onto ``settings``."""

    env = os.environ if environ is None else environ
    changes: Dict[str, Any] = {}
    if ENV_INTERFACE in env:
        changes["interface"] = _parse_interface(env[ENV_INTERFACE])
    if env.get(ENV_ACTIVATION_TIMEOUT):
        changes["activation_timeout"] = _parse_seconds(
            env[ENV_ACTIVATION_TIMEOUT], default=settings.activation_timeout, name=ENV_ACTIVATION_TIMEOUT
        )
    if env.get(ENV_SCAN_TIMEOUT):
        changes["scan_timeout"] = _parse_seconds(
            env[ENV_SCAN_TIMEOUT], default=settings.scan_timeout, name=ENV_SCAN_TIMEOUT
        )
    return replace(settings, **changes) if changes else settings


def default_config_path(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    raw = env.get(ENV_CONFIG)
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_PATH.expanduser()


class ConfigManager:
    """Stores client settings on disk with thread-safety."""

    def __init__(self, config_path: Path | str | None = None) -> None:
        self._path = Path(config_path) if config_path is not None else default_config_path()
        self._lock = Lock()
        self._settings = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> ClientSettings:
        if not self._path.exists():
            return DEFAULT_SETTINGS
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return parse_settings(payload)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(settings_payload(self._settings), indent=2), encoding="utf-8")

    def get_settings(self) -> ClientSettings:
        with self._lock:
            return self._settings

    def effective_settings(self, environ: Mapping[str, str] | None = None) -> ClientSettings:
        """Stored settings with environment overrides applied."""

        return apply_environment(self.get_settings(), environ)

    def set_settings(self, data: Mapping[str, Any] | ClientSettings) -> ClientSettings:
        with self._lock:
            if isinstance(data, ClientSettings):
                settings = data
            else:
                merged = settings_payload(self._settings)
                for key, value in data.items():
                    if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                        merged[key] = {**merged[key], **value}
                    else:
                        merged[key] = value
                settings = parse_settings(merged)
            self._settings = settings
            self._save()
        return settings


__all__ = [
    "ClientSettings",
    "ConfigManager",
    "DEFAULT_SETTINGS",
    "apply_environment",
    "default_config_path",
    "parse_settings",
    "settings_payload",
]
