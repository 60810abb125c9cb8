"""Error taxonomy shared by every nm-wifi component."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Stable identifiers callers use to tell failures apart."""

    NOT_FOUND = "not_found"
    BUSY = "busy"
    IN_USE = "in_use"
    UNSUPPORTED = "unsupported"
    INVALID_PARAMS = "invalid_params"
    CONFLICT = "conflict"
    SECRET_UNAVAILABLE = "secret_unavailable"
    TIMEOUT = "timeout"
    DAEMON_ERROR = "daemon_error"


class WiFiError(RuntimeError):
    """Raised when Wi-Fi operations fail."""

    kind: FailureKind = FailureKind.DAEMON_ERROR


class NotFoundError(WiFiError):
    """Unknown device, profile or access point."""

    kind = FailureKind.NOT_FOUND


class BusyError(WiFiError):
    """A conflicting operation is already in flight."""

    kind = FailureKind.BUSY


class InUseError(WiFiError):
    """A profile is bound to a live activation."""

    kind = FailureKind.IN_USE


class UnsupportedError(WiFiError):
    """The device cannot perform the requested operation."""

    kind = FailureKind.UNSUPPORTED


class InvalidParamsError(WiFiError):
    """Security parameters are inconsistent or malformed."""

    kind = FailureKind.INVALID_PARAMS


class ConflictError(WiFiError):
    """A profile changed underneath the caller."""

    kind = FailureKind.CONFLICT


class SecretUnavailableError(WiFiError):
    """No secret source produced a credential."""

    kind = FailureKind.SECRET_UNAVAILABLE


class ActivationTimeoutError(WiFiError):
    """The daemon never reported a terminal activation state."""

    kind = FailureKind.TIMEOUT


class DaemonError(WiFiError):
    """Opaque failure reported by NetworkManager or the bus."""

    kind = FailureKind.DAEMON_ERROR

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


_ERRORS_BY_KIND: dict[FailureKind, type[WiFiError]] = {
    FailureKind.NOT_FOUND: NotFoundError,
    FailureKind.BUSY: BusyError,
    FailureKind.IN_USE: InUseError,
    FailureKind.UNSUPPORTED: UnsupportedError,
    FailureKind.INVALID_PARAMS: InvalidParamsError,
    FailureKind.CONFLICT: ConflictError,
    FailureKind.SECRET_UNAVAILABLE: SecretUnavailableError,
    FailureKind.TIMEOUT: ActivationTimeoutError,
    FailureKind.DAEMON_ERROR: DaemonError,
}


def error_for_kind(kind: FailureKind, message: str) -> WiFiError:
    """Build the exception matching ``kind``."""

    return _ERRORS_BY_KIND.get(kind, WiFiError)(message)


__all__ = [
    "ActivationTimeoutError",
    "BusyError",
    "ConflictError",
    "DaemonError",
    "FailureKind",
    "InUseError",
    "InvalidParamsError",
    "NotFoundError",
    "SecretUnavailableError",
    "UnsupportedError",
    "WiFiError",
    "error_for_kind",
]
