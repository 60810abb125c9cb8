"""Command line interface for nm-wifi."""
from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from dataclasses import replace
from typing import Callable, Sequence

from .client import WiFiClient
from .config import ClientSettings, ConfigManager
from .errors import FailureKind, WiFiError
from .orchestrator import AttemptState, ConnectionResult
from .profiles import ConnectionProfile
from .secrets import SecretPrompt
from .system_log import EventLog
from .transport import SecretRequest
from .version import APP_VERSION

# Exit statuses follow nmcli where an equivalent exists.
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID = 2
EXIT_TIMEOUT = 3
EXIT_ACTIVATION_FAILED = 4
EXIT_DAEMON = 8
EXIT_NOT_FOUND = 10

_EXIT_BY_KIND = {
    FailureKind.INVALID_PARAMS: EXIT_INVALID,
    FailureKind.TIMEOUT: EXIT_TIMEOUT,
    FailureKind.SECRET_UNAVAILABLE: EXIT_ACTIVATION_FAILED,
    FailureKind.DAEMON_ERROR: EXIT_DAEMON,
    FailureKind.NOT_FOUND: EXIT_NOT_FOUND,
}

ClientFactory = Callable[..., WiFiClient]


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the nm-wifi CLI."""

    parser = argparse.ArgumentParser(
        prog="nm-wifi",
        description="Manage Wi-Fi connections through NetworkManager",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--config", help="Path to the JSON configuration file.")
    parser.add_argument("--device", help="Wireless interface name or device object path.")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("devices", help="List wireless devices.")
    networks = commands.add_parser("networks", help="List visible networks.")
    networks.add_argument("--rescan", action="store_true", help="Scan before listing.")
    commands.add_parser("status", help="Show the connection state of a device.")

    connect = commands.add_parser("connect", help="Connect to a network.")
    connect.add_argument("ssid", help="Network name.")
    connect.add_argument("--password", help="Network key; prompted for when omitted.")
    connect.add_argument(
        "--no-prompt",
        action="store_true",
        help="Fail instead of asking for a missing secret.",
    )
    connect.add_argument("--timeout", type=float, help="Seconds to wait for the connection.")

    commands.add_parser("disconnect", help="Disconnect a device.")
    commands.add_parser("profiles", help="List saved wireless profiles.")
    forget = commands.add_parser("forget", help="Delete a saved profile.")
    forget.add_argument("profile", help="Profile UUID or name.")

    log = commands.add_parser("log", help="Show recent Wi-Fi events.")
    log.add_argument("--limit", type=int, default=20)
    log.add_argument("--category", help="Only show one category (connection, scan, profile).")
    return parser


def prompt_secret(profile: ConnectionProfile, request: SecretRequest | None) -> str | None:
    """Ask for a network key on the controlling terminal."""

    if not sys.stdin.isatty():
        return None
    try:
        answer = getpass.getpass(f"Key for {profile.name} ({profile.security.value}): ")
    except (EOFError, KeyboardInterrupt):
        return None
    return answer or None


def _emit(args: argparse.Namespace, payload: object, lines: Sequence[str]) -> None:
    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return
    for line in lines:
        print(line)


def _report_error(args: argparse.Namespace, exc: WiFiError) -> int:
    if args.json:
        json.dump({"error": exc.kind.value, "message": str(exc)}, sys.stdout)
        sys.stdout.write("\n")
    else:
        print(f"Error: {exc}", file=sys.stderr)
    return _EXIT_BY_KIND.get(exc.kind, EXIT_ERROR)


def _result_exit(result: ConnectionResult) -> int:
    if result.state is AttemptState.CONNECTED:
        return EXIT_OK
    if result.state is AttemptState.CANCELLED:
        return EXIT_ERROR
    if result.error_kind is FailureKind.TIMEOUT:
        return EXIT_TIMEOUT
    return EXIT_ACTIVATION_FAILED


def _resolve_profile(client: WiFiClient, identifier: str) -> ConnectionProfile:
    profiles = client.list_profiles()
    for profile in profiles:
        if profile.id == identifier:
            return profile
    for profile in profiles:
        if profile.name == identifier:
            return profile
    return client.profiles.get(identifier)


def _run_command(client: WiFiClient, args: argparse.Namespace) -> int:
    command = args.command
    if command == "devices":
        devices = client.list_devices()
        _emit(
            args,
            {"devices": [device.to_dict() for device in devices]},
            [f"{device.interface:<12} {device.state.value:<13} {device.path}" for device in devices]
            or ["No wireless devices found."],
        )
        return EXIT_OK
    if command == "networks":
        networks = client.list_networks(args.device, rescan=args.rescan)
        lines = []
        for network in networks:
            marker = "*" if network.connected else " "
            known = "known" if network.known else ""
            lines.append(
                f"{marker} {network.name:<32} {network.strength:>3}% {network.security.value:<8} {known}".rstrip()
            )
        _emit(args, {"networks": [network.to_dict() for network in networks]}, lines or ["No networks found."])
        return EXIT_OK
    if command == "status":
        status = client.status(args.device)
        payload = status.to_dict()
        line = f"{status.device.interface}: {status.device.state.value}"
        if payload["ssid"]:
            line += f" to {payload['ssid']}"
        _emit(args, payload, [line])
        return EXIT_OK
    if command == "connect":
        result = client.connect(args.ssid, args.password, device=args.device, timeout=args.timeout)
        if result.state is AttemptState.CONNECTED:
            line = f"Connected to {args.ssid}."
        elif result.state is AttemptState.CANCELLED:
            line = f"Connection to {args.ssid} was cancelled."
        else:
            line = f"Connection to {args.ssid} failed: {result.message}"
        _emit(args, result.to_dict(), [line])
        return _result_exit(result)
    if command == "disconnect":
        device = client.disconnect(args.device)
        _emit(args, {"device": device.to_dict()}, [f"Disconnected {device.interface}."])
        return EXIT_OK
    if command == "profiles":
        profiles = client.list_profiles()
        _emit(
            args,
            {"profiles": [profile.to_dict() for profile in profiles]},
            [f"{profile.id}  {profile.name:<32} {profile.security.value}" for profile in profiles]
            or ["No saved profiles."],
        )
        return EXIT_OK
    if command == "forget":
        profile = _resolve_profile(client, args.profile)
        client.forget(profile.id)
        _emit(args, {"deleted": profile.id}, [f"Forgot {profile.name}."])
        return EXIT_OK
    raise AssertionError(f"unhandled command {command}")


def _show_log(settings: ClientSettings, args: argparse.Namespace) -> int:
    event_log = EventLog(settings.resolved_log_path, max_entries=settings.log_max_entries)
    entries = event_log.tail(args.limit, category=args.category, device=args.device)
    _emit(
        args,
        {"entries": [entry.to_dict() for entry in entries]},
        [f"{entry.timestamp:.0f} [{entry.category}] {entry.event}: {entry.message}" for entry in entries]
        or ["No events recorded."],
    )
    return EXIT_OK


def run(
    argv: Sequence[str] | None = None,
    *,
    client_factory: ClientFactory | None = None,
) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = ConfigManager(args.config).effective_settings()
    except (RuntimeError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID
    if args.command == "log":
        return _show_log(settings, args)
    if getattr(args, "no_prompt", False):
        settings = replace(settings, prompt_for_secrets=False)

    prompt: SecretPrompt | None = prompt_secret if settings.prompt_for_secrets else None
    factory = client_factory or WiFiClient.from_settings
    try:
        with factory(settings, prompt=prompt) as client:
            return _run_command(client, args)
    except WiFiError as exc:
        return _report_error(args, exc)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``nm-wifi`` console script."""

    return run(argv)


__all__ = ["build_parser", "main", "prompt_secret", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
