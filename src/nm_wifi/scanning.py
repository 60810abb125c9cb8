"""Scan triggering and the per-device access point table."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Mapping

from .devices import DeviceRegistry
from .errors import BusyError, DaemonError, UnsupportedError
from .networkmanager import (
    ERROR_NOT_ALLOWED,
    SecurityKind,
    channel_from_frequency,
    security_from_flags,
    ssid_to_text,
)
from .transport import NetworkManagerTransport

logger = logging.getLogger(__name__)

_BUSY_HINTS = ("already", "immediately", "in progress")


@dataclass(slots=True)
class AccessPoint:
    """A single BSSID sighting."""

    bssid: str
    ssid: bytes
    strength: int
    last_seen: float
    flags: int = 0
    wpa_flags: int = 0
    rsn_flags: int = 0
    security: SecurityKind = SecurityKind.OPEN
    frequency: int | None = None
    channel: int | None = None
    path: str | None = None

    @classmethod
    def from_properties(
        cls,
        path: str,
        properties: Mapping[str, object],
        seen_at: float,
    ) -> "AccessPoint":
        flags = int(properties.get("Flags") or 0)
        wpa_flags = int(properties.get("WpaFlags") or 0)
        rsn_flags = int(properties.get("RsnFlags") or 0)
        frequency = int(properties.get("Frequency") or 0) or None
        strength = max(0, min(100, int(properties.get("Strength") or 0)))
        bssid = str(properties.get("HwAddress") or "").upper() or path
        return cls(
            bssid=bssid,
            ssid=bytes(properties.get("Ssid") or b""),
            strength=strength,
            last_seen=seen_at,
            flags=flags,
            wpa_flags=wpa_flags,
            rsn_flags=rsn_flags,
            security=security_from_flags(flags, wpa_flags, rsn_flags),
            frequency=frequency,
            channel=channel_from_frequency(frequency),
            path=path,
        )

    def to_dict(self) -> dict[str, object | None]:
        return {
            "bssid": self.bssid,
            "ssid": ssid_to_text(self.ssid),
            "strength": self.strength,
            "security": self.security.value,
            "frequency": self.frequency,
            "channel": self.channel,
            "last_seen": self.last_seen,
        }


@dataclass(slots=True)
class Network:
    """SSID-level view of a snapshot, represented by its strongest AP."""

    ssid: bytes
    strength: int
    security: SecurityKind
    bssid: str
    frequency: int | None = None
    channel: int | None = None
    access_points: int = 1
    connected: bool = False
    known: bool = False

    @property
    def name(self) -> str:
        return ssid_to_text(self.ssid)

    def to_dict(self) -> dict[str, object | None]:
        return {
            "ssid": self.name,
            "strength": self.strength,
            "security": self.security.value,
            "bssid": self.bssid,
            "frequency": self.frequency,
            "channel": self.channel,
            "access_points": self.access_points,
            "connected": self.connected,
            "known": self.known,
        }


class ScanCoordinator:
    """Trigger scans and keep a BSSID-keyed, age-limited table per device."""

    def __init__(
        self,
        transport: NetworkManagerTransport,
        devices: DeviceRegistry,
        *,
        max_age: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_age <= 0:
            raise ValueError("max_age must be positive")
        self._transport = transport
        self._devices = devices
        self._max_age = float(max_age)
        self._clock = clock
        self._tables: dict[str, dict[str, AccessPoint]] = {}
        self._ap_devices: dict[str, str] = {}
        self._in_flight: set[str] = set()
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()
        self._results = threading.Condition(self._lock)

    @property
    def max_age(self) -> float:
        return self._max_age

    @max_age.setter
    def max_age(self, value: float) -> None:
        if value <= 0:
            raise ValueError("max_age must be positive")
        self._max_age = float(value)

    # ------------------------------ operations -----------------------------
    def scanning(self, device_path: str) -> bool:
        with self._lock:
            return device_path in self._in_flight

    def request_scan(self, device_path: str) -> None:
        """Ask the daemon to scan ``device_path``."""

        device = self._devices.get_device(device_path)
        if not device.managed:
            raise UnsupportedError(f"Device {device.interface} cannot scan while unmanaged")
        path = device.path
        with self._lock:
            if path in self._in_flight:
                raise BusyError(f"A scan is already running on {device.interface}")
            self._in_flight.add(path)
        try:
            self._transport.request_scan(path)
        except DaemonError as exc:
            with self._results:
                self._in_flight.discard(path)
                self._results.notify_all()
            message = str(exc).lower()
            if any(hint in message for hint in _BUSY_HINTS):
                raise BusyError(f"A scan is already running on {device.interface}") from exc
            if exc.code == ERROR_NOT_ALLOWED:
                raise UnsupportedError(f"Device {device.interface} refused to scan: {exc}") from exc
            raise
        logger.debug("Requested scan on %s", device.interface)

    def scan(
        self,
        device_path: str,
        timeout: float = 10.0,
        *,
        abort: Callable[[], bool] | None = None,
    ) -> list[AccessPoint]:
        """Request a scan (or join the running one) and wait for its results.

        When no results arrive within ``timeout`` the pending scan is cleared
        and the current snapshot is returned. ``abort`` is checked whenever the
        waiters are woken; once it returns true the wait ends early.
        """

        path = self._devices.get_device(device_path).path
        with self._lock:
            start_generation = self._generations.get(path, 0)
            joining = path in self._in_flight
        if not joining:
            try:
                self.request_scan(path)
            except BusyError:
                logger.debug("Joining scan already running on %s", path)
        deadline = self._clock_deadline(timeout)
        with self._results:
            while self._generations.get(path, 0) == start_generation:
                if abort is not None and abort():
                    logger.debug("Stopped waiting for scan on %s", path)
                    self._in_flight.discard(path)
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Scan on %s produced no results within %.1fs", path, timeout)
                    self._in_flight.discard(path)
                    break
                self._results.wait(remaining)
        return self.snapshot(path)

    def wake(self) -> None:
        """Wake callers blocked in :meth:`scan` so they re-check ``abort``."""

        with self._results:
            self._results.notify_all()

    def complete_scan(self, device_path: str) -> int:
        """Fetch every access point after the daemon reports new results."""

        try:
            ap_paths = self._transport.get_access_points(device_path)
        except DaemonError as exc:
            logger.warning("Unable to list access points on %s: %s", device_path, exc)
            ap_paths = []
        seen_at = self._clock()
        sightings: list[AccessPoint] = []
        for ap_path in ap_paths:
            sighting = self._read_access_point(ap_path, seen_at)
            if sighting is not None:
                sightings.append(sighting)
        merged = self.merge(device_path, sightings)
        with self._results:
            self._in_flight.discard(device_path)
            self._generations[device_path] = self._generations.get(device_path, 0) + 1
            self._results.notify_all()
        logger.debug("Scan on %s reported %d access points", device_path, merged)
        return merged

    def refresh_access_point(self, device_path: str, ap_path: str) -> AccessPoint | None:
        sighting = self._read_access_point(ap_path, self._clock())
        if sighting is None:
            return None
        self.merge(device_path, [sighting])
        return sighting

    def merge(
        self,
        device_path: str,
        sightings: Iterable[AccessPoint],
        seen_at: float | None = None,
    ) -> int:
        """Supersede entries per BSSID; entries not re-reported are kept."""

        count = 0
        with self._lock:
            table = self._tables.setdefault(device_path, {})
            for sighting in sightings:
                if seen_at is not None:
                    sighting = replace(sighting, last_seen=seen_at)
                current = table.get(sighting.bssid)
                if current is not None and current.last_seen > sighting.last_seen:
                    continue
                table[sighting.bssid] = sighting
                if sighting.path:
                    self._ap_devices[sighting.path] = device_path
                count += 1
        return count

    def snapshot(self, device_path: str) -> list[AccessPoint]:
        """Return live entries ordered by strength, then most recent sighting."""

        now = self._clock()
        with self._lock:
            table = self._tables.get(device_path, {})
            expired = [bssid for bssid, ap in table.items() if now - ap.last_seen > self._max_age]
            for bssid in expired:
                ap = table.pop(bssid)
                if ap.path and self._ap_devices.get(ap.path) == device_path:
                    self._ap_devices.pop(ap.path, None)
            entries = [replace(ap) for ap in table.values()]
        if expired:
            logger.debug("Pruned %d expired access points on %s", len(expired), device_path)
        entries.sort(key=lambda ap: (-ap.strength, -ap.last_seen, ap.bssid))
        return entries

    def find(self, device_path: str, ssid: bytes) -> AccessPoint | None:
        for ap in self.snapshot(device_path):
            if ap.ssid == ssid:
                return ap
        return None

    def networks(
        self,
        device_path: str,
        *,
        connected_ssid: bytes | None = None,
        known: Iterable[bytes] = (),
    ) -> list[Network]:
        known_ssids = set(known)
        grouped: dict[bytes, Network] = {}
        for ap in self.snapshot(device_path):
            if not ap.ssid:
                continue
            network = grouped.get(ap.ssid)
            if network is not None:
                network.access_points += 1
                continue
            grouped[ap.ssid] = Network(
                ssid=ap.ssid,
                strength=ap.strength,
                security=ap.security,
                bssid=ap.bssid,
                frequency=ap.frequency,
                channel=ap.channel,
                connected=connected_ssid is not None and ap.ssid == connected_ssid,
                known=ap.ssid in known_ssids,
            )
        return sorted(grouped.values(), key=lambda net: (not net.connected, -net.strength, net.ssid))

    def device_for_access_point(self, ap_path: str) -> str | None:
        with self._lock:
            return self._ap_devices.get(ap_path)

    def forget_device(self, device_path: str) -> None:
        with self._results:
            table = self._tables.pop(device_path, {})
            for ap in table.values():
                if ap.path:
                    self._ap_devices.pop(ap.path, None)
            self._in_flight.discard(device_path)
            self._results.notify_all()

    # ----------------------------- implementation --------------------------
    def _read_access_point(self, ap_path: str, seen_at: float) -> AccessPoint | None:
        try:
            properties = self._transport.get_access_point_properties(ap_path)
        except DaemonError as exc:
            # The access point may vanish between listing and inspection.
            logger.debug("Skipping access point %s: %s", ap_path, exc)
            return None
        return AccessPoint.from_properties(ap_path, properties, seen_at)

    @staticmethod
    def _clock_deadline(timeout: float) -> float:
        return time.monotonic() + max(0.0, float(timeout))


__all__ = ["AccessPoint", "Network", "ScanCoordinator"]
