"""Persistent troubleshooting log for connection, scan and profile events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventLogEntry:
    """One recorded Wi-Fi event."""

    timestamp: float
    category: str
    event: str
    message: str
    device: str | None = None
    request_id: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.device is not None:
            payload["device"] = self.device
        if self.request_id is not None:
            payload["request_id"] = self.request_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "EventLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            timestamp = time.time()
        device = payload.get("device")
        request_id = payload.get("request_id")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category.strip() if isinstance(category, str) and category.strip() else "general",
            event=event,
            message=message,
            device=device if isinstance(device, str) else None,
            request_id=request_id if isinstance(request_id, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class EventLog:
    """Append-only JSON lines log with a bounded in-memory tail.

    Every entry is mirrored to the module logger. Persistence is best
    effort: filesystem errors disable the file and are logged once.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    # ------------------------------ operations -----------------------------
    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        device: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> EventLogEntry:
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = EventLogEntry(
            timestamp=time.time(),
            category=category.strip() or "general",
            event=event,
            message=message,
            device=device,
            request_id=request_id,
            metadata=cleaned or None,
        )
        logger.info("[%s] %s: %s", entry.category, event, message)
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        device: str | None = None,
    ) -> list[EventLogEntry]:
        """Return the newest entries, oldest first."""

        with self._lock:
            entries: Iterable[EventLogEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if device:
            entries = [entry for entry in entries if entry.device == device]
        entries = list(entries)
        if limit is not None:
            limit = max(1, int(limit))
            entries = entries[-limit:]
        return entries

    # ----------------------------- implementation --------------------------
    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = EventLogEntry.from_dict(payload)
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log, disabling file output: %s", exc)
            self._path = None


__all__ = ["EventLog", "EventLogEntry"]
