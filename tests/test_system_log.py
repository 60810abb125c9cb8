from pathlib import Path
import json

import pytest

from nm_wifi.system_log import EventLog, EventLogEntry


def test_record_persists_and_reloads(tmp_path: Path):
    path = tmp_path / "logs" / "events.jsonl"
    log = EventLog(path)
    log.record("connection", "started", "Connecting wlan0 to Home", device="/dev/1", request_id="abc")
    log.record("scan", "completed", "Scan found 3 access point(s)", device="/dev/1")

    reloaded = EventLog(path)
    entries = reloaded.tail()
    assert [entry.event for entry in entries] == ["started", "completed"]
    assert entries[0].request_id == "abc"
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2


def test_metadata_drops_empty_values(tmp_path: Path):
    log = EventLog(tmp_path / "events.jsonl")
    entry = log.record("connection", "failed", "Timed out", metadata={"ssid": "Home", "error": None})
    assert entry.metadata == {"ssid": "Home"}
    assert "error" not in json.dumps(entry.to_dict())


def test_tail_filters_and_limits():
    log = EventLog(None, max_entries=10)
    for index in range(5):
        log.record("scan", f"scan-{index}", "scan", device="/dev/1" if index % 2 else "/dev/2")
    log.record("profile", "deleted", "Forgot Home")

    assert [entry.event for entry in log.tail(2)] == ["scan-4", "deleted"]
    assert [entry.event for entry in log.tail(category="scan", device="/dev/1")] == ["scan-1", "scan-3"]
    assert [entry.event for entry in log.tail(category="profile")] == ["deleted"]


def test_memory_is_bounded():
    log = EventLog(None, max_entries=3)
    for index in range(5):
        log.record("scan", str(index), "scan")
    assert [entry.event for entry in log.tail()] == ["2", "3", "4"]


def test_invalid_lines_are_skipped(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        "not json\n"
        + json.dumps({"category": "scan", "event": "completed", "message": "ok", "timestamp": 5}) + "\n"
        + json.dumps({"event": 3}) + "\n",
        encoding="utf-8",
    )
    entries = EventLog(path).tail()
    assert len(entries) == 1
    assert entries[0].timestamp == 5.0


def test_entry_from_dict_defaults_category():
    entry = EventLogEntry.from_dict({"event": "x", "message": "y", "category": " "})
    assert entry is not None and entry.category == "general"
    assert EventLogEntry.from_dict(["not", "a", "dict"]) is None


def test_max_entries_must_be_positive():
    with pytest.raises(ValueError):
        EventLog(None, max_entries=0)


def test_entries_are_mirrored_to_logging(caplog):
    caplog.set_level("INFO", logger="nm_wifi.system_log")
    EventLog(None).record("connection", "connected", "Connected")
    assert "[connection] connected: Connected" in caplog.text
