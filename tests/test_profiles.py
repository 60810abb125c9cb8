import threading
import time

import pytest

from nm_wifi.errors import ConflictError, InUseError, InvalidParamsError, NotFoundError
from nm_wifi.networkmanager import (
    NM_CONNECTION_IFACE,
    NM_SETTINGS_IFACE,
    NM_SETTINGS_PATH,
    SECRET_FLAG_AGENT_OWNED,
    WIRELESS_SECURITY_SETTING,
    SecurityKind,
)
from nm_wifi.profiles import ProfileManager, SecurityParams, profile_from_settings, version_token
from nm_wifi.transport import BusSignal


@pytest.fixture
def manager(nm) -> ProfileManager:
    return ProfileManager(nm)


@pytest.mark.parametrize(
    "params",
    [
        SecurityParams(SecurityKind.OPEN, "secret"),
        SecurityParams(SecurityKind.WPA_PSK, "short"),
        SecurityParams(SecurityKind.WPA_PSK, "x" * 64),
        SecurityParams(SecurityKind.WEP, "1234"),
        SecurityParams(SecurityKind.SAE, ""),
        SecurityParams(SecurityKind.ENTERPRISE),
    ],
)
def test_invalid_security_params(params: SecurityParams):
    with pytest.raises(InvalidParamsError):
        params.validate()


@pytest.mark.parametrize(
    "params",
    [
        SecurityParams(SecurityKind.OPEN),
        SecurityParams(SecurityKind.WPA_PSK),
        SecurityParams(SecurityKind.WPA_PSK, "correct horse"),
        SecurityParams(SecurityKind.WPA_PSK, "a" * 64),
        SecurityParams(SecurityKind.WEP, "0123456789"),
        SecurityParams(SecurityKind.WEP, "abcde"),
        SecurityParams(SecurityKind.SAE, "pw"),
    ],
)
def test_valid_security_params(params: SecurityParams):
    params.validate()


def test_version_token_ignores_secrets_and_timestamp():
    base = {
        "connection": {"id": "Home", "uuid": "u", "type": "802-11-wireless", "timestamp": 1},
        "802-11-wireless": {"ssid": b"Home"},
        WIRELESS_SECURITY_SETTING: {"key-mgmt": "wpa-psk", "psk": "one"},
    }
    changed_secret = {
        "connection": {"id": "Home", "uuid": "u", "type": "802-11-wireless", "timestamp": 99},
        "802-11-wireless": {"ssid": b"Home"},
        WIRELESS_SECURITY_SETTING: {"key-mgmt": "wpa-psk", "psk": "two"},
    }
    renamed = {
        "connection": {"id": "Other", "uuid": "u", "type": "802-11-wireless", "timestamp": 1},
        "802-11-wireless": {"ssid": b"Home"},
        WIRELESS_SECURITY_SETTING: {"key-mgmt": "wpa-psk", "psk": "one"},
    }

    assert version_token(base) == version_token(changed_secret)
    assert version_token(base) != version_token(renamed)


def test_profile_from_settings_skips_non_wireless():
    settings = {"connection": {"id": "Wired", "uuid": "u", "type": "802-3-ethernet"}}

    assert profile_from_settings("/c/1", settings) is None


def test_refresh_loads_wireless_profiles(nm, manager):
    nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    nm.add_profile("Cafe", key_mgmt=None, uuid="11111111-0000-4000-8000-000000000002")

    profiles = manager.refresh()

    assert [profile.name for profile in profiles] == ["Cafe", "Home"]
    home = manager.get("11111111-0000-4000-8000-000000000001")
    assert home.security is SecurityKind.WPA_PSK
    assert home.secrets is not None and home.secrets.agent_owned
    assert manager.known_ssids() == {b"Home", b"Cafe"}


def test_find_or_create_never_stores_the_key(nm, manager):
    profile = manager.find_or_create(b"Home", SecurityParams(SecurityKind.WPA_PSK, "correct horse"))

    stored = nm.connections[profile.path]
    security = stored[WIRELESS_SECURITY_SETTING]
    assert "psk" not in security
    assert security["psk-flags"] == SECRET_FLAG_AGENT_OWNED
    assert profile.secrets.agent_owned
    assert manager.is_managed(profile.id)


def test_find_or_create_reuses_matching_profile(nm, manager):
    first = manager.find_or_create(b"Home", SecurityParams(SecurityKind.WPA_PSK))
    second = manager.find_or_create(b"Home", SecurityParams(SecurityKind.WPA_PSK))
    other = manager.find_or_create(b"Home", SecurityParams(SecurityKind.SAE))

    assert first.id == second.id
    assert other.id != first.id
    assert nm.count("add_connection") == 2


def test_concurrent_find_or_create_creates_one_profile(nm, manager):
    barrier = threading.Barrier(4)
    ids: list[str] = []

    def create() -> None:
        barrier.wait()
        ids.append(manager.find_or_create(b"Home", SecurityParams(SecurityKind.OPEN)).id)

    threads = [threading.Thread(target=create) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2.0)

    assert len(set(ids)) == 1
    assert nm.count("add_connection") == 1


def test_update_applies_changes_with_current_version(nm, manager):
    path = nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    manager.refresh()
    profile = manager.get("11111111-0000-4000-8000-000000000001")

    updated = manager.update(profile.id, {"name": "Home 5G", "priority": 5, "autoconnect": False}, profile.version)

    assert updated.name == "Home 5G"
    assert updated.priority == 5
    assert not updated.autoconnect
    assert updated.version != profile.version
    assert nm.connections[path]["connection"]["autoconnect-priority"] == 5


def test_update_with_stale_version_conflicts(nm, manager):
    path = nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    manager.refresh()
    profile = manager.get("11111111-0000-4000-8000-000000000001")
    nm.connections[path]["connection"]["id"] = "Changed elsewhere"

    with pytest.raises(ConflictError):
        manager.update(profile.id, {"priority": 1}, profile.version)

    assert manager.get(profile.id).name == "Changed elsewhere"
    assert nm.count("update_connection") == 0


def test_update_rejects_immutable_fields(nm, manager):
    nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    manager.refresh()
    profile = manager.get("11111111-0000-4000-8000-000000000001")

    with pytest.raises(InvalidParamsError):
        manager.update(profile.id, {"ssid": "Other"}, profile.version)


def test_delete_refuses_bound_profile(nm, manager):
    nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    manager.refresh()
    manager.bind("11111111-0000-4000-8000-000000000001")

    with pytest.raises(InUseError):
        manager.delete("11111111-0000-4000-8000-000000000001")

    manager.release("11111111-0000-4000-8000-000000000001")
    manager.delete("11111111-0000-4000-8000-000000000001")
    with pytest.raises(NotFoundError):
        manager.get("11111111-0000-4000-8000-000000000001")


def test_delete_tolerates_profile_already_removed_by_daemon(nm, manager):
    path = nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    manager.refresh()
    del nm.connections[path]

    manager.delete("11111111-0000-4000-8000-000000000001")

    assert manager.list_profiles() == []


def test_signals_keep_profiles_in_sync(nm, manager):
    manager.refresh()
    path = nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")

    manager.apply_signal(BusSignal(NM_SETTINGS_PATH, NM_SETTINGS_IFACE, "NewConnection", (path,)))
    assert manager.by_path(path).name == "Home"

    nm.connections[path]["connection"]["id"] = "Renamed"
    manager.apply_signal(BusSignal(path, NM_CONNECTION_IFACE, "Updated"))
    assert manager.by_path(path).name == "Renamed"

    manager.apply_signal(BusSignal(NM_SETTINGS_PATH, NM_SETTINGS_IFACE, "ConnectionRemoved", (path,)))
    assert manager.by_path(path) is None


def test_concurrent_updates_with_the_same_version_conflict(nm, manager, monkeypatch):
    nm.add_profile("Home", uuid="11111111-0000-4000-8000-000000000001")
    manager.refresh()
    profile = manager.get("11111111-0000-4000-8000-000000000001")
    original_update = nm.update_connection

    def slow_update(path, settings):
        time.sleep(0.1)
        original_update(path, settings)

    monkeypatch.setattr(nm, "update_connection", slow_update)
    barrier = threading.Barrier(2)
    outcomes: list[tuple[str, str]] = []

    def rename(name: str) -> None:
        barrier.wait()
        try:
            manager.update(profile.id, {"name": name}, profile.version)
        except ConflictError:
            outcomes.append(("conflict", name))
        else:
            outcomes.append(("ok", name))

    threads = [threading.Thread(target=rename, args=(name,)) for name in ("A", "B")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2.0)

    assert sorted(kind for kind, _ in outcomes) == ["conflict", "ok"]
    winner = next(name for kind, name in outcomes if kind == "ok")
    assert manager.get(profile.id).name == winner
    assert nm.count("update_connection") == 1
