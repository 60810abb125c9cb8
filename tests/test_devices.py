import pytest

from nm_wifi.devices import DeviceRegistry
from nm_wifi.errors import NotFoundError
from nm_wifi.networkmanager import NM_IFACE, NM_PATH, DeviceState, NMDeviceState


def test_refresh_registers_only_wireless_devices(nm):
    wlan = nm.add_device("wlan0")
    nm.add_ethernet("eth0")
    registry = DeviceRegistry(nm)

    devices = registry.refresh()

    assert [device.path for device in devices] == [wlan]
    assert devices[0].state is DeviceState.DISCONNECTED
    assert devices[0].managed


def test_get_device_by_interface_or_path(nm):
    path = nm.add_device("wlan1")
    registry = DeviceRegistry(nm)
    registry.refresh()

    assert registry.get_device("wlan1").path == path
    assert registry.get_device(path).interface == "wlan1"
    with pytest.raises(NotFoundError):
        registry.get_device("wlan9")


def test_default_device_prefers_connected(nm):
    nm.add_device("wlan0")
    connected = nm.add_device("wlan1", state=NMDeviceState.ACTIVATED)
    registry = DeviceRegistry(nm)
    registry.refresh()

    assert registry.default_device().path == connected


def test_default_device_skips_unmanaged(nm):
    nm.add_device("wlan0", state=NMDeviceState.UNMANAGED)
    registry = DeviceRegistry(nm)
    registry.refresh()

    with pytest.raises(NotFoundError):
        registry.default_device()


def test_apply_state_notifies_listeners_on_change_only(nm):
    path = nm.add_device()
    registry = DeviceRegistry(nm)
    registry.refresh()
    seen = []
    registry.add_listener(lambda device, old, new, reason: seen.append((old, new, reason)))

    assert registry.apply_state(path, int(NMDeviceState.PREPARE), 0)
    assert not registry.apply_state(path, int(NMDeviceState.CONFIG), 0)
    assert registry.apply_state(path, int(NMDeviceState.FAILED), 7)

    assert seen == [
        (DeviceState.DISCONNECTED, DeviceState.CONNECTING, 0),
        (DeviceState.CONNECTING, DeviceState.FAILED, 7),
    ]


def test_removed_device_is_hidden_and_ignores_state(nm):
    path = nm.add_device()
    registry = DeviceRegistry(nm)
    registry.refresh()

    registry.remove(path)

    assert registry.list_devices() == []
    assert not registry.apply_state(path, int(NMDeviceState.ACTIVATED), 0)
    with pytest.raises(NotFoundError):
        registry.get_device(path)


def test_callers_receive_copies(nm):
    path = nm.add_device()
    registry = DeviceRegistry(nm)
    registry.refresh()

    device = registry.get_device(path)
    device.state = DeviceState.FAILED

    assert registry.get_device(path).state is DeviceState.DISCONNECTED


def test_device_added_signal_is_routed_to_discovery(nm, make_client, settle):
    client = make_client()
    path = nm.add_device("wlan2")

    nm.emit(NM_PATH, NM_IFACE, "DeviceAdded", path)
    settle(client)

    assert [device.interface for device in client.list_devices()] == ["wlan2"]
