import json
import time

import pytest

from relaybus.device import DeviceError, RelayBoard, SettingsStore


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def board():
    with RelayBoard(4, 4, SettingsStore()) as b:
        yield b


def test_store_round_trip_across_instances(tmp_path):
    path = tmp_path / "settings.json"
    SettingsStore(path).save("dev_address", 17)
    assert SettingsStore(path).load() == {"dev_address": 17}


def test_store_keeps_other_keys(tmp_path):
    store = SettingsStore(tmp_path / "s.json")
    store.save("dev_address", 5)
    store.save("baud_rate", 19200)
    assert store.load() == {"dev_address": 5, "baud_rate": 19200}


def test_memory_store_round_trip():
    store = SettingsStore()
    store.save("baud_rate", 9600)
    assert store.load()["baud_rate"] == 9600


def test_store_missing_or_corrupt_file_is_empty(tmp_path):
    assert SettingsStore(tmp_path / "absent.json").load() == {}
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert SettingsStore(bad).load() == {}


def test_default_address_and_baud():
    b = RelayBoard()
    assert b.address == 0xFF
    assert b.baud_rate == 9600


def test_stored_settings_override_defaults(tmp_path):
    path = tmp_path / "s.json"
    path.write_text(json.dumps({"dev_address": 9, "baud_rate": 19200}), encoding="utf-8")
    b = RelayBoard(2, 2, SettingsStore(path), address=1)
    assert b.address == 9
    assert b.baud_rate == 19200


def test_set_device_address_persists(tmp_path):
    path = tmp_path / "s.json"
    b = RelayBoard(4, 4, SettingsStore(path))
    b.set_device_address(247)
    assert b.address == 247
    assert RelayBoard(4, 4, SettingsStore(path)).address == 247


@pytest.mark.parametrize("bad", [0, 248, 254])
def test_set_device_address_rejects_invalid(board, bad):
    board.set_device_address(3)
    with pytest.raises(DeviceError):
        board.set_device_address(bad)
    assert board.address == 3


def test_broadcast_style_address_ff_accepted(board):
    board.set_device_address(1)
    board.set_device_address(0xFF)
    assert board.address == 0xFF


@pytest.mark.parametrize("code,rate", [(3, 9600), (4, 19200)])
def test_set_baud_rate(tmp_path, code, rate):
    store = SettingsStore(tmp_path / "s.json")
    b = RelayBoard(4, 4, store)
    assert b.set_baud_rate(code) == rate
    assert b.baud_rate == rate
    assert store.load()["baud_rate"] == rate


def test_set_baud_rate_rejects_unknown_code(board):
    with pytest.raises(DeviceError):
        board.set_baud_rate(5)
    assert board.baud_rate == 9600


def test_set_relay_and_status(board):
    board.set_relay(2, True)
    assert board.relay_status(1) is True
    assert board.relay_status(0) is False
    board.set_relay(2, False)
    assert board.relay_status(1) is False


@pytest.mark.parametrize("num", [0, 5])
def test_set_relay_out_of_range(board, num):
    with pytest.raises(DeviceError):
        board.set_relay(num, True)


def test_two_relay_board_rejects_third_relay():
    b = RelayBoard(2, 2)
    with pytest.raises(DeviceError):
        b.set_relay(3, True)
    with pytest.raises(DeviceError):
        b.relay_status(2)


def test_coil_byte_packs_relays(board):
    board.set_relay(1, True)
    board.set_relay(3, True)
    assert board.coil_byte() == 0b0101


def test_coil_byte_round_trip(board):
    for num in range(1, 5):
        board.set_relay(num, True)
    states = [board.relay_status(i) for i in range(4)]
    assert all(states)
    assert board.coil_byte() == 0x0F


def test_input_byte_packs_inputs(board):
    board.set_input(3, True)
    assert board.input_byte() == 0b1000
    board.set_input(3, False)
    assert board.input_byte() == 0
    with pytest.raises(DeviceError):
        board.set_input(4, True)


@pytest.mark.parametrize("mode,expected", [(1, True), (3, True), (0, False), (2, False)])
def test_steady_mode_sets_state(board, mode, expected):
    board.set_flashing_mode(1, mode, 0)
    assert board.relay_status(0) is expected


def test_flashing_toggles_relay(board):
    board.set_flashing_mode(2, 1, 1)
    assert board.relay_status(1) is True
    assert _wait_for(lambda: board.relay_status(1) is False)
    assert _wait_for(lambda: board.relay_status(1) is True)


def test_new_mode_replaces_flashing(board):
    board.set_flashing_mode(1, 1, 1)
    board.set_flashing_mode(1, 0, 0)
    time.sleep(0.3)
    assert board.relay_status(0) is False


def test_close_stops_flashing():
    b = RelayBoard(4, 4)
    b.set_flashing_mode(4, 3, 1)
    b.close()
    before = b.relay_status(3)
    time.sleep(0.3)
    assert b.relay_status(3) is before


def test_flashing_invalid_relay(board):
    with pytest.raises(DeviceError):
        board.set_flashing_mode(5, 1, 10)


def test_invalid_counts_rejected():
    with pytest.raises(ValueError):
        RelayBoard(0, 4)
    with pytest.raises(ValueError):
        RelayBoard(4, 9)