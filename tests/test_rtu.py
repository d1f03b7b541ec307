import pytest

from relaybus.device import RelayBoard, SettingsStore
from relaybus.pdu import ExceptionCode
from relaybus.rtu import FrameError, RtuSlave, build_frame, crc16


@pytest.fixture
def board():
    with RelayBoard(4, 4, SettingsStore(), address=0x01) as b:
        yield b


@pytest.fixture
def slave(board):
    return RtuSlave(board)


class FakePort:
    def __init__(self, frames, slave, baudrate=9600):
        self._frames = list(frames)
        self._slave = slave
        self.baudrate = baudrate
        self.written = []

    def read(self, size):
        if not self._frames:
            self._slave.stop()
            return b""
        return self._frames.pop(0)

    def write(self, data):
        self.written.append((self.baudrate, bytes(data)))


def test_crc16_check_value():
    assert crc16(b"123456789") == 0x4B37


def test_build_frame_wire_bytes():
    assert build_frame(1, bytes([0x03, 0x00, 0x00, 0x00, 0x01])) == bytes.fromhex(
        "010300000001840a"
    )


@pytest.mark.parametrize("pdu", [b"\x01\x00\x00\x00\x08", b"\x10\x00\x00\x00\x01\x02\x00\x05"])
def test_crc_over_whole_frame_is_zero(pdu):
    assert crc16(build_frame(0x11, pdu)) == 0


def test_write_single_coil_echoes_frame(slave, board):
    frame = build_frame(1, b"\x05\x00\x01\xff\x00")
    assert slave.handle_frame(frame) == frame
    assert board.relay_status(1) is True
    assert board.relay_status(0) is False


def test_short_frame_raises(slave):
    with pytest.raises(FrameError):
        slave.handle_frame(b"\x01\x05\x00\x01")


def test_bad_crc_raises(slave, board):
    frame = bytearray(build_frame(1, b"\x05\x00\x00\xff\x00"))
    frame[-1] ^= 0xFF
    with pytest.raises(FrameError):
        slave.handle_frame(bytes(frame))
    assert board.coil_byte() == 0


def test_wrong_address_ignored(slave, board):
    frame = build_frame(0x22, b"\x05\x00\x00\xff\x00")
    assert slave.handle_frame(frame) is None
    assert board.coil_byte() == 0


def test_broadcast_answered_with_own_address(slave, board):
    response = slave.handle_frame(build_frame(0x00, b"\x05\x00\x02\xff\x00"))
    assert response[0] == board.address
    assert board.relay_status(2) is True


def test_read_coils_reports_relays(slave, board):
    board.set_relay(1, True)
    board.set_relay(3, True)
    response = slave.handle_frame(build_frame(1, b"\x01\x00\x00\x00\x08"))
    assert response == build_frame(1, bytes([0x01, 1, board.coil_byte()]))
    assert crc16(response) == 0


def test_unsupported_function(slave):
    response = slave.handle_frame(build_frame(1, b"\x07\x00\x00\x00\x00"))
    assert response[1] == 0x87
    assert response[2] == ExceptionCode.ILLEGAL_FUNCTION


def test_address_change_replies_from_old_address(slave, board):
    frame = build_frame(1, b"\x10\x00\x00\x00\x01\x02\x00\x05")
    response = slave.handle_frame(frame)
    assert response == build_frame(1, frame[1:6])
    assert board.address == 5


def test_serve_switches_baud_rate(slave, board):
    frames = [
        build_frame(1, b"\x10\x03\xe9\x00\x01\x02\x00\x04"),
        build_frame(1, b"\x03\x00\x00\x00\x01"),
    ]
    port = FakePort(frames, slave)
    slave.serve(port)
    assert board.baud_rate == 19200
    assert [rate for rate, _ in port.written] == [19200, 19200]
    assert port.written[1][1] == build_frame(1, bytes([0x03, 2, 0x00, 0x01]))


def test_serve_skips_bad_frames(slave, board):
    bad = bytearray(build_frame(1, b"\x05\x00\x00\xff\x00"))
    bad[2] ^= 0x01
    good = build_frame(1, b"\x05\x00\x03\xff\x00")
    port = FakePort([b"\x01", bytes(bad), good], slave)
    slave.serve(port)
    assert [data for _, data in port.written] == [good]
    assert board.relay_status(3) is True