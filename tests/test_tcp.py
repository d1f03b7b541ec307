import socket
import threading

import pytest

from relaybus.device import RelayBoard, SettingsStore
from relaybus.pdu import ExceptionCode
from relaybus.rtu import FrameError
from relaybus.tcp import TcpSlave


@pytest.fixture
def board():
    with RelayBoard(2, 2, SettingsStore(), address=0x01) as b:
        yield b


@pytest.fixture
def slave(board):
    return TcpSlave(board)


def mbap(transaction, unit, pdu):
    return transaction.to_bytes(2, "big") + b"\x00\x00" + (len(pdu) + 1).to_bytes(2, "big") + bytes([unit]) + pdu


def test_read_holding_register_wire_bytes(slave):
    request = bytes.fromhex("000100000006010300000001")
    assert slave.handle_request(request) == bytes.fromhex("0001000000050103020001")


def test_write_single_coil_echo(slave, board):
    request = mbap(0x1234, 1, b"\x05\x00\x01\xff\x00")
    response = slave.handle_request(request)
    assert response == request
    assert board.relay_status(1) is True


def test_length_field_matches_response(slave, board):
    board.set_input(1, True)
    response = slave.handle_request(mbap(7, 1, b"\x02\x00\x00\x00\x08"))
    assert int.from_bytes(response[4:6], "big") == len(response) - 6
    assert response[7:] == bytes([0x02, 1, board.input_byte()])


def test_wrong_unit_ignored(slave, board):
    assert slave.handle_request(mbap(1, 9, b"\x05\x00\x00\xff\x00")) is None
    assert board.coil_byte() == 0


def test_broadcast_unit_accepted(slave, board):
    response = slave.handle_request(mbap(2, 0, b"\x05\x00\x00\xff\x00"))
    assert response[6] == 0
    assert board.relay_status(0) is True


def test_short_request_raises(slave):
    with pytest.raises(FrameError):
        slave.handle_request(bytes.fromhex("00010000000601"))


def test_baud_rate_register_rejected(slave, board):
    response = slave.handle_request(mbap(3, 1, b"\x10\x03\xe9\x00\x01\x02\x00\x04"))
    assert response[7] == 0x90
    assert response[8] == ExceptionCode.ILLEGAL_DATA_ADDRESS
    assert board.baud_rate == 9600


def test_coil_beyond_board_still_echoed(slave, board):
    request = mbap(4, 1, b"\x05\x00\x02\xff\x00")
    assert slave.handle_request(request) == request
    assert board.coil_byte() == 0


def test_write_multiple_coils(slave, board):
    request = mbap(5, 1, b"\x0f\x00\x00\x00\x08\x01\x02")
    response = slave.handle_request(request)
    assert response[7:] == request[7:12]
    assert board.relay_status(0) is False
    assert board.relay_status(1) is True


def test_serve_over_socket(slave, board):
    thread = threading.Thread(target=slave.serve, args=("127.0.0.1", 0), daemon=True)
    thread.start()
    try:
        address = slave.wait_ready(5)
        first = mbap(1, 1, b"\x05\x00\x00\xff\x00")
        second = mbap(2, 1, b"\x01\x00\x00\x00\x08")
        with socket.create_connection(address, timeout=5) as client:
            client.sendall(first + second)
            received = b""
            while len(received) < len(first) + 10:
                chunk = client.recv(1024)
                if not chunk:
                    break
                received += chunk
        assert received[: len(first)] == first
        assert received[len(first):] == slave.handle_request(second)
        assert board.relay_status(0) is True
    finally:
        slave.shutdown()
        thread.join(5)
    assert not thread.is_alive()