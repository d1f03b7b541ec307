"""Modbus RTU slave for a relay board on a serial (RS-485) line."""

from __future__ import annotations

import argparse
import logging
import threading
from typing import Any

from relaybus.device import DEFAULT_ADDRESS, RelayBoard, SettingsStore
from relaybus.pdu import process_pdu

log = logging.getLogger(__name__)

MIN_FRAME_LENGTH = 8
READ_SIZE = 1024
READ_TIMEOUT = 0.02
BROADCAST_ADDRESS = 0x00


class FrameError(ValueError):
    """Raised for a frame that is too short or fails its checksum."""


def crc16(data: bytes) -> int:
    """Modbus CRC-16 of data; transmitted low byte first."""
    crc = 0xFFFF
    for byte in bytes(data):
        crc ^= byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
    return crc


def build_frame(address: int, pdu: bytes) -> bytes:
    """Prefix the PDU with the slave address and append its CRC."""
    body = bytes([address & 0xFF]) + bytes(pdu)
    return body + crc16(body).to_bytes(2, "little")


class RtuSlave:
    """Answers RTU frames addressed to the board or broadcast."""

    def __init__(self, board: RelayBoard) -> None:
        self.board = board
        self._stop = threading.Event()

    def handle_frame(self, frame: bytes) -> bytes | None:
        """Process one frame and return the response frame.

        Returns None when the frame is addressed to another slave.
        Raises FrameError when the frame is too short or its CRC is wrong.
        """
        frame = bytes(frame)
        if len(frame) < MIN_FRAME_LENGTH:
            raise FrameError(f"Received frame too short: {len(frame)} bytes")

        body = frame[:-2]
        received = int.from_bytes(frame[-2:], "little")
        calculated = crc16(body)
        if received != calculated:
            raise FrameError(
                f"CRC error: received 0x{received:04X}, calculated 0x{calculated:04X}"
            )

        slave_address = frame[0]
        log.info(
            "Slave Address: 0x%02X, Function Code: 0x%02X", slave_address, frame[1]
        )
        if slave_address not in (BROADCAST_ADDRESS, self.board.address):
            log.warning("Wrong slave address: 0x%02X", slave_address)
            return None

        reply_address = self.board.address
        pdu = process_pdu(self.board, body[1:], allow_baud_rate=True)
        return build_frame(reply_address, pdu)

    def serve(self, port: Any, baudrate: int | None = None) -> None:
        """Serve requests on a serial port name or an open serial-like object until stopped."""
        owns_port = isinstance(port, str)
        if owns_port:
            import serial

            rate = baudrate if baudrate is not None else self.board.baud_rate
            link = serial.Serial(port, rate, timeout=READ_TIMEOUT)
        else:
            link = port
            if baudrate is not None:
                link.baudrate = baudrate

        self._stop.clear()
        log.info("Modbus RTU slave started")
        try:
            while not self._stop.is_set():
                data = link.read(READ_SIZE)
                if not data:
                    continue
                log.info("Received %d bytes: %s", len(data), bytes(data).hex(" "))
                rate_before = self.board.baud_rate
                try:
                    response = self.handle_frame(data)
                except FrameError as exc:
                    log.warning("%s", exc)
                    continue
                if response is None:
                    continue
                if self.board.baud_rate != rate_before:
                    link.baudrate = self.board.baud_rate
                log.info("Sending response: %s", response.hex(" "))
                link.write(response)
        finally:
            if owns_port:
                link.close()

    def stop(self) -> None:
        """Make a running serve() return after its current read."""
        self._stop.set()


def _int(text: str) -> int:
    return int(text, 0)


def main(argv: list[str] | None = None) -> int:
    """Run a relay board as a Modbus RTU slave on a serial port."""
    parser = argparse.ArgumentParser(description="Modbus RTU relay module")
    parser.add_argument("port", help="serial port, e.g. /dev/ttyUSB0")
    parser.add_argument("--baudrate", type=int, default=None)
    parser.add_argument("--settings", default=None, help="JSON file for persisted settings")
    parser.add_argument("--address", type=_int, default=DEFAULT_ADDRESS)
    parser.add_argument("--relays", type=int, default=4)
    parser.add_argument("--inputs", type=int, default=4)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    board = RelayBoard(args.relays, args.inputs, SettingsStore(args.settings), args.address)
    slave = RtuSlave(board)
    with board:
        try:
            slave.serve(args.port, args.baudrate)
        except KeyboardInterrupt:
            pass
    return 0