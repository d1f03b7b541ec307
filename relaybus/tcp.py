"""Modbus TCP slave for a relay board."""

from __future__ import annotations

import argparse
import logging
import socket
import socketserver
import threading
from collections.abc import Iterator

from relaybus.device import RelayBoard, SettingsStore
from relaybus.pdu import process_pdu
from relaybus.rtu import FrameError

log = logging.getLogger(__name__)

MODBUS_TCP_PORT = 502
DEFAULT_TCP_ADDRESS = 0x01
MBAP_LENGTH = 7
MIN_REQUEST_LENGTH = MBAP_LENGTH + 5
RECV_SIZE = 1024
MAX_FRAME_LENGTH = 254
BROADCAST_UNIT = 0x00


class _Server(socketserver.TCPServer):
    allow_reuse_address = True


def _take_frames(buffer: bytearray) -> Iterator[bytes]:
    """Yield complete MBAP frames from the front of buffer, removing them."""
    while len(buffer) >= 6:
        length = int.from_bytes(buffer[4:6], "big")
        if not 2 <= length <= MAX_FRAME_LENGTH:
            log.warning("Invalid MBAP length %d, dropping %d bytes", length, len(buffer))
            buffer.clear()
            return
        end = 6 + length
        if len(buffer) < end:
            return
        frame = bytes(buffer[:end])
        del buffer[:end]
        yield frame


class TcpSlave:
    """Answers Modbus TCP requests for one relay board, one client at a time."""

    def __init__(self, board: RelayBoard) -> None:
        self.board = board
        self._server: _Server | None = None
        self._ready = threading.Event()
        self.address: tuple[str, int] | None = None

    def handle_request(self, request: bytes) -> bytes | None:
        """Process one MBAP request and return the response.

        Returns None when the unit id belongs to another device.
        Raises FrameError when the request is too short.
        """
        request = bytes(request)
        if len(request) < MIN_REQUEST_LENGTH:
            raise FrameError(f"Received frame too short: {len(request)} bytes")

        transaction_id = int.from_bytes(request[0:2], "big")
        protocol_id = int.from_bytes(request[2:4], "big")
        unit_id = request[6]
        log.info(
            "Transaction ID: %d, Protocol ID: %d, Unit ID: %d, Function Code: 0x%02X",
            transaction_id, protocol_id, unit_id, request[7],
        )
        if unit_id not in (BROADCAST_UNIT, self.board.address):
            log.warning("Wrong unit ID: %d", unit_id)
            return None

        pdu = process_pdu(self.board, request[MBAP_LENGTH:], allow_baud_rate=False)
        length = (len(pdu) + 1).to_bytes(2, "big")
        return request[:4] + length + bytes([unit_id]) + pdu

    def serve(self, host: str = "0.0.0.0", port: int = MODBUS_TCP_PORT) -> None:
        """Listen on host:port and serve clients until shutdown() is called."""
        slave = self

        class _Handler(socketserver.BaseRequestHandler):
            def handle(self) -> None:
                log.info("Socket accepted ip address: %s", self.client_address[0])
                slave._serve_connection(self.request)

        with _Server((host, port), _Handler) as server:
            self._server = server
            self.address = server.server_address[:2]
            self._ready.set()
            log.info("Socket listening on %s:%d", *self.address)
            try:
                server.serve_forever()
            finally:
                self._server = None
                self._ready.clear()

    def wait_ready(self, timeout: float | None = None) -> tuple[str, int]:
        """Block until serve() is listening and return the bound address."""
        if not self._ready.wait(timeout) or self.address is None:
            raise TimeoutError("server did not start in time")
        return self.address

    def shutdown(self) -> None:
        """Stop a running serve()."""
        server = self._server
        if server is not None:
            server.shutdown()

    def _serve_connection(self, sock: socket.socket) -> None:
        buffer = bytearray()
        while True:
            try:
                chunk = sock.recv(RECV_SIZE)
            except OSError as exc:
                log.error("recv failed: %s", exc)
                return
            if not chunk:
                log.info("Connection closed")
                return
            buffer += chunk
            for frame in _take_frames(buffer):
                try:
                    response = self.handle_request(frame)
                except FrameError as exc:
                    log.warning("%s", exc)
                    continue
                if response is None:
                    continue
                log.info("Sending response: %s", response.hex(" "))
                sock.sendall(response)


def _int(text: str) -> int:
    return int(text, 0)


def main(argv: list[str] | None = None) -> int:
    """Run a relay board as a Modbus TCP slave."""
    parser = argparse.ArgumentParser(description="Modbus TCP relay module")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=MODBUS_TCP_PORT)
    parser.add_argument("--settings", default=None, help="JSON file for persisted settings")
    parser.add_argument("--address", type=_int, default=DEFAULT_TCP_ADDRESS)
    parser.add_argument("--relays", type=int, default=2)
    parser.add_argument("--inputs", type=int, default=2)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    board = RelayBoard(args.relays, args.inputs, SettingsStore(args.settings), args.address)
    slave = TcpSlave(board)
    with board:
        try:
            slave.serve(args.host, args.port)
        except KeyboardInterrupt:
            pass
    return 0