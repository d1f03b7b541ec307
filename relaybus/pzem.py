"""Reader for a PZEM energy meter over Modbus RTU, with a small status web page."""

from __future__ import annotations

import argparse
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from relaybus.rtu import FrameError, build_frame, crc16

log = logging.getLogger(__name__)

READ_INPUT_REGISTERS = 0x04
REGISTER_COUNT = 10
MAX_REGISTER_COUNT = 125
DEFAULT_BAUD_RATE = 9600
DEFAULT_SLAVE_ADDRESS = 0x01
DEFAULT_INTERVAL = 3.0
DEFAULT_HTTP_PORT = 80
READ_TIMEOUT = 1.0


@dataclass(frozen=True)
class PzemReading:
    """One set of measurements taken from the meter."""

    voltage: float = 0.0
    current: float = 0.0
    power: float = 0.0
    energy: float = 0.0
    frequency: float = 0.0
    power_factor: float = 0.0

    @classmethod
    def from_registers(cls, registers: list[int]) -> PzemReading:
        """Decode the meter's input registers (at least nine, starting at 0)."""
        regs = [value & 0xFFFF for value in registers]
        if len(regs) < 9:
            raise ValueError(f"need at least 9 registers, got {len(regs)}")
        return cls(
            voltage=regs[0] / 10.0,
            current=((regs[2] << 16) | regs[1]) / 1000.0,
            power=((regs[4] << 16) | regs[3]) / 10.0,
            energy=((regs[6] << 16) | regs[5]) / 1000.0,
            frequency=regs[7] / 10.0,
            power_factor=regs[8] / 100.0,
        )

    def log_lines(self) -> list[str]:
        """Human-readable lines, one per measurement."""
        return [
            f"Voltage: {self.voltage:.1f} V",
            f"Current: {self.current:.3f} A",
            f"Power: {self.power:.1f} W",
            f"Energy: {self.energy:.3f} kWh",
            f"Frequency: {self.frequency:.1f} Hz",
            f"Power Factor: {self.power_factor:.2f}",
        ]


def render_page(reading: PzemReading) -> str:
    """HTML page showing a reading, refreshing itself every five seconds."""
    return (
        "<html><head><title>PZEM Data</title>"
        "<meta http-equiv='refresh' content='5'>"
        "<style>body{font-family: Arial, sans-serif;}"
        "table{border-collapse: collapse;}"
        "th, td{border: 1px solid black; padding: 5px;}"
        "</style></head>"
        "<body><h1>PZEM Data</h1>"
        "<table>"
        "<tr><th>Measurement</th><th>Value</th></tr>"
        f"<tr><td>Voltage</td><td>{reading.voltage:.1f} V</td></tr>"
        f"<tr><td>Current</td><td>{reading.current:.3f} A</td></tr>"
        f"<tr><td>Power</td><td>{reading.power:.1f} W</td></tr>"
        f"<tr><td>Energy</td><td>{reading.energy:.3f} kWh</td></tr>"
        f"<tr><td>Frequency</td><td>{reading.frequency:.1f} Hz</td></tr>"
        f"<tr><td>Power Factor</td><td>{reading.power_factor:.2f}</td></tr>"
        "</table></body></html>"
    )


def build_read_request(
    slave_address: int = DEFAULT_SLAVE_ADDRESS, start: int = 0, count: int = REGISTER_COUNT
) -> bytes:
    """RTU frame reading count input registers from start."""
    if not 0 <= start <= 0xFFFF:
        raise ValueError(f"start register out of range: {start}")
    if not 1 <= count <= MAX_REGISTER_COUNT:
        raise ValueError(f"register count out of range: {count}")
    pdu = bytes([READ_INPUT_REGISTERS]) + start.to_bytes(2, "big") + count.to_bytes(2, "big")
    return build_frame(slave_address, pdu)


def parse_read_response(
    frame: bytes, slave_address: int = DEFAULT_SLAVE_ADDRESS, count: int = REGISTER_COUNT
) -> list[int]:
    """Check a read-input-registers response and return its register values."""
    frame = bytes(frame)
    if len(frame) < 5:
        raise FrameError(f"Response too short: {len(frame)} bytes")
    received = int.from_bytes(frame[-2:], "little")
    calculated = crc16(frame[:-2])
    if received != calculated:
        raise FrameError(
            f"CRC error: received 0x{received:04X}, calculated 0x{calculated:04X}"
        )
    if frame[0] != slave_address:
        raise FrameError(f"Response from unexpected slave 0x{frame[0]:02X}")
    function_code = frame[1]
    if function_code == READ_INPUT_REGISTERS | 0x80:
        raise FrameError(f"Slave returned exception code 0x{frame[2]:02X}")
    if function_code != READ_INPUT_REGISTERS:
        raise FrameError(f"Unexpected function code 0x{function_code:02X}")
    byte_count = frame[2]
    if byte_count != 2 * count or len(frame) != 3 + byte_count + 2:
        raise FrameError(f"Unexpected byte count {byte_count} for {count} registers")
    data = frame[3 : 3 + byte_count]
    return [int.from_bytes(data[pos : pos + 2], "big") for pos in range(0, byte_count, 2)]


class PzemMaster:
    """Modbus RTU master polling one PZEM meter on a serial line."""

    def __init__(
        self,
        port: Any,
        baudrate: int = DEFAULT_BAUD_RATE,
        slave_address: int = DEFAULT_SLAVE_ADDRESS,
    ) -> None:
        self._owns_port = isinstance(port, str)
        if self._owns_port:
            import serial

            self._link = serial.Serial(port, baudrate, timeout=READ_TIMEOUT)
        else:
            self._link = port
        self.slave_address = slave_address
        self._lock = threading.Lock()

    def read(self) -> PzemReading:
        """Send one read request and decode the answer.

        Raises TimeoutError when the meter does not answer and FrameError
        when the answer is malformed or an exception response.
        """
        request = build_read_request(self.slave_address, 0, REGISTER_COUNT)
        with self._lock:
            self._link.write(request)
            data = self._link.read(5 + 2 * REGISTER_COUNT)
        if not data:
            raise TimeoutError("No response from meter")
        registers = parse_read_response(data, self.slave_address, REGISTER_COUNT)
        return PzemReading.from_registers(registers)

    def close(self) -> None:
        """Close the serial port if this master opened it."""
        if self._owns_port:
            self._link.close()

    def __enter__(self) -> PzemMaster:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class _Latest:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reading = PzemReading()

    def get(self) -> PzemReading:
        with self._lock:
            return self._reading

    def set(self, reading: PzemReading) -> None:
        with self._lock:
            self._reading = reading


def _make_server(
    get_reading: Callable[[], PzemReading], host: str, port: int
) -> ThreadingHTTPServer:
    """HTTP server answering GET / with the current reading."""

    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            if self.path != "/":
                self.send_error(404)
                return
            body = render_page(get_reading()).encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "text/html")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            log.debug("%s - %s", self.address_string(), format % args)

    return ThreadingHTTPServer((host, port), _Handler)


def _poll(master: PzemMaster, latest: _Latest, interval: float, stop: threading.Event) -> None:
    while not stop.wait(interval):
        try:
            reading = master.read()
        except (FrameError, TimeoutError, OSError) as exc:
            log.error("Error reading PZEM data: %s", exc)
            continue
        latest.set(reading)
        for line in reading.log_lines():
            log.info("%s", line)


def serve(
    master: PzemMaster,
    host: str = "0.0.0.0",
    port: int = DEFAULT_HTTP_PORT,
    interval: float = DEFAULT_INTERVAL,
) -> None:
    """Poll the meter every interval seconds and serve the latest values over HTTP."""
    latest = _Latest()
    stop = threading.Event()
    poller = threading.Thread(
        target=_poll, args=(master, latest, interval, stop), name="pzem-poller", daemon=True
    )
    server = _make_server(latest.get, host, port)
    poller.start()
    log.info("Web server listening on %s:%d", *server.server_address[:2])
    try:
        server.serve_forever()
    finally:
        stop.set()
        server.server_close()
        poller.join()


def _int(text: str) -> int:
    return int(text, 0)


def main(argv: list[str] | None = None) -> int:
    """Poll a PZEM meter on a serial port and show its readings on a web page."""
    parser = argparse.ArgumentParser(description="PZEM energy meter reader")
    parser.add_argument("port", help="serial port, e.g. /dev/ttyUSB0")
    parser.add_argument("--baudrate", type=int, default=DEFAULT_BAUD_RATE)
    parser.add_argument("--address", type=_int, default=DEFAULT_SLAVE_ADDRESS)
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--http-port", type=int, default=DEFAULT_HTTP_PORT)
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    with PzemMaster(args.port, args.baudrate, args.address) as master:
        try:
            serve(master, args.host, args.http_port, args.interval)
        except KeyboardInterrupt:
            pass
    return 0