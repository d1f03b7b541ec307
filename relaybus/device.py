"""State of a relay module: relays, opto-isolated inputs and persisted settings."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_ADDRESS = 0xFF
DEFAULT_BAUD_RATE = 9600
BAUD_RATE_CODES = {0x03: 9600, 0x04: 19200}
MAX_CHANNELS = 8

ADDRESS_KEY = "dev_address"
BAUD_RATE_KEY = "baud_rate"


class DeviceError(Exception):
    """Raised when a request names a relay, address or setting the device rejects."""


class SettingsStore:
    """Small key/value store kept as a JSON file, or in memory when no path is given."""

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._memory: dict[str, Any] = {}
        self._lock = threading.Lock()

    def load(self) -> dict[str, Any]:
        """Return every stored setting; an unreadable file counts as empty."""
        with self._lock:
            return dict(self._read())

    def save(self, key: str, value: Any) -> None:
        """Store one setting and write it out."""
        with self._lock:
            data = self._read()
            data[key] = value
            if self._path is None:
                self._memory = data
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".settings-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

    def _read(self) -> dict[str, Any]:
        if self._path is None:
            return dict(self._memory)
        try:
            with self._path.open(encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            log.warning("Settings file %s is unreadable, starting empty", self._path)
            return {}
        return data if isinstance(data, dict) else {}


class _Flasher(threading.Thread):
    """Toggles one relay at a fixed interval until stopped."""

    def __init__(self, board: RelayBoard, relay_num: int, state: bool, interval: float) -> None:
        super().__init__(name=f"relay-{relay_num}-flasher", daemon=True)
        self._board = board
        self._relay_num = relay_num
        self._state = state
        self._interval = interval
        self._stop = threading.Event()

    def run(self) -> None:
        while not self._stop.wait(self._interval):
            self._state = not self._state
            self._board._write_relay(self._relay_num, self._state)

    def cancel(self) -> None:
        self._stop.set()
        if self is not threading.current_thread() and self.is_alive():
            self.join()


class RelayBoard:
    """A relay module with numbered relays, digital inputs, an address and a baud rate."""

    def __init__(
        self,
        relay_count: int = 4,
        input_count: int = 4,
        store: SettingsStore | None = None,
        address: int = DEFAULT_ADDRESS,
    ) -> None:
        if not 1 <= relay_count <= MAX_CHANNELS:
            raise ValueError(f"relay_count must be between 1 and {MAX_CHANNELS}")
        if not 0 <= input_count <= MAX_CHANNELS:
            raise ValueError(f"input_count must be between 0 and {MAX_CHANNELS}")
        self.relay_count = relay_count
        self.input_count = input_count
        self._store = store if store is not None else SettingsStore()
        self._lock = threading.RLock()
        self._relays = [False] * relay_count
        self._inputs = [False] * input_count
        self._flashers: dict[int, _Flasher] = {}
        self._address = address
        self._baud_rate = DEFAULT_BAUD_RATE

        settings = self._store.load()
        stored_address = settings.get(ADDRESS_KEY)
        if isinstance(stored_address, int) and 0 <= stored_address <= 0xFF:
            self._address = stored_address
        stored_baud = settings.get(BAUD_RATE_KEY)
        if stored_baud in BAUD_RATE_CODES.values():
            self._baud_rate = stored_baud
        elif stored_baud is not None:
            log.warning("Unsupported stored baud rate: %s", stored_baud)

    @property
    def address(self) -> int:
        return self._address

    @property
    def baud_rate(self) -> int:
        return self._baud_rate

    def set_relay(self, relay_num: int, state: bool) -> None:
        """Switch relay 1..relay_count on or off."""
        self._check_relay(relay_num)
        self._write_relay(relay_num, bool(state))

    def relay_status(self, index: int) -> bool:
        """Return the state of the relay at zero-based index."""
        if not 0 <= index < self.relay_count:
            raise DeviceError(f"Invalid relay number: {index}")
        with self._lock:
            return self._relays[index]

    def coil_byte(self) -> int:
        """All relay states packed into one byte, relay 1 in bit 0."""
        with self._lock:
            return sum(1 << bit for bit, on in enumerate(self._relays) if on)

    def set_input(self, index: int, state: bool) -> None:
        """Set the level seen on the input at zero-based index."""
        if not 0 <= index < self.input_count:
            raise DeviceError(f"Invalid input number: {index}")
        with self._lock:
            self._inputs[index] = bool(state)

    def input_byte(self) -> int:
        """All input levels packed into one byte, input 1 in bit 0."""
        with self._lock:
            return sum(1 << bit for bit, on in enumerate(self._inputs) if on)

    def set_device_address(self, new_address: int) -> None:
        """Accept 1..247 or 0xFF as the new address and persist it."""
        if not (1 <= new_address <= 247 or new_address == 0xFF):
            raise DeviceError(f"Invalid device address: {new_address}")
        with self._lock:
            self._address = new_address
        self._store.save(ADDRESS_KEY, new_address)
        log.info("Device address set to: %d", new_address)

    def set_baud_rate(self, code: int) -> int:
        """Apply a baud rate code (3: 9600, 4: 19200), persist it and return the rate."""
        try:
            rate = BAUD_RATE_CODES[code]
        except KeyError:
            raise DeviceError(f"Unsupported baud rate code: {code}") from None
        with self._lock:
            self._baud_rate = rate
        self._store.save(BAUD_RATE_KEY, rate)
        log.info("Baud rate set to: %d", rate)
        return rate

    def set_flashing_mode(self, relay_num: int, mode: int, delay_time: int) -> None:
        """Set a relay steady or flashing; delay_time is in tenths of a second.

        Modes 1 and 3 start with the relay on, any other mode starts it off.
        A delay of zero leaves the relay steady in that state.
        """
        self._check_relay(relay_num)
        with self._lock:
            old = self._flashers.pop(relay_num, None)
        if old is not None:
            old.cancel()

        state = mode in (0x0001, 0x0003)
        self._write_relay(relay_num, state)
        if delay_time == 0:
            return

        interval = delay_time * 0.1
        flasher = _Flasher(self, relay_num, state, interval)
        with self._lock:
            self._flashers[relay_num] = flasher
        flasher.start()
        log.info(
            "Relay %d set to flashing mode %d with delay %.1f seconds",
            relay_num, mode, interval,
        )

    def close(self) -> None:
        """Stop every flashing relay."""
        with self._lock:
            flashers = list(self._flashers.values())
            self._flashers.clear()
        for flasher in flashers:
            flasher.cancel()

    def __enter__(self) -> RelayBoard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_relay(self, relay_num: int) -> None:
        if not 1 <= relay_num <= self.relay_count:
            raise DeviceError(f"Invalid relay number: {relay_num}")

    def _write_relay(self, relay_num: int, state: bool) -> None:
        with self._lock:
            self._relays[relay_num - 1] = state
        log.info("Relay %d set to %s", relay_num, "ON" if state else "OFF")