"""Modbus request handling for a relay board, independent of the transport framing."""

from __future__ import annotations

import enum
import logging

from relaybus.device import MAX_CHANNELS, DeviceError, RelayBoard

log = logging.getLogger(__name__)

_READ_COILS = 0x01
_READ_DISCRETE_INPUTS = 0x02
_READ_HOLDING_REGISTERS = 0x03
_WRITE_SINGLE_COIL = 0x05
_WRITE_MULTIPLE_COILS = 0x0F
_WRITE_MULTIPLE_REGISTERS = 0x10

_ADDRESS_REGISTER = 0x0000
_BAUD_RATE_REGISTER = 0x03E9
_FLASH_REGISTERS = (0x0003, 0x0008, 0x000D, 0x0012)
_MAX_SINGLE_COIL = 3
_COIL_ON = 0xFF00
_COIL_OFF = 0x0000
_MIN_PDU_LENGTH = 5


class ExceptionCode(enum.IntEnum):
    """Modbus exception codes a relay board can answer with."""

    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03


def _error(function_code: int, code: ExceptionCode) -> bytes:
    return bytes([(function_code | 0x80) & 0xFF, code])


def _word(pdu: bytes, offset: int) -> int:
    return (pdu[offset] << 8) | pdu[offset + 1]


def process_pdu(board: RelayBoard, pdu: bytes, allow_baud_rate: bool = True) -> bytes:
    """Apply one request PDU to the board and return the response PDU.

    The PDU starts with the function code. Requests shorter than five bytes
    raise ValueError; everything else yields either a normal response or an
    exception response (function code with the high bit set).
    """
    pdu = bytes(pdu)
    if len(pdu) < _MIN_PDU_LENGTH:
        raise ValueError(f"PDU too short: {len(pdu)} bytes")

    function_code = pdu[0]
    start = _word(pdu, 1)
    quantity = _word(pdu, 3)
    echo = pdu[:5]

    if function_code in (_READ_COILS, _READ_DISCRETE_INPUTS):
        if start + quantity > MAX_CHANNELS:
            return _error(function_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)
        value = board.coil_byte() if function_code == _READ_COILS else board.input_byte()
        return bytes([function_code, 1, value])

    if function_code == _READ_HOLDING_REGISTERS:
        if start == _ADDRESS_REGISTER and quantity == 1:
            return bytes([function_code, 2, 0x00, board.address])
        return _error(function_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)

    if function_code == _WRITE_SINGLE_COIL:
        if start > _MAX_SINGLE_COIL:
            return _error(function_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)
        if quantity == _COIL_ON:
            state = True
        elif quantity == _COIL_OFF:
            state = False
        else:
            return _error(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)
        try:
            board.set_relay(start + 1, state)
        except DeviceError as exc:
            log.warning("%s", exc)
        return echo

    if function_code == _WRITE_MULTIPLE_COILS:
        return _write_coils(board, pdu, function_code, start, quantity)

    if function_code == _WRITE_MULTIPLE_REGISTERS:
        return _write_registers(board, pdu, function_code, start, quantity, allow_baud_rate)

    log.warning("Unsupported function code: 0x%02X", function_code)
    return _error(function_code, ExceptionCode.ILLEGAL_FUNCTION)


def _write_coils(
    board: RelayBoard, pdu: bytes, function_code: int, start: int, quantity: int
) -> bytes:
    byte_count = pdu[5] if len(pdu) > 5 else 0
    if not (start == 0 and quantity == MAX_CHANNELS and byte_count == 1):
        return _error(function_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)
    if len(pdu) < 6 + byte_count:
        return _error(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)
    value = pdu[6]
    for relay_num in range(1, board.relay_count + 1):
        board.set_relay(relay_num, bool(value & (1 << (relay_num - 1))))
    return pdu[:5]


def _write_registers(
    board: RelayBoard,
    pdu: bytes,
    function_code: int,
    start: int,
    quantity: int,
    allow_baud_rate: bool,
) -> bytes:
    byte_count = pdu[5] if len(pdu) > 5 else 0
    single = quantity == 0x0001 and byte_count == 0x02
    is_address = start == _ADDRESS_REGISTER and single
    is_baud = allow_baud_rate and start == _BAUD_RATE_REGISTER and single
    is_flash = start in _FLASH_REGISTERS and quantity == 0x0002 and byte_count == 0x04

    if not (is_address or is_baud or is_flash):
        return _error(function_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)
    if len(pdu) < 6 + byte_count:
        return _error(function_code, ExceptionCode.ILLEGAL_DATA_VALUE)

    try:
        if is_address:
            board.set_device_address(pdu[7])
        elif is_baud:
            board.set_baud_rate(pdu[7])
        else:
            relay_num = (start - _FLASH_REGISTERS[0]) // 5 + 1
            board.set_flashing_mode(relay_num, _word(pdu, 6), _word(pdu, 8))
    except DeviceError as exc:
        log.warning("%s", exc)
    return pdu[:5]