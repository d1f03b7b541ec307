# relaybus

Tools for a small home-automation setup built around Modbus:

- **Relay board.** `relaybus.device.RelayBoard` holds the state of a relay
  module: up to eight relays, up to eight digital inputs, a device address and
  a baud rate. The address and baud rate persist through a `SettingsStore`,
  which is a JSON file, or kept in memory when no path is given. Relays can be
  set to flash on a background timer with `set_flashing_mode`.
- **Modbus slaves.** `relaybus.pdu.process_pdu` applies one Modbus request to a
  board. `relaybus.rtu.RtuSlave` wraps it in RTU framing (address and CRC-16)
  on a serial line, and `relaybus.tcp.TcpSlave` wraps it in MBAP framing over TCP.
- **PZEM energy meter.** `relaybus.pzem.PzemMaster` polls a meter over Modbus
  RTU. Each read returns a `PzemReading` with voltage, current, power, energy,
  frequency and power factor. `relaybus.pzem.serve` polls at an interval and
  publishes the latest reading on an HTML page at `/`. The page refreshes
  itself every five seconds.
- **Door monitor.** `relaybus.telegram.DoorMonitor` polls a door sensor, where
  0 means closed. It debounces each change and passes a message to a notify
  callback. `send_message` posts a message to a Telegram chat.
- **Task helpers.** `relaybus.tasks` holds three helpers:
  - `run_periodic` runs an action with a fixed delay between calls.
  - `run_fixed_rate` runs an action at a constant rate.
  - `QueueWorker` passes queued items to a handler on a background thread.

  `read_sensor` returns a simulated sensor value.

## Install

```
pip install .
pip install ".[test]"   # to run the tests
```

## Commands

```
relaybus-rtu PORT [--baudrate N] [--settings FILE] [--address A] [--relays N] [--inputs N]
relaybus-tcp [--host H] [--port P] [--settings FILE] [--address A] [--relays N] [--inputs N]
relaybus-pzem PORT [--baudrate N] [--address A] [--host H] [--http-port P] [--interval S]
relaybus-door SENSOR_FILE --chat-id ID [--token TOKEN] [--utc-offset H] [--debounce S] [--poll S]
```

- `relaybus-rtu` has these defaults: 4 relays, 4 inputs and address `0xFF`.
  The baud rate comes from the stored settings and falls back to 9600.
- `relaybus-tcp` has these defaults: 2 relays, 2 inputs, address `0x01` and
  port 502. It serves one client connection at a time.
- `relaybus-pzem` reads meter address `0x01` every 3 seconds by default. It
  serves the page on HTTP port 80.
- `relaybus-door` reads the sensor level from a file, such as a GPIO value
  file. It sends a start-up message first, then one message on each door
  change. The bot token comes from `--token` or from the `TELEGRAM_BOT_TOKEN`
  environment variable. Time stamps use a fixed UTC offset, UTC+7 by default.

Addresses accept decimal or `0x` hex.

## Supported Modbus functions (relay board)

| Code | Function                  | Use                                              |
|------|---------------------------|--------------------------------------------------|
| 0x01 | Read Coils                | relay states, one byte, relay 1 in bit 0         |
| 0x02 | Read Discrete Inputs      | input levels, one byte, input 1 in bit 0         |
| 0x03 | Read Holding Registers    | device address (register 0, quantity 1)          |
| 0x05 | Write Single Coil         | switch relay 1–4 (`0xFF00` on, `0x0000` off)     |
| 0x0F | Write Multiple Coils      | switch all relays (start 0, quantity 8)          |
| 0x10 | Write Multiple Registers  | address (reg 0), baud rate (reg 0x03E9, RTU only), flashing mode (regs 3, 8, 13, 18) |

- Any other function code gets an "illegal function" exception reply.
- The board answers requests sent to its own address and broadcasts to
  address 0. Broadcasts get a reply too.
- The accepted device addresses are 1–247 and `0xFF`.
- Baud rate code 3 selects 9600 and code 4 selects 19200.
- Flashing modes 1 and 3 start the relay on. The delay is in tenths of a
  second, and a delay of 0 leaves the relay steady.

## Library use

```python
from relaybus.device import RelayBoard, SettingsStore
from relaybus.rtu import RtuSlave, build_frame

board = RelayBoard(4, 4, SettingsStore(), 0xFF)
slave = RtuSlave(board)
reply = slave.handle_frame(build_frame(0xFF, bytes([0x05, 0x00, 0x00, 0xFF, 0x00])))
assert board.relay_status(0) is True
```

- `handle_frame` raises `relaybus.rtu.FrameError` for a short frame or a bad CRC.
- `handle_frame` returns `None` for a frame addressed to another slave.
- `TcpSlave.handle_request` works the same way on MBAP requests.

## What it does not do

- The relay board is a software model. `set_relay` changes state held in
  memory and does not drive any GPIO pins or physical relays.
- The board's inputs change only through `RelayBoard.set_input`.
- The door monitor reads its sensor from a file. It has no direct GPIO access.
- Time is not synchronised over the network. The door monitor uses the system
  clock with a fixed UTC offset.

Run the tests with `pytest`.