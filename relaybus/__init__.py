"""Modbus relay-board slaves over RTU and TCP, a PZEM meter reader, a Telegram door monitor and task helpers."""

__version__ = "0.1.0"