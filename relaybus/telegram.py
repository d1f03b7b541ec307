"""Door monitor that reports open and close events to a Telegram chat."""

from __future__ import annotations

import argparse
import json
import logging
import os
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path

log = logging.getLogger(__name__)

API_HOST = "api.telegram.org"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_TIMEOUT = 60.0
DEFAULT_DEBOUNCE = 0.05
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_UTC_OFFSET = 7.0
TOKEN_ENV = "TELEGRAM_BOT_TOKEN"


def build_payload(chat_id: int | str, message: str) -> bytes:
    """JSON body for a sendMessage call."""
    return json.dumps({"chat_id": chat_id, "text": message}, ensure_ascii=False).encode("utf-8")


def send_message(
    token: str, chat_id: int | str, message: str, timeout: float = DEFAULT_TIMEOUT
) -> int:
    """Post a message to a chat and return the HTTP status code.

    Network failures raise OSError; an HTTP error status is returned.
    """
    request = urllib.request.Request(
        f"https://{API_HOST}/bot{token}/sendMessage",
        data=build_payload(chat_id, message),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = response.status
    except urllib.error.HTTPError as exc:
        status = exc.code
    log.info("HTTP POST Status = %d", status)
    if status == 200:
        log.info("Message sent successfully")
    else:
        log.error("Message send failed with status code: %d", status)
    return status


def door_message(closed: bool, when: datetime) -> str:
    """Text announcing that the door was closed or opened at the given time."""
    stamp = when.strftime(TIME_FORMAT)
    if closed:
        return f"🚪 May quá nhà không có gì nên nó đóng cửa lại rồi, lúc {stamp}"
    return f"⚠️ Trộm vừa mở xem có gì trong nhà không kìa, lúc {stamp}"


def startup_message(when: datetime) -> str:
    """Text announcing that monitoring has started."""
    return f"🔄 Door monitoring system started at {when.strftime(TIME_FORMAT)}!"


class DoorMonitor:
    """Watches a door sensor (0 = closed) and notifies on debounced changes."""

    def __init__(
        self,
        read_sensor: Callable[[], int],
        notify: Callable[[str], object],
        debounce: float = DEFAULT_DEBOUNCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._read_sensor = read_sensor
        self._notify = notify
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.timezone: tzinfo | None = None
        self.last_state = int(read_sensor())

    def step(self) -> str | None:
        """Check the sensor once; return the message sent, if any."""
        state = int(self._read_sensor())
        if state == self.last_state:
            return None
        time.sleep(self.debounce)
        state = int(self._read_sensor())
        if state == self.last_state:
            return None
        message = door_message(state == 0, datetime.now(self.timezone))
        self._notify(message)
        self.last_state = state
        return message

    def run(self, stop_event: threading.Event) -> None:
        """Poll the sensor until stop_event is set."""
        while not stop_event.is_set():
            self.step()
            stop_event.wait(self.poll_interval)


def main(argv: list[str] | None = None) -> int:
    """Watch a door sensor value file and report changes to a Telegram chat."""
    parser = argparse.ArgumentParser(description="Door monitor with Telegram notifications")
    parser.add_argument("sensor", help="file holding the sensor level, e.g. a GPIO value file")
    parser.add_argument("--chat-id", required=True)
    parser.add_argument("--token", default=os.environ.get(TOKEN_ENV))
    parser.add_argument("--utc-offset", type=float, default=DEFAULT_UTC_OFFSET)
    parser.add_argument("--debounce", type=float, default=DEFAULT_DEBOUNCE)
    parser.add_argument("--poll", type=float, default=DEFAULT_POLL_INTERVAL)
    args = parser.parse_args(argv)
    if not args.token:
        parser.error(f"a bot token is required (--token or {TOKEN_ENV})")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    zone = timezone(timedelta(hours=args.utc_offset))
    sensor_path = Path(args.sensor)

    def read_sensor() -> int:
        return int(sensor_path.read_text(encoding="ascii").strip() or "0")

    def notify(message: str) -> None:
        try:
            send_message(args.token, args.chat_id, message)
        except OSError as exc:
            log.error("HTTP POST request failed: %s", exc)

    notify(startup_message(datetime.now(zone)))
    monitor = DoorMonitor(read_sensor, notify, args.debounce, args.poll)
    monitor.timezone = zone
    try:
        monitor.run(threading.Event())
    except KeyboardInterrupt:
        pass
    return 0