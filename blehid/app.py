"""Application entry point wiring the HID peripheral, BlueZ and the health endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import threading
from typing import Callable, Optional

try:
    import uvloop as _uvloop  # type: ignore
    _uvloop.install()
except Exception:
    pass

from .bt_le.bluez import APPEARANCE_KEYBOARD, APPEARANCE_MOUSE, BluezStack
from .bt_le.engine import PeripheralEngine
from .bt_le.events import ConnectionStateChange
from .bt_le.keyboard import KeyboardProfile
from .bt_le.mouse import BUTTON_1, MouseProfile
from .bt_le.stack import ConnectionState
from .config import Config
from .errors import UnsupportedEnvironmentError
from .health import HealthServer
from .validation import parse_flag

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if parse_flag(os.getenv("DEBUG")) else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def build_profile(cfg: Config):
    if cfg.profile == "mouse":
        return MouseProfile(report_interval_ms=cfg.report_interval_ms)
    return KeyboardProfile(report_interval_ms=cfg.report_interval_ms)


def handle_line(profile, line: str) -> bool:
    """
    Turn one console line into input reports.

      keyboard: the line is typed, followed by Enter
      mouse:    "move dx dy [wheel] [buttons]" or "click [buttons]"

    Returns False when the line was not understood.
    """
    if isinstance(profile, KeyboardProfile):
        profile.send_keys(line + "\n")
        return True

    parts = line.split()
    if not parts:
        return False
    try:
        args = [int(p, 0) for p in parts[1:]]
    except ValueError:
        return False
    if parts[0] == "move" and 2 <= len(args) <= 4:
        profile.send_movement(*args)
        return True
    if parts[0] == "click" and len(args) <= 1:
        profile.send_click(args[0] if args else BUTTON_1)
        return True
    return False


def _start_console_reader(profile, stop: Callable[[], None]) -> threading.Thread:
    def _run() -> None:
        for raw in sys.stdin:
            line = raw.rstrip("\r\n")
            if not handle_line(profile, line):
                logger.warning("[app] ignored input %r", line)
        stop()

    t = threading.Thread(target=_run, name="console", daemon=True)
    t.start()
    return t


def _log_connection(change: ConnectionStateChange) -> None:
    try:
        state = ConnectionState(change.new_state).name.lower()
    except ValueError:
        state = str(change.new_state)
    logger.info("[app] %s %s (status %d)", change.device, state, change.status)


async def main() -> None:
    """Run the peripheral until interrupted."""
    try:
        cfg = Config.load()
    except RuntimeError as exc:
        logger.error("[app] invalid configuration: %s", exc)
        raise SystemExit(2) from exc

    profile = build_profile(cfg)
    stack = BluezStack(
        cfg.adapter,
        appearance=APPEARANCE_MOUSE if cfg.profile == "mouse" else APPEARANCE_KEYBOARD,
    )
    engine = PeripheralEngine(
        stack,
        profile,
        device_name=cfg.device_name,
        manufacturer=cfg.manufacturer,
        serial_number=cfg.serial_number,
        report_interval_ms=cfg.report_interval_ms,
        require_cccd=cfg.require_cccd,
        on_connection_state=_log_connection,
    )
    health = HealthServer(host=cfg.health_host, port=cfg.health_port, engine=engine)

    logger.info(
        "[app] profile=%s name=%r adapter=%s interval=%dms",
        cfg.profile,
        cfg.device_name,
        cfg.adapter,
        cfg.report_interval_ms,
    )

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _request_stop() -> None:
        loop.call_soon_threadsafe(stop.set)

    # Stop order is the reverse of start order.
    started = []  # list[tuple[str, callable]]

    try:
        await engine.open()
        started.append(("engine", engine.close))

        if not await engine.start():
            raise UnsupportedEnvironmentError(f"Bluetooth peripheral mode unavailable on {cfg.adapter}")

        await health.start()
        started.append(("health", health.stop))

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(Exception):
                loop.add_signal_handler(sig, stop.set)

        if sys.stdin is not None and sys.stdin.isatty():
            _start_console_reader(profile, _request_stop)

        await stop.wait()

    finally:
        stop.set()
        for name, stopper in reversed(started):
            try:
                await stopper()
            except Exception:
                logger.exception("[app] error stopping %s", name)


def run() -> None:
    _configure_logging()
    try:
        asyncio.run(main())
    except UnsupportedEnvironmentError as exc:
        logger.error("[app] %s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    run()
