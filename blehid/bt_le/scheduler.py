"""Periodic input report pump."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Optional

from ..errors import describe_stack_error
from .connections import ConnectionRegistry
from .events import TimerTick
from .gatt import GattCharacteristic
from .profile import InputReportQueue
from .stack import BleStack

logger = logging.getLogger(__name__)


class InputReportScheduler:
    """Drain at most one queued report per tick and notify every connected device.

    The timer task only posts TimerTick; pump() runs from the engine's
    dispatch loop when that tick is handled.
    """

    def __init__(
        self,
        stack: BleStack,
        registry: ConnectionRegistry,
        reports: InputReportQueue,
        *,
        interval_ms: int,
        post: Callable[[object], None],
        require_cccd: bool = True,
    ) -> None:
        self._stack = stack
        self._registry = registry
        self._reports = reports
        self.interval_ms = max(1, int(interval_ms))
        self._post = post
        self.require_cccd = require_cccd
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """(Re)arm the timer; the first tick fires one interval from now."""
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="report_timer")
        logger.debug("[hid] report timer armed every %d ms", self.interval_ms)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        period = self.interval_ms / 1000.0
        while True:
            await asyncio.sleep(period)
            self._post(TimerTick())

    async def pump(self, characteristic: Optional[GattCharacteristic], server_open: bool) -> bool:
        """Send one report. Returns True when a report was taken off the queue."""
        if characteristic is None or not server_open:
            return False
        report = self._reports.poll()
        if report is None:
            return False

        characteristic.value = report
        devices = self._registry.devices()
        if not devices:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[hid] no connected device; dropped %s", report.hex())
            return True
        if self.require_cccd and not characteristic.notifications_enabled:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[hid] notifications not enabled; dropped %s", report.hex())
            return True

        for device in devices:
            try:
                sent = await self._stack.notify_characteristic_changed(device, characteristic, False)
            except Exception as exc:
                logger.warning("[hid] notify %s failed: %s", device, describe_stack_error(exc))
                continue
            if not sent:
                logger.warning("[hid] notify %s was not accepted", device)
        return True
