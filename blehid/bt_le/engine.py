# Copyright (c) 2025 PiHub
# SPDX-License-Identifier: MIT

"""
PeripheralEngine - HID-over-GATT peripheral lifecycle on top of a BleStack.

All engine state (service queue, connection registry, cached attribute values,
advertising name state) is owned by one dispatch task. Radio callbacks, report
timer ticks and application commands are posted to its queue and handled in
order, so nothing here needs a lock. Profiles enqueue input reports from any
thread through their InputReportQueue.

Lifecycle:
- start(): open the GATT server, register DIS, Battery and HID one at a time,
  then advertise once the last service is acknowledged
- first connect: stop advertising, restore the adapter name, ask to bond
- last disconnect: advertise again
- stop(): tear everything down, each step independently
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

from ..errors import describe_stack_error
from .advertising import AdvertisingController
from .connections import ConnectionRegistry
from .events import (
    AdvertiseFailed,
    AdvertiseStarted,
    BatteryLevelCommand,
    ConnectionEvent,
    ConnectionStateChange,
    DisconnectAllCommand,
    MtuChanged,
    NotificationSent,
    ReadRequest,
    ServiceAdded,
    StartCommand,
    StopCommand,
    TimerTick,
    WriteRequest,
)
from .gatt import DEFAULT_BATTERY_LEVEL, GattCharacteristic
from .profile import HidProfile
from .router import DeviceIdentity, GattRequestRouter
from .scheduler import InputReportScheduler
from .sequencer import ServiceRegistrationSequencer
from .services import build_battery_service, build_device_information_service, build_hid_service, check_report_map
from .stack import STATUS_SUCCESS, AdapterStatus, BleStack, BondState, ConnectionState, RemoteDevice

logger = logging.getLogger(__name__)

ConnectionCallback = Callable[[ConnectionStateChange], None]


class PeripheralEngine:
    """Expose one HID profile as a BLE HID-over-GATT peripheral."""

    def __init__(
        self,
        stack: BleStack,
        profile: HidProfile,
        *,
        device_name: str = "BLE HID",
        manufacturer: str = "blehid",
        serial_number: str = "00000000",
        report_interval_ms: Optional[int] = None,
        require_cccd: bool = True,
        on_connection_state: Optional[ConnectionCallback] = None,
    ) -> None:
        check_report_map(profile)
        self._stack = stack
        self.profile = profile
        self.on_connection_state = on_connection_state

        self.identity = DeviceIdentity(manufacturer=manufacturer, model=device_name, serial_number=serial_number)
        self.registry = ConnectionRegistry()
        self.advertising = AdvertisingController(stack, device_name=device_name)
        self.sequencer = ServiceRegistrationSequencer(stack.add_service)
        self.router = GattRequestRouter(stack, profile, self.identity)
        self.scheduler = InputReportScheduler(
            stack,
            self.registry,
            profile.reports,
            interval_ms=report_interval_ms or profile.report_interval_ms,
            post=self.post,
            require_cccd=require_cccd,
        )

        self._server_open = False
        self._input_report: Optional[GattCharacteristic] = None
        self._battery_char: Optional[GattCharacteristic] = None
        self._battery_level = DEFAULT_BATTERY_LEVEL

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._events: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    # ---------- configuration ----------
    @property
    def device_name(self) -> str:
        return self.advertising.device_name

    @device_name.setter
    def device_name(self, value: str) -> None:
        self.advertising.device_name = value
        self.identity.model = value

    @property
    def manufacturer(self) -> str:
        return self.identity.manufacturer

    @manufacturer.setter
    def manufacturer(self, value: str) -> None:
        self.identity.manufacturer = value

    @property
    def serial_number(self) -> str:
        return self.identity.serial_number

    @serial_number.setter
    def serial_number(self, value: str) -> None:
        self.identity.serial_number = value

    # ---------- status ----------
    @property
    def server_open(self) -> bool:
        return self._server_open

    @property
    def input_report(self) -> Optional[GattCharacteristic]:
        return self._input_report

    @property
    def state(self) -> str:
        if not self.registry.is_empty():
            return "connected"
        if self.advertising.advertising:
            return "advertising"
        if self._server_open and self.sequencer.pending:
            return "registering"
        return "idle"

    @property
    def status(self) -> dict:
        return {
            "state": self.state,
            "server_open": self._server_open,
            "advertising": self.advertising.advertising,
            "connected": not self.registry.is_empty(),
            "devices": self.registry.addresses(),
            "pending_services": self.sequencer.pending,
            "queued_reports": self.profile.reports.qsize(),
            "last_advertise_error": self.advertising.last_error,
        }

    # ---------- loop plumbing ----------
    async def open(self) -> None:
        """Start the dispatch task on the running loop."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._events = asyncio.Queue()
        self._stack.bind(self.post)
        self._task = self._loop.create_task(self._dispatch_loop(), name="hid_engine")

    async def close(self) -> None:
        """Stop the peripheral and end the dispatch task."""
        if self._task is None:
            return
        self.stop()
        await self.wait_idle()
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await self.scheduler.aclose()

    def post(self, event: object) -> None:
        """Queue an event for the dispatch loop; callable from any thread."""
        if self._events is None or self._loop is None:
            raise RuntimeError("engine is not open")
        if threading.get_ident() == self._loop_thread:
            self._events.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._events.put_nowait, event)

    async def wait_idle(self) -> None:
        """Wait until every posted event (and what it posted) is handled."""
        if self._events is not None:
            await self._events.join()

    async def _dispatch_loop(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                await self._handle(event)
            except Exception:
                logger.exception("[engine] error handling %s", type(event).__name__)
            finally:
                self._events.task_done()

    async def _handle(self, event: object) -> None:
        if isinstance(event, TimerTick):
            await self.scheduler.pump(self._input_report, self._server_open)
        elif isinstance(event, ReadRequest):
            await self.router.handle_read(event)
        elif isinstance(event, WriteRequest):
            await self.router.handle_write(event)
        elif isinstance(event, ConnectionEvent):
            await self._on_connection(event)
        elif isinstance(event, ServiceAdded):
            await self._on_service_added(event)
        elif isinstance(event, AdvertiseStarted):
            await self._on_advertise_started()
        elif isinstance(event, AdvertiseFailed):
            self.scheduler.stop()
            await self.advertising.on_failed(event.error_code)
        elif isinstance(event, NotificationSent):
            if event.status != STATUS_SUCCESS:
                logger.warning("[hid] notification to %s failed with status %d", event.device, event.status)
        elif isinstance(event, MtuChanged):
            logger.info("[engine] MTU for %s is now %d", event.device, event.mtu)
        elif isinstance(event, StartCommand):
            await self._on_start()
        elif isinstance(event, StopCommand):
            await self._shutdown_session()
        elif isinstance(event, BatteryLevelCommand):
            await self._on_battery_level(event.level)
        elif isinstance(event, DisconnectAllCommand):
            await self._on_disconnect_all()
        else:
            logger.warning("[engine] ignoring unknown event %r", event)

    # ---------- commands ----------
    async def probe(self) -> AdapterStatus:
        try:
            return await self._stack.probe()
        except Exception as exc:
            logger.error("[engine] adapter probe failed: %s", describe_stack_error(exc))
            return AdapterStatus()

    async def is_peripheral_supported(self) -> bool:
        status = await self.probe()
        return status.present and status.advertiser

    async def is_adapter_enabled(self) -> bool:
        status = await self.probe()
        return status.enabled

    async def start(self) -> bool:
        """Begin serving. Returns False when the adapter cannot act as a peripheral."""
        if self._task is None:
            await self.open()
        status = await self.probe()
        if not status.present:
            logger.error("[engine] no Bluetooth adapter")
            return False
        if not status.enabled:
            logger.error("[engine] Bluetooth adapter is disabled")
            return False
        if not status.advertiser:
            logger.error("[engine] adapter does not support peripheral advertising")
            return False
        self.post(StartCommand())
        return True

    def stop(self) -> None:
        self.post(StopCommand())

    def set_battery_level(self, level: int) -> None:
        self.post(BatteryLevelCommand(level=level))

    def disconnect_all(self) -> None:
        self.post(DisconnectAllCommand())

    # ---------- handlers ----------
    async def _on_start(self) -> None:
        if self._server_open:
            logger.info("[engine] already started; restarting")
            await self._shutdown_session()

        try:
            opened = await self._stack.open_gatt_server()
        except Exception as exc:
            logger.error("[engine] open GATT server failed: %s", describe_stack_error(exc))
            return
        if not opened:
            logger.error("[engine] GATT server unavailable")
            return
        self._server_open = True

        dis = build_device_information_service()
        bas = build_battery_service(self._battery_level)
        hid = build_hid_service(self.profile)
        self._battery_char = bas.characteristics[0]
        self._input_report = hid.input_report

        self.sequencer.clear()
        logger.info("[engine] registering services for %s profile", self.profile.name)
        for service in (dis, bas, hid.service):
            await self.sequencer.enqueue(service)

    async def _on_service_added(self, event: ServiceAdded) -> None:
        if not self._server_open:
            logger.debug("[engine] service ack after stop; ignored")
            return
        if await self.sequencer.acknowledge(event.status, event.service):
            await self.advertising.start()

    async def _on_advertise_started(self) -> None:
        if not self._server_open or not self.registry.is_empty():
            logger.info("[engine] advertisement came up after stop or connect; cancelling it")
            await self.advertising.stop()
            return
        self.advertising.on_started()
        self.scheduler.start()

    async def _on_connection(self, event: ConnectionEvent) -> None:
        device = event.device
        if event.new_state == ConnectionState.CONNECTED:
            if event.status == STATUS_SUCCESS:
                self.registry.add(device)
                logger.info("[engine] connected %s", device)
                await self.advertising.stop()
                await self.advertising.restore_name()
                await self._bond(device)
            else:
                self.registry.remove(device)
                logger.warning("[engine] connection to %s failed with status %d", device, event.status)
        elif event.new_state == ConnectionState.DISCONNECTED:
            self.registry.remove(device)
            logger.info("[engine] disconnected %s (status %d)", device, event.status)
            if self.registry.is_empty() and self._server_open:
                await self.advertising.start()

        self._notify_connection_state(ConnectionStateChange(device, event.status, event.new_state))

    async def _bond(self, device: RemoteDevice) -> None:
        try:
            if await self._stack.get_bond_state(device) != BondState.NONE:
                return
            if await self._stack.create_bond(device):
                logger.info("[engine] bond requested for %s", device)
            else:
                logger.warning("[engine] bond request for %s refused", device)
        except Exception as exc:
            logger.warning("[engine] bond request for %s failed: %s", device, describe_stack_error(exc))

    async def _shutdown_session(self) -> None:
        await self.advertising.stop()
        try:
            await self._stack.close_gatt_server()
        except Exception as exc:
            logger.warning("[engine] close GATT server failed: %s", describe_stack_error(exc))
        self._server_open = False
        self._input_report = None
        self._battery_char = None
        self.sequencer.clear()
        self.scheduler.stop()
        await self.advertising.restore_name()
        logger.info("[engine] stopped")

    async def _on_battery_level(self, level: int) -> None:
        self._battery_level = max(0, min(100, int(level)))
        ch = self._battery_char
        if ch is None:
            return
        ch.value = bytes([self._battery_level])
        if not self._server_open:
            return
        if self.scheduler.require_cccd and not ch.notifications_enabled:
            return
        for device in self.registry.devices():
            try:
                await self._stack.notify_characteristic_changed(device, ch, False)
            except Exception as exc:
                logger.warning("[engine] battery notify %s failed: %s", device, describe_stack_error(exc))

    async def _on_disconnect_all(self) -> None:
        for device in self.registry.devices():
            try:
                await self._stack.disconnect(device)
            except Exception as exc:
                logger.warning("[engine] disconnect %s failed: %s", device, describe_stack_error(exc))

    def _notify_connection_state(self, change: ConnectionStateChange) -> None:
        cb = self.on_connection_state
        if cb is None:
            return
        try:
            cb(change)
        except Exception:
            logger.exception("[engine] connection state callback failed")
