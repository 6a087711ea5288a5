"""Advertising lifecycle and the temporary adapter-name substitution."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import describe_stack_error
from .gatt import SERVICE_BLE_HID
from .stack import AdvertiseData, AdvertiseMode, AdvertiseSettings, BleStack, TxPowerLevel

logger = logging.getLogger(__name__)


class AdvertiseError(enum.IntEnum):
    DATA_TOO_LARGE = 1
    TOO_MANY_ADVERTISERS = 2
    ALREADY_STARTED = 3
    INTERNAL_ERROR = 4
    FEATURE_UNSUPPORTED = 5


_ADVERTISE_ERROR_TEXT = {
    AdvertiseError.DATA_TOO_LARGE: "advertise data too large",
    AdvertiseError.TOO_MANY_ADVERTISERS: "too many advertisers",
    AdvertiseError.ALREADY_STARTED: "advertising already started",
    AdvertiseError.INTERNAL_ERROR: "internal error",
    AdvertiseError.FEATURE_UNSUPPORTED: "feature unsupported",
}


def describe_advertise_error(code: int) -> str:
    try:
        return _ADVERTISE_ERROR_TEXT[AdvertiseError(code)]
    except ValueError:
        return f"unknown error ({code})"


@dataclass
class AdvertisingNameState:
    """Adapter name from before our rename; None when nothing is pending restore."""
    original: Optional[str] = None


class AdvertisingController:
    def __init__(
        self,
        stack: BleStack,
        *,
        device_name: str = "",
        service_uuid: str = SERVICE_BLE_HID,
    ) -> None:
        self._stack = stack
        self.device_name = device_name
        self.service_uuid = service_uuid
        self.name_state = AdvertisingNameState()
        self.advertising = False
        self.last_error: Optional[int] = None

    async def start(self) -> bool:
        """Rename the adapter and ask the stack to advertise.

        The outcome arrives later as AdvertiseStarted / AdvertiseFailed.
        Returns False when advertising could not even be requested.
        """
        try:
            status = await self._stack.probe()
        except Exception as exc:
            logger.error("[adv] adapter probe failed: %s", describe_stack_error(exc))
            return False
        if not status.enabled or not status.advertiser:
            logger.error(
                "[adv] cannot advertise (adapter enabled=%s, advertiser=%s)",
                status.enabled,
                status.advertiser,
            )
            return False

        await self._substitute_name()

        settings = AdvertiseSettings(
            mode=AdvertiseMode.BALANCED,
            tx_power=TxPowerLevel.HIGH,
            connectable=True,
            timeout_ms=0,
        )
        data = AdvertiseData(service_uuids=[self.service_uuid], include_device_name=True)
        scan_response = AdvertiseData()
        try:
            await self._stack.start_advertising(settings, data, scan_response)
        except Exception as exc:
            logger.error("[adv] start advertising failed: %s", describe_stack_error(exc))
            await self.restore_name()
            return False
        logger.debug("[adv] advertising requested as %r", self.device_name)
        return True

    async def stop(self) -> None:
        """Cancel the advertisement; safe when nothing is advertising."""
        self.advertising = False
        try:
            await self._stack.stop_advertising()
        except Exception as exc:
            logger.warning("[adv] stop advertising failed: %s", describe_stack_error(exc))

    def on_started(self) -> None:
        self.advertising = True
        self.last_error = None
        logger.info("[adv] advertising started")

    async def on_failed(self, error_code: int) -> None:
        self.advertising = False
        self.last_error = error_code
        logger.error("[adv] advertising failed: %s", describe_advertise_error(error_code))
        await self.restore_name()

    async def restore_name(self) -> None:
        """Put back the pre-rename adapter name, at most once per rename."""
        original = self.name_state.original
        if original is None:
            return
        try:
            current = await self._stack.get_adapter_name()
            if current != original:
                if await self._stack.set_adapter_name(original):
                    logger.info("[adv] adapter name restored to %r", original)
                else:
                    logger.warning("[adv] could not restore adapter name to %r", original)
        except Exception as exc:
            logger.warning("[adv] restore adapter name failed: %s", describe_stack_error(exc))
        finally:
            self.name_state.original = None

    async def _substitute_name(self) -> None:
        if not self.device_name:
            return
        try:
            current = await self._stack.get_adapter_name()
        except Exception as exc:
            logger.warning("[adv] read adapter name failed: %s", describe_stack_error(exc))
            return
        if current == self.device_name:
            return
        # keep the first original if a previous rename is still pending
        if self.name_state.original is None:
            self.name_state.original = current
        try:
            renamed = await self._stack.set_adapter_name(self.device_name)
        except Exception as exc:
            logger.warning("[adv] rename adapter failed: %s", describe_stack_error(exc))
            return
        if not renamed:
            logger.warning("[adv] adapter rename to %r refused; advertising as %r", self.device_name, current)
