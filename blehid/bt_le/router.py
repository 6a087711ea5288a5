"""Answer GATT read and write requests for the HID peripheral."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from ..errors import describe_stack_error
from .events import ReadRequest, WriteRequest
from .gatt import (
    CHARACTERISTIC_BATTERY_LEVEL,
    CHARACTERISTIC_HID_CONTROL_POINT,
    CHARACTERISTIC_HID_INFORMATION,
    CHARACTERISTIC_MANUFACTURER_NAME,
    CHARACTERISTIC_MODEL_NUMBER,
    CHARACTERISTIC_PROTOCOL_MODE,
    CHARACTERISTIC_REPORT,
    CHARACTERISTIC_REPORT_MAP,
    CHARACTERISTIC_SERIAL_NUMBER,
    CONTROL_POINT_EXIT_SUSPEND,
    CONTROL_POINT_SUSPEND,
    DEFAULT_BATTERY_LEVEL,
    DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION,
    DESCRIPTOR_REPORT_REFERENCE,
    DISABLE_NOTIFICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
    HID_INFORMATION,
    PROTOCOL_MODE_REPORT,
    GattCharacteristic,
    GattDescriptor,
    GattStatus,
    ReportKind,
    describe_uuid,
)
from .profile import HidProfile
from .stack import BleStack

logger = logging.getLogger(__name__)

Result = Tuple[GattStatus, Optional[bytes]]


@dataclass
class DeviceIdentity:
    """Strings served by the Device Information service."""
    manufacturer: str = "blehid"
    model: str = "BLE HID"
    serial_number: str = "00000000"


def slice_from(value: bytes, offset: int) -> bytes:
    """Tail of a read payload; an offset past the end yields b""."""
    if offset <= 0:
        return value
    return value[offset:]


class GattRequestRouter:
    def __init__(self, stack: BleStack, profile: HidProfile, identity: DeviceIdentity) -> None:
        self._stack = stack
        self._profile = profile
        self.identity = identity

    # ---------- dispatch ----------
    async def handle_read(self, request: ReadRequest) -> None:
        attr = request.attribute
        if isinstance(attr, GattDescriptor):
            status, value = self.read_descriptor(attr)
        else:
            status, value = self.read_characteristic(attr)
        if status == GattStatus.SUCCESS and value is not None:
            value = slice_from(value, request.offset)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[gatt] read %s offset=%d -> %s %s",
                describe_uuid(attr.uuid),
                request.offset,
                status.name,
                value.hex() if value is not None else None,
            )
        await self._respond(request.device, request.request_id, status, request.offset, value)

    async def handle_write(self, request: WriteRequest) -> None:
        attr = request.attribute
        value = bytes(request.value or b"")
        if isinstance(attr, GattDescriptor):
            status = self.write_descriptor(attr, value)
        else:
            status = self.write_characteristic(attr, value)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[gatt] write %s %s -> %s", describe_uuid(attr.uuid), value.hex(), status.name)
        if request.response_needed:
            await self._respond(
                request.device,
                request.request_id,
                status,
                request.offset,
                value if status == GattStatus.SUCCESS else None,
            )

    # ---------- reads ----------
    def read_characteristic(self, ch: GattCharacteristic) -> Result:
        uuid = ch.uuid
        if uuid == CHARACTERISTIC_HID_INFORMATION:
            return GattStatus.SUCCESS, HID_INFORMATION
        if uuid == CHARACTERISTIC_REPORT_MAP:
            return GattStatus.SUCCESS, bytes(self._profile.report_descriptor())
        if uuid == CHARACTERISTIC_MANUFACTURER_NAME:
            return GattStatus.SUCCESS, self.identity.manufacturer.encode("utf-8")
        if uuid == CHARACTERISTIC_MODEL_NUMBER:
            return GattStatus.SUCCESS, self.identity.model.encode("utf-8")
        if uuid == CHARACTERISTIC_SERIAL_NUMBER:
            return GattStatus.SUCCESS, self.identity.serial_number.encode("utf-8")
        if uuid == CHARACTERISTIC_BATTERY_LEVEL:
            return GattStatus.SUCCESS, ch.value if ch.value is not None else bytes([DEFAULT_BATTERY_LEVEL])
        if uuid == CHARACTERISTIC_PROTOCOL_MODE:
            return GattStatus.SUCCESS, ch.value if ch.value else bytes([PROTOCOL_MODE_REPORT])
        if uuid == CHARACTERISTIC_REPORT:
            return GattStatus.SUCCESS, ch.value if ch.value is not None else b""
        logger.warning("[gatt] read of unknown characteristic %s", describe_uuid(uuid))
        return GattStatus.READ_NOT_PERMITTED, None

    def read_descriptor(self, desc: GattDescriptor) -> Result:
        if desc.uuid == DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION:
            return GattStatus.SUCCESS, desc.value if desc.value is not None else DISABLE_NOTIFICATION_VALUE
        if desc.uuid == DESCRIPTOR_REPORT_REFERENCE:
            ch = desc.characteristic
            if ch is None or not ch.is_report or ch.report_kind is None:
                logger.warning("[gatt] report reference on a non-report characteristic")
                return GattStatus.FAILURE, None
            return GattStatus.SUCCESS, bytes([self._profile.report_id & 0xFF, int(ch.report_kind)])
        logger.warning("[gatt] read of unknown descriptor %s", describe_uuid(desc.uuid))
        return GattStatus.READ_NOT_PERMITTED, None

    # ---------- writes ----------
    def write_characteristic(self, ch: GattCharacteristic, value: bytes) -> GattStatus:
        uuid = ch.uuid
        if uuid == CHARACTERISTIC_REPORT:
            if ch.report_kind not in (ReportKind.OUTPUT, ReportKind.FEATURE):
                return GattStatus.WRITE_NOT_PERMITTED
            try:
                self._profile.handle_output_report(value)
            except Exception:
                logger.exception("[hid] output report handler failed")
            ch.value = value
            return GattStatus.SUCCESS
        if uuid == CHARACTERISTIC_PROTOCOL_MODE:
            if not value:
                return GattStatus.INVALID_ATTRIBUTE_LENGTH
            ch.value = value
            logger.info("[hid] protocol mode set to 0x%02X", value[0])
            return GattStatus.SUCCESS
        if uuid == CHARACTERISTIC_HID_CONTROL_POINT:
            if not value:
                return GattStatus.INVALID_ATTRIBUTE_LENGTH
            if value[0] == CONTROL_POINT_SUSPEND:
                logger.info("[hid] host suspend")
            elif value[0] == CONTROL_POINT_EXIT_SUSPEND:
                logger.info("[hid] host exit suspend")
            else:
                logger.warning("[hid] unknown control point command 0x%02X", value[0])
            return GattStatus.SUCCESS
        logger.warning("[gatt] write to %s not permitted", describe_uuid(uuid))
        return GattStatus.WRITE_NOT_PERMITTED

    def write_descriptor(self, desc: GattDescriptor, value: bytes) -> GattStatus:
        if desc.uuid == DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION:
            if value not in (ENABLE_NOTIFICATION_VALUE, DISABLE_NOTIFICATION_VALUE):
                return GattStatus.INVALID_ATTRIBUTE_LENGTH
            desc.value = value
            owner = desc.characteristic
            logger.info(
                "[gatt] notifications %s for %s",
                "enabled" if value == ENABLE_NOTIFICATION_VALUE else "disabled",
                describe_uuid(owner.uuid) if owner is not None else "?",
            )
            return GattStatus.SUCCESS
        logger.warning("[gatt] write to descriptor %s not permitted", describe_uuid(desc.uuid))
        return GattStatus.WRITE_NOT_PERMITTED

    async def _respond(self, device, request_id: int, status: GattStatus, offset: int, value: Optional[bytes]) -> None:
        try:
            await self._stack.send_response(device, request_id, int(status), offset, value)
        except Exception as exc:
            logger.warning("[gatt] send response to %s failed: %s", device, describe_stack_error(exc))
