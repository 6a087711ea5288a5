"""Builders for the Device Information, Battery and HID services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

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
    DEFAULT_BATTERY_LEVEL,
    DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION,
    DESCRIPTOR_REPORT_REFERENCE,
    DISABLE_NOTIFICATION_VALUE,
    PROTOCOL_MODE_REPORT,
    SERVICE_BATTERY,
    SERVICE_BLE_HID,
    SERVICE_DEVICE_INFORMATION,
    GattCharacteristic,
    GattDescriptor,
    GattService,
    Permission,
    Property,
    ReportKind,
)
from .descriptor import declared_report_ids
from .profile import HidProfile


def _cccd() -> GattDescriptor:
    return GattDescriptor(
        DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION,
        Permission.READ | Permission.WRITE,
        value=DISABLE_NOTIFICATION_VALUE,
    )


def _report_reference() -> GattDescriptor:
    return GattDescriptor(DESCRIPTOR_REPORT_REFERENCE, Permission.READ)


def build_device_information_service() -> GattService:
    """Manufacturer, model and serial; values are resolved per read."""
    service = GattService(SERVICE_DEVICE_INFORMATION)
    for uuid in (CHARACTERISTIC_MANUFACTURER_NAME, CHARACTERISTIC_MODEL_NUMBER, CHARACTERISTIC_SERIAL_NUMBER):
        service.add_characteristic(GattCharacteristic(uuid, Property.READ, Permission.READ))
    return service


def build_battery_service(level: int = DEFAULT_BATTERY_LEVEL) -> GattService:
    service = GattService(SERVICE_BATTERY)
    ch = service.add_characteristic(
        GattCharacteristic(
            CHARACTERISTIC_BATTERY_LEVEL,
            Property.READ | Property.NOTIFY,
            Permission.READ,
            value=bytes([max(0, min(100, int(level)))]),
        )
    )
    ch.add_descriptor(_cccd())
    return service


def check_report_map(profile: HidProfile) -> None:
    """Raise ValueError unless the report map declares the profile's report ID."""
    declared = declared_report_ids(profile.report_descriptor())
    if profile.report_id not in declared:
        raise ValueError(
            f"{profile.name} report map declares report IDs {declared}, not {profile.report_id}"
        )


@dataclass
class HidServiceHandles:
    service: GattService

    @property
    def input_report(self) -> Optional[GattCharacteristic]:
        reports = self.service.find_reports(ReportKind.INPUT)
        return reports[0] if reports else None


def build_hid_service(profile: HidProfile) -> HidServiceHandles:
    """HID service shaped after what the profile says it needs."""
    service = GattService(SERVICE_BLE_HID)
    handles = HidServiceHandles(service=service)

    service.add_characteristic(
        GattCharacteristic(CHARACTERISTIC_HID_INFORMATION, Property.READ, Permission.READ)
    )
    service.add_characteristic(
        GattCharacteristic(CHARACTERISTIC_REPORT_MAP, Property.READ, Permission.READ)
    )
    service.add_characteristic(
        GattCharacteristic(
            CHARACTERISTIC_PROTOCOL_MODE,
            Property.READ | Property.WRITE_NO_RESPONSE,
            Permission.READ | Permission.WRITE,
            value=bytes([PROTOCOL_MODE_REPORT]),
        )
    )
    service.add_characteristic(
        GattCharacteristic(CHARACTERISTIC_HID_CONTROL_POINT, Property.WRITE_NO_RESPONSE, Permission.WRITE)
    )

    if profile.needs_input_report:
        ch = service.add_characteristic(
            GattCharacteristic(
                CHARACTERISTIC_REPORT,
                Property.READ | Property.NOTIFY,
                Permission.READ,
                report_kind=ReportKind.INPUT,
            )
        )
        ch.add_descriptor(_cccd())
        ch.add_descriptor(_report_reference())

    if profile.needs_output_report:
        ch = service.add_characteristic(
            GattCharacteristic(
                CHARACTERISTIC_REPORT,
                Property.READ | Property.WRITE | Property.WRITE_NO_RESPONSE,
                Permission.READ | Permission.WRITE,
                report_kind=ReportKind.OUTPUT,
            )
        )
        ch.add_descriptor(_report_reference())

    if profile.needs_feature_report:
        ch = service.add_characteristic(
            GattCharacteristic(
                CHARACTERISTIC_REPORT,
                Property.READ | Property.WRITE,
                Permission.READ | Permission.WRITE,
                report_kind=ReportKind.FEATURE,
            )
        )
        ch.add_descriptor(_report_reference())

    return handles
