"""GATT attribute tree: UUIDs, status codes and service/characteristic/descriptor nodes."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional

BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"


def uuid16(short: int) -> str:
    """Expand a 16-bit assigned number onto the Bluetooth base UUID."""
    return f"0000{short & 0xFFFF:04x}{BASE_UUID_SUFFIX}"


def short_uuid(uuid: str) -> Optional[int]:
    """Return the 16-bit form of a base-UUID string, or None for vendor UUIDs."""
    u = uuid.lower()
    if len(u) == 36 and u.startswith("0000") and u.endswith(BASE_UUID_SUFFIX):
        return int(u[4:8], 16)
    return None


# Device Information
SERVICE_DEVICE_INFORMATION = uuid16(0x180A)
CHARACTERISTIC_MANUFACTURER_NAME = uuid16(0x2A29)
CHARACTERISTIC_MODEL_NUMBER = uuid16(0x2A24)
CHARACTERISTIC_SERIAL_NUMBER = uuid16(0x2A25)

# Battery
SERVICE_BATTERY = uuid16(0x180F)
CHARACTERISTIC_BATTERY_LEVEL = uuid16(0x2A19)

# HID
SERVICE_BLE_HID = uuid16(0x1812)
CHARACTERISTIC_HID_INFORMATION = uuid16(0x2A4A)
CHARACTERISTIC_REPORT_MAP = uuid16(0x2A4B)
CHARACTERISTIC_HID_CONTROL_POINT = uuid16(0x2A4C)
CHARACTERISTIC_REPORT = uuid16(0x2A4D)
CHARACTERISTIC_PROTOCOL_MODE = uuid16(0x2A4E)

DESCRIPTOR_REPORT_REFERENCE = uuid16(0x2908)
DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION = uuid16(0x2902)

# bcdHID 1.11, country 0, flags remote-wake | normally-connectable
HID_INFORMATION = bytes([0x11, 0x01, 0x00, 0x03])

PROTOCOL_MODE_REPORT = 0x01

CONTROL_POINT_SUSPEND = 0x00
CONTROL_POINT_EXIT_SUSPEND = 0x01

ENABLE_NOTIFICATION_VALUE = b"\x01\x00"
ENABLE_INDICATION_VALUE = b"\x02\x00"
DISABLE_NOTIFICATION_VALUE = b"\x00\x00"

DEFAULT_BATTERY_LEVEL = 100


class GattStatus(enum.IntEnum):
    SUCCESS = 0x00
    READ_NOT_PERMITTED = 0x02
    WRITE_NOT_PERMITTED = 0x03
    INVALID_OFFSET = 0x07
    INVALID_ATTRIBUTE_LENGTH = 0x0D
    FAILURE = 0x101


class ReportKind(enum.IntEnum):
    """Report type as carried in the Report Reference descriptor."""
    INPUT = 1
    OUTPUT = 2
    FEATURE = 3


class Property(enum.IntFlag):
    BROADCAST = 0x01
    READ = 0x02
    WRITE_NO_RESPONSE = 0x04
    WRITE = 0x08
    NOTIFY = 0x10
    INDICATE = 0x20


class Permission(enum.IntFlag):
    READ = 0x01
    READ_ENCRYPTED = 0x02
    WRITE = 0x10
    WRITE_ENCRYPTED = 0x20


# Nodes compare by identity: several Report characteristics share one UUID.
@dataclass(eq=False)
class GattDescriptor:
    uuid: str
    permissions: Permission
    value: Optional[bytes] = None
    characteristic: Optional["GattCharacteristic"] = field(default=None, repr=False)


@dataclass(eq=False)
class GattCharacteristic:
    uuid: str
    properties: Property
    permissions: Permission
    value: Optional[bytes] = None
    report_kind: Optional[ReportKind] = None
    descriptors: List[GattDescriptor] = field(default_factory=list)
    service: Optional["GattService"] = field(default=None, repr=False)

    def add_descriptor(self, descriptor: GattDescriptor) -> GattDescriptor:
        descriptor.characteristic = self
        self.descriptors.append(descriptor)
        return descriptor

    def get_descriptor(self, uuid: str) -> Optional[GattDescriptor]:
        for d in self.descriptors:
            if d.uuid == uuid:
                return d
        return None

    @property
    def is_report(self) -> bool:
        return self.uuid == CHARACTERISTIC_REPORT

    @property
    def notifications_enabled(self) -> bool:
        cccd = self.get_descriptor(DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION)
        return cccd is not None and cccd.value in (ENABLE_NOTIFICATION_VALUE, ENABLE_INDICATION_VALUE)


@dataclass(eq=False)
class GattService:
    uuid: str
    primary: bool = True
    characteristics: List[GattCharacteristic] = field(default_factory=list)

    def add_characteristic(self, characteristic: GattCharacteristic) -> GattCharacteristic:
        characteristic.service = self
        self.characteristics.append(characteristic)
        return characteristic

    def get_characteristic(self, uuid: str) -> Optional[GattCharacteristic]:
        """First characteristic with this UUID; ambiguous for Report."""
        for c in self.characteristics:
            if c.uuid == uuid:
                return c
        return None

    def find_reports(self, kind: ReportKind) -> List[GattCharacteristic]:
        return [c for c in self.characteristics if c.is_report and c.report_kind is kind]


def describe_uuid(uuid: str) -> str:
    """Short label for log lines."""
    short = short_uuid(uuid)
    return f"0x{short:04X}" if short is not None else uuid
