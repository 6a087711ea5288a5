"""Events consumed by the engine's dispatch loop.

Radio callbacks, timer ticks and application commands all travel through
one queue, so every piece of engine state has a single writer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .gatt import GattCharacteristic, GattDescriptor, GattService
from .stack import RemoteDevice

Attribute = Union[GattCharacteristic, GattDescriptor]


# ---------- radio stack ----------
@dataclass(frozen=True)
class ConnectionEvent:
    device: RemoteDevice
    status: int
    new_state: int


@dataclass(frozen=True)
class ReadRequest:
    device: RemoteDevice
    request_id: int
    offset: int
    attribute: Attribute


@dataclass(frozen=True)
class WriteRequest:
    device: RemoteDevice
    request_id: int
    attribute: Attribute
    value: bytes
    response_needed: bool = False
    offset: int = 0


@dataclass(frozen=True)
class ServiceAdded:
    status: int
    service: GattService


@dataclass(frozen=True)
class AdvertiseStarted:
    pass


@dataclass(frozen=True)
class AdvertiseFailed:
    error_code: int


@dataclass(frozen=True)
class NotificationSent:
    device: RemoteDevice
    status: int


@dataclass(frozen=True)
class MtuChanged:
    device: RemoteDevice
    mtu: int


@dataclass(frozen=True)
class TimerTick:
    pass


# ---------- application commands ----------
@dataclass(frozen=True)
class StartCommand:
    pass


@dataclass(frozen=True)
class StopCommand:
    pass


@dataclass(frozen=True)
class BatteryLevelCommand:
    level: int


@dataclass(frozen=True)
class DisconnectAllCommand:
    pass


Event = Union[
    ConnectionEvent,
    ReadRequest,
    WriteRequest,
    ServiceAdded,
    AdvertiseStarted,
    AdvertiseFailed,
    NotificationSent,
    MtuChanged,
    TimerTick,
    StartCommand,
    StopCommand,
    BatteryLevelCommand,
    DisconnectAllCommand,
]


@dataclass(frozen=True)
class ConnectionStateChange:
    """What the embedding application sees for every connection transition."""
    device: Optional[RemoteDevice]
    status: int
    new_state: int
