"""The radio stack seen from the engine.

A backend (BlueZ in production, a fake in tests) implements BleStack and
reports asynchronous outcomes by posting events (see events.py) to the
listener handed to bind().
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

from .gatt import GattCharacteristic, GattService, GattStatus

STATUS_SUCCESS = int(GattStatus.SUCCESS)


class ConnectionState(enum.IntEnum):
    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2
    DISCONNECTING = 3


class BondState(enum.IntEnum):
    NONE = 10
    BONDING = 11
    BONDED = 12


class AdvertiseMode(enum.IntEnum):
    LOW_POWER = 0
    BALANCED = 1
    LOW_LATENCY = 2


class TxPowerLevel(enum.IntEnum):
    ULTRA_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


@dataclass(frozen=True)
class RemoteDevice:
    address: str
    name: Optional[str] = None
    path: Optional[str] = None  # backend handle, e.g. a D-Bus object path

    def __str__(self) -> str:
        return f"{self.name} ({self.address})" if self.name else self.address


@dataclass(frozen=True)
class AdapterStatus:
    present: bool = False
    enabled: bool = False
    advertiser: bool = False


@dataclass(frozen=True)
class AdvertiseSettings:
    mode: AdvertiseMode = AdvertiseMode.BALANCED
    tx_power: TxPowerLevel = TxPowerLevel.HIGH
    connectable: bool = True
    timeout_ms: int = 0


@dataclass(frozen=True)
class AdvertiseData:
    service_uuids: List[str] = field(default_factory=list)
    include_device_name: bool = False
    include_tx_power: bool = False


class BleStack(Protocol):
    def bind(self, listener: Callable[[object], None]) -> None:
        ...

    async def probe(self) -> AdapterStatus:
        ...

    async def open_gatt_server(self) -> bool:
        ...

    async def close_gatt_server(self) -> None:
        ...

    async def add_service(self, service: GattService) -> None:
        """Submit one service; completion arrives as a ServiceAdded event."""

    async def start_advertising(
        self,
        settings: AdvertiseSettings,
        data: AdvertiseData,
        scan_response: AdvertiseData,
    ) -> None:
        """Completion arrives as AdvertiseStarted or AdvertiseFailed."""

    async def stop_advertising(self) -> None:
        ...

    async def get_adapter_name(self) -> Optional[str]:
        ...

    async def set_adapter_name(self, name: str) -> bool:
        ...

    async def send_response(
        self,
        device: RemoteDevice,
        request_id: int,
        status: int,
        offset: int,
        value: Optional[bytes],
    ) -> bool:
        ...

    async def notify_characteristic_changed(
        self,
        device: RemoteDevice,
        characteristic: GattCharacteristic,
        confirm: bool = False,
    ) -> bool:
        ...

    async def get_bond_state(self, device: RemoteDevice) -> BondState:
        ...

    async def create_bond(self, device: RemoteDevice) -> bool:
        ...

    async def disconnect(self, device: RemoteDevice) -> None:
        ...
