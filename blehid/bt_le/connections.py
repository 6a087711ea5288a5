"""Registry of connected centrals, keyed by address."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .stack import RemoteDevice

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Devices whose last transition was a successful connect."""

    def __init__(self) -> None:
        self._devices: Dict[str, RemoteDevice] = {}

    def add(self, device: RemoteDevice) -> None:
        self._devices[device.address] = device
        logger.debug("[conn] +%s (%d connected)", device.address, len(self._devices))

    def remove(self, device: RemoteDevice) -> Optional[RemoteDevice]:
        removed = self._devices.pop(device.address, None)
        if removed is not None:
            logger.debug("[conn] -%s (%d connected)", device.address, len(self._devices))
        return removed

    def clear(self) -> None:
        self._devices.clear()

    def devices(self) -> List[RemoteDevice]:
        """Snapshot; safe to iterate while the registry changes."""
        return list(self._devices.values())

    def addresses(self) -> List[str]:
        return list(self._devices)

    def __contains__(self, device: object) -> bool:
        if isinstance(device, RemoteDevice):
            return device.address in self._devices
        return device in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def is_empty(self) -> bool:
        return not self._devices
