"""Serialize service registration: one add in flight at a time."""

from __future__ import annotations

import collections
import logging
from typing import Awaitable, Callable, Deque

from ..errors import describe_stack_error
from .gatt import GattService, GattStatus, describe_uuid

logger = logging.getLogger(__name__)


class ServiceRegistrationSequencer:
    """The queue head is the service the stack is currently registering.

    acknowledge() returns True exactly once per drained batch: when the last
    queued service is acknowledged. That is the signal to start advertising.
    """

    def __init__(self, submit: Callable[[GattService], Awaitable[None]]) -> None:
        self._submit = submit
        self._queue: Deque[GattService] = collections.deque()

    async def enqueue(self, service: GattService) -> None:
        self._queue.append(service)
        if len(self._queue) == 1:
            await self._submit_head()

    async def acknowledge(self, status: int, service: GattService) -> bool:
        if not self._queue:
            logger.warning("[gatt] unexpected service ack for %s; nothing pending", describe_uuid(service.uuid))
            return False

        head = self._queue.popleft()
        if head is not service:
            logger.warning(
                "[gatt] service ack for %s while %s was in flight",
                describe_uuid(service.uuid),
                describe_uuid(head.uuid),
            )
        if status != GattStatus.SUCCESS:
            logger.warning("[gatt] service %s added with status %d", describe_uuid(service.uuid), status)
        else:
            logger.info("[gatt] service %s added", describe_uuid(service.uuid))

        if self._queue:
            await self._submit_head()
            return False
        return True

    def clear(self) -> None:
        self._queue.clear()

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def _submit_head(self) -> None:
        service = self._queue[0]
        try:
            await self._submit(service)
        except Exception as exc:
            logger.error("[gatt] add service %s failed: %s", describe_uuid(service.uuid), describe_stack_error(exc))
