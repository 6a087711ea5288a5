"""Profile capability interface and the shared input report queue."""

from __future__ import annotations

import queue
from typing import Optional, Protocol, runtime_checkable


class InputReportQueue:
    """Unbounded FIFO of input reports.

    Producers may call offer() from any thread; the report scheduler is the
    only consumer.
    """

    def __init__(self) -> None:
        self._q: "queue.SimpleQueue[bytes]" = queue.SimpleQueue()

    def offer(self, report: Optional[bytes]) -> None:
        if not report:
            return
        self._q.put(bytes(report))

    def poll(self) -> Optional[bytes]:
        try:
            return self._q.get_nowait()
        except queue.Empty:
            return None

    def qsize(self) -> int:
        return self._q.qsize()

    def empty(self) -> bool:
        return self._q.empty()


@runtime_checkable
class HidProfile(Protocol):
    """What the engine needs from a HID device profile."""

    name: str
    report_id: int
    report_interval_ms: int
    needs_input_report: bool
    needs_output_report: bool
    needs_feature_report: bool
    reports: InputReportQueue

    def report_descriptor(self) -> bytes:
        ...

    def handle_output_report(self, data: bytes) -> None:
        ...
