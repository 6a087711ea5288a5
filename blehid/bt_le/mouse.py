"""Mouse profile: buttons, relative X/Y and wheel."""

from __future__ import annotations

import logging
from typing import Optional

from .descriptor import (
    collection,
    end_collection,
    input_item,
    logical_maximum,
    logical_minimum,
    report_count,
    report_id,
    report_size,
    usage,
    usage_maximum,
    usage_minimum,
    usage_page,
)
from .profile import InputReportQueue

logger = logging.getLogger(__name__)

REPORT_ID = 0x01
REPORT_INTERVAL_MS = 10

BUTTON_1 = 0x01
BUTTON_2 = 0x02
BUTTON_3 = 0x04

REPORT_MAP = bytes([
    usage_page(1), 0x01,            # Generic Desktop
    usage(1), 0x02,                 # Mouse
    collection(1), 0x01,            # Application
    report_id(1), REPORT_ID,
    usage(1), 0x01,                 # Pointer
    collection(1), 0x00,            # Physical
    # buttons 1..3
    usage_page(1), 0x09,
    usage_minimum(1), 0x01,
    usage_maximum(1), 0x03,
    logical_minimum(1), 0x00,
    logical_maximum(1), 0x01,
    report_count(1), 0x03,
    report_size(1), 0x01,
    input_item(1), 0x02,
    report_count(1), 0x01,
    report_size(1), 0x05,
    input_item(1), 0x03,            # padding
    # X, Y, wheel
    usage_page(1), 0x01,
    usage(1), 0x30,
    usage(1), 0x31,
    usage(1), 0x38,
    logical_minimum(1), 0x81,       # -127
    logical_maximum(1), 0x7F,       # 127
    report_size(1), 0x08,
    report_count(1), 0x03,
    input_item(1), 0x06,            # Data, Variable, Relative
    end_collection(0),
    end_collection(0),
])


def _narrow(value: int) -> int:
    # two's-complement truncation, not saturation
    return int(value) & 0xFF


class MouseProfile:
    """Three-button mouse with relative pointer and wheel."""

    name = "mouse"
    report_id = REPORT_ID
    needs_input_report = True
    needs_output_report = False
    needs_feature_report = False

    def __init__(
        self,
        reports: Optional[InputReportQueue] = None,
        *,
        report_interval_ms: int = REPORT_INTERVAL_MS,
    ) -> None:
        self.reports = reports if reports is not None else InputReportQueue()
        self.report_interval_ms = report_interval_ms

    def report_descriptor(self) -> bytes:
        return REPORT_MAP

    def send_movement(self, dx: int = 0, dy: int = 0, wheel: int = 0, buttons: int = 0) -> None:
        report = bytes([REPORT_ID, buttons & 0xFF, _narrow(dx), _narrow(dy), _narrow(wheel)])
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[hid] mouse %s", report.hex())
        self.reports.offer(report)

    def send_click(self, buttons: int = BUTTON_1) -> None:
        self.send_movement(0, 0, 0, buttons)
        self.send_movement(0, 0, 0, 0)

    def handle_output_report(self, data: bytes) -> None:
        logger.info("[hid] mouse output report ignored: %s", bytes(data).hex())
