"""Keyboard profile: translate text and key codes into 9-byte input reports."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from .descriptor import (
    collection,
    end_collection,
    input_item,
    logical_maximum,
    logical_minimum,
    output_item,
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
REPORT_INTERVAL_MS = 20

MODIFIER_KEY_NONE = 0x00
MODIFIER_KEY_CTRL = 0x01
MODIFIER_KEY_SHIFT = 0x02
MODIFIER_KEY_ALT = 0x04

KEY_ENTER = 0x28
KEY_ESCAPE = 0x29
KEY_BACKSPACE = 0x2A
KEY_TAB = 0x2B
KEY_SPACE = 0x2C
KEY_F1 = 0x3A
KEY_RIGHT_ARROW = 0x4F
KEY_LEFT_ARROW = 0x50
KEY_DOWN_ARROW = 0x51
KEY_UP_ARROW = 0x52

LED_NUM_LOCK = 0x01
LED_CAPS_LOCK = 0x02
LED_SCROLL_LOCK = 0x04
LED_COMPOSE = 0x08
LED_KANA = 0x10

REPORT_MAP = bytes([
    usage_page(1), 0x01,            # Generic Desktop
    usage(1), 0x06,                 # Keyboard
    collection(1), 0x01,            # Application
    report_id(1), REPORT_ID,
    # modifier bits
    usage_page(1), 0x07,            # Key Codes
    usage_minimum(1), 0xE0,
    usage_maximum(1), 0xE7,
    logical_minimum(1), 0x00,
    logical_maximum(1), 0x01,
    report_size(1), 0x01,
    report_count(1), 0x08,
    input_item(1), 0x02,            # Data, Variable, Absolute
    # reserved byte
    report_count(1), 0x01,
    report_size(1), 0x08,
    input_item(1), 0x01,            # Constant
    # LEDs
    report_count(1), 0x05,
    report_size(1), 0x01,
    usage_page(1), 0x08,            # LEDs
    usage_minimum(1), 0x01,         # Num Lock
    usage_maximum(1), 0x05,         # Kana
    output_item(1), 0x02,
    report_count(1), 0x01,
    report_size(1), 0x03,
    output_item(1), 0x01,           # LED padding
    # six key slots
    report_count(1), 0x06,
    report_size(1), 0x08,
    logical_minimum(1), 0x00,
    logical_maximum(1), 0x65,
    usage_page(1), 0x07,
    usage_minimum(1), 0x00,
    usage_maximum(1), 0x65,
    input_item(1), 0x00,            # Data, Array, Absolute
    end_collection(0),
])

EMPTY_REPORT = bytes([REPORT_ID, 0, 0, 0, 0, 0, 0, 0, 0])

_SHIFTED = set('ABCDEFGHIJKLMNOPQRSTUVWXYZ!@#$%^&*()_+{}|:"~<>?')


def _build_key_table() -> Dict[str, int]:
    table: Dict[str, int] = {}
    for i, ch in enumerate("abcdefghijklmnopqrstuvwxyz"):
        table[ch] = 0x04 + i
        table[ch.upper()] = 0x04 + i
    for i, (plain, shifted) in enumerate(zip("123456789", "!@#$%^&*(")):
        table[plain] = 0x1E + i
        table[shifted] = 0x1E + i
    table["0"] = table[")"] = 0x27
    table["\n"] = KEY_ENTER
    table["\b"] = KEY_BACKSPACE
    table["\t"] = KEY_TAB
    table[" "] = KEY_SPACE
    for code, pair in (
        (0x2D, "-_"), (0x2E, "=+"), (0x2F, "[{"), (0x30, "]}"), (0x31, "\\|"),
        (0x33, ";:"), (0x34, "'\""), (0x35, "`~"), (0x36, ",<"), (0x37, ".>"),
        (0x38, "/?"),
    ):
        for ch in pair:
            table[ch] = code
    return table


_KEY_CODES = _build_key_table()


def modifier(ch: str) -> int:
    """Modifier needed to produce a character (SHIFT or NONE)."""
    return MODIFIER_KEY_SHIFT if ch in _SHIFTED else MODIFIER_KEY_NONE


def key_code(ch: str) -> int:
    """US-layout key code for a character, 0 when there is none."""
    return _KEY_CODES.get(ch, 0)


class KeyboardProfile:
    """Keyboard with one input report (ID 1) and an LED output report."""

    name = "keyboard"
    report_id = REPORT_ID
    needs_input_report = True
    needs_output_report = True
    needs_feature_report = False

    def __init__(
        self,
        reports: Optional[InputReportQueue] = None,
        *,
        report_interval_ms: int = REPORT_INTERVAL_MS,
        on_leds: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.reports = reports if reports is not None else InputReportQueue()
        self.report_interval_ms = report_interval_ms
        self._on_leds = on_leds
        self._leds = 0

    def report_descriptor(self) -> bytes:
        return REPORT_MAP

    # ---------- input ----------
    def send_key_down(self, key_code: int, modifier: int = MODIFIER_KEY_NONE) -> None:
        report = bytes([REPORT_ID, modifier & 0xFF, 0, key_code & 0xFF, 0, 0, 0, 0, 0])
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[hid] key down mod=0x%02X key=0x%02X", modifier & 0xFF, key_code & 0xFF)
        self.reports.offer(report)

    def send_key_up(self) -> None:
        self.reports.offer(EMPTY_REPORT)

    def send_key(self, key_code: int, modifier: int = MODIFIER_KEY_NONE) -> None:
        """Tap one key: a down report followed by an all-released report."""
        self.send_key_down(key_code, modifier)
        self.send_key_up()

    def send_keys(self, text: str) -> None:
        """Type text; characters without a key code are skipped."""
        for ch in text:
            code = key_code(ch)
            if not code:
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("[hid] no key code for %r; skipping", ch)
                continue
            self.send_key(code, modifier(ch))

    # ---------- output ----------
    def handle_output_report(self, data: bytes) -> None:
        if len(data) >= 2 and data[0] == REPORT_ID:
            leds = data[1]
        elif len(data) == 1:
            leds = data[0]
        else:
            logger.warning("[hid] malformed LED output report: %s", bytes(data).hex())
            return

        changed = leds != self._leds
        self._leds = leds
        logger.info(
            "[hid] LEDs num=%s caps=%s scroll=%s",
            self.num_lock, self.caps_lock, self.scroll_lock,
        )
        if changed and self._on_leds is not None:
            self._on_leds(leds)

    @property
    def leds(self) -> int:
        return self._leds

    @property
    def num_lock(self) -> bool:
        return bool(self._leds & LED_NUM_LOCK)

    @property
    def caps_lock(self) -> bool:
        return bool(self._leds & LED_CAPS_LOCK)

    @property
    def scroll_lock(self) -> bool:
        return bool(self._leds & LED_SCROLL_LOCK)
