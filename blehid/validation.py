"""Shared validation helpers for user-provided inputs."""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _ctx(context: str) -> str:
    return f" ({context})" if context else ""


def parse_ms(
    value: object,
    *,
    default: Optional[int] = None,
    min: int = 0,
    max: int = 5000,
    log: logging.Logger = logger,
    context: str = "",
) -> Optional[int]:
    """Parse a permissive millisecond value with bounds checking."""
    if value is None or value == "":
        return default

    try:
        parsed = int(value)
    except (TypeError, ValueError):
        log.warning("Invalid ms value%s: %r (using default=%s)", _ctx(context), value, default)
        return default

    if parsed < min or parsed > max:
        log.warning(
            "Out-of-range ms value%s: %r (expected %s..%s, using default=%s)",
            _ctx(context),
            parsed,
            min,
            max,
            default,
        )
        return default

    return parsed


def parse_flag(
    value: object,
    *,
    default: bool = False,
    log: logging.Logger = logger,
    context: str = "",
) -> bool:
    """Parse an on/off style switch."""
    if value is None:
        return default
    text = str(value).strip().lower()
    if not text:
        return default
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    log.warning("Invalid flag value%s: %r (using default=%s)", _ctx(context), value, default)
    return default
