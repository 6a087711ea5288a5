"""HID report descriptor items.

Each item function returns a single prefix byte: the item tag OR'd with the
size code (0, 1, 2 or 4 data bytes, encoded as 0, 1, 2, 3). Data bytes follow
literally in the descriptor, so a report map reads like::

    bytes([
        usage_page(1), 0x01,
        usage(1), 0x06,
        collection(1), 0x01,
        ...
        end_collection(0),
    ])

Nothing here validates a descriptor; values are only masked to a byte.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List

# Main items
INPUT = 0x80
OUTPUT = 0x90
COLLECTION = 0xA0
FEATURE = 0xB0
END_COLLECTION = 0xC0

# Global items
USAGE_PAGE = 0x04
LOGICAL_MINIMUM = 0x14
LOGICAL_MAXIMUM = 0x24
PHYSICAL_MINIMUM = 0x34
PHYSICAL_MAXIMUM = 0x44
UNIT_EXPONENT = 0x54
UNIT = 0x64
REPORT_SIZE = 0x74
REPORT_ID = 0x84
REPORT_COUNT = 0x94

# Local items
USAGE = 0x08
USAGE_MINIMUM = 0x18
USAGE_MAXIMUM = 0x28

_LONG_ITEM = 0xFE
_DATA_LENGTH = {0: 0, 1: 1, 2: 2, 3: 4}


def _item(tag: int, size: int) -> int:
    return (tag | size) & 0xFF


def input_item(size: int) -> int:
    return _item(INPUT, size)


def output_item(size: int) -> int:
    return _item(OUTPUT, size)


def feature_item(size: int) -> int:
    return _item(FEATURE, size)


def collection(size: int) -> int:
    return _item(COLLECTION, size)


def end_collection(size: int = 0) -> int:
    return _item(END_COLLECTION, size)


def usage_page(size: int) -> int:
    return _item(USAGE_PAGE, size)


def logical_minimum(size: int) -> int:
    return _item(LOGICAL_MINIMUM, size)


def logical_maximum(size: int) -> int:
    return _item(LOGICAL_MAXIMUM, size)


def physical_minimum(size: int) -> int:
    return _item(PHYSICAL_MINIMUM, size)


def physical_maximum(size: int) -> int:
    return _item(PHYSICAL_MAXIMUM, size)


def unit_exponent(size: int) -> int:
    return _item(UNIT_EXPONENT, size)


def unit(size: int) -> int:
    return _item(UNIT, size)


def report_size(size: int) -> int:
    return _item(REPORT_SIZE, size)


def report_id(size: int) -> int:
    return _item(REPORT_ID, size)


def report_count(size: int) -> int:
    return _item(REPORT_COUNT, size)


def usage(size: int) -> int:
    return _item(USAGE, size)


def usage_minimum(size: int) -> int:
    return _item(USAGE_MINIMUM, size)


def usage_maximum(size: int) -> int:
    return _item(USAGE_MAXIMUM, size)


def lsb(value: int) -> int:
    """Low byte of a 16-bit item value."""
    return value & 0xFF


def msb(value: int) -> int:
    """High byte of a 16-bit item value."""
    return (value >> 8) & 0xFF


@dataclass(frozen=True)
class Item:
    """One decoded short item."""
    tag: int          # prefix with the size bits cleared
    data: bytes

    @property
    def value(self) -> int:
        return int.from_bytes(self.data, "little") if self.data else 0


def iter_items(descriptor: bytes) -> Iterator[Item]:
    """Walk the short items of a report descriptor.

    Long items are skipped. A truncated trailing item raises ValueError.
    """
    i = 0
    n = len(descriptor)
    while i < n:
        prefix = descriptor[i]
        if prefix == _LONG_ITEM:
            if i + 2 >= n:
                raise ValueError(f"truncated long item at offset {i}")
            i += 3 + descriptor[i + 1]
            continue
        length = _DATA_LENGTH[prefix & 0x03]
        end = i + 1 + length
        if end > n:
            raise ValueError(f"truncated item 0x{prefix:02X} at offset {i}")
        yield Item(tag=prefix & 0xFC, data=bytes(descriptor[i + 1:end]))
        i = end


def declared_report_ids(descriptor: bytes) -> List[int]:
    """Report IDs declared by a descriptor, in order of first appearance."""
    seen: List[int] = []
    for item in iter_items(descriptor):
        if item.tag == REPORT_ID and item.value not in seen:
            seen.append(item.value)
    return seen
