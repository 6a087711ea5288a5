import unittest

from blehid.bt_le import descriptor as d
from blehid.bt_le import keyboard, mouse


class TestDescriptorItems(unittest.TestCase):
    def test_item_prefix_bytes(self) -> None:
        self.assertEqual(d.usage_page(1), 0x05)
        self.assertEqual(d.usage(1), 0x09)
        self.assertEqual(d.collection(1), 0xA1)
        self.assertEqual(d.end_collection(0), 0xC0)
        self.assertEqual(d.report_id(1), 0x85)
        self.assertEqual(d.report_size(1), 0x75)
        self.assertEqual(d.report_count(1), 0x95)
        self.assertEqual(d.input_item(1), 0x81)
        self.assertEqual(d.output_item(1), 0x91)
        self.assertEqual(d.feature_item(1), 0xB1)
        self.assertEqual(d.logical_maximum(2), 0x26)
        self.assertEqual(d.usage_maximum(2), 0x2A)
        self.assertEqual(d.unit(1), 0x65)
        self.assertEqual(d.unit_exponent(1), 0x55)
        self.assertEqual(d.physical_minimum(1), 0x35)
        self.assertEqual(d.physical_maximum(1), 0x45)

    def test_items_are_masked_not_validated(self) -> None:
        self.assertEqual(d.usage(0x100), 0x08)
        self.assertEqual(d.input_item(0x7F), 0xFF)

    def test_lsb_msb(self) -> None:
        self.assertEqual(d.lsb(0x03FF), 0xFF)
        self.assertEqual(d.msb(0x03FF), 0x03)
        self.assertEqual(d.msb(0x12345), 0x23)

    def test_keyboard_map_prefix_and_end(self) -> None:
        m = keyboard.REPORT_MAP
        self.assertEqual(m[:8], bytes([0x05, 0x01, 0x09, 0x06, 0xA1, 0x01, 0x85, 0x01]))
        self.assertEqual(m[-1], 0xC0)

    def test_mouse_map_closes_both_collections(self) -> None:
        self.assertEqual(mouse.REPORT_MAP[-2:], b"\xC0\xC0")


class TestDescriptorParsing(unittest.TestCase):
    def test_iter_items_reads_two_byte_values(self) -> None:
        items = list(d.iter_items(bytes([0x26, 0xFF, 0x03, 0xC0])))
        self.assertEqual(len(items), 2)
        self.assertEqual(items[0].tag, d.LOGICAL_MAXIMUM)
        self.assertEqual(items[0].value, 0x03FF)
        self.assertEqual(items[1].tag, d.END_COLLECTION)
        self.assertEqual(items[1].data, b"")

    def test_truncated_item_raises(self) -> None:
        with self.assertRaises(ValueError):
            list(d.iter_items(bytes([0x05])))

    def test_profile_maps_declare_their_report_id(self) -> None:
        self.assertEqual(d.declared_report_ids(keyboard.REPORT_MAP), [keyboard.REPORT_ID])
        self.assertEqual(d.declared_report_ids(mouse.REPORT_MAP), [mouse.REPORT_ID])

    def test_keyboard_map_collections_balance(self) -> None:
        depth = 0
        for item in d.iter_items(keyboard.REPORT_MAP):
            if item.tag == d.COLLECTION:
                depth += 1
            elif item.tag == d.END_COLLECTION:
                depth -= 1
            self.assertGreaterEqual(depth, 0)
        self.assertEqual(depth, 0)


if __name__ == "__main__":
    unittest.main()
