import unittest

from blehid.bt_le import mouse
from blehid.bt_le.mouse import MouseProfile


def _signed(b: int) -> int:
    return int.from_bytes(bytes([b]), "little", signed=True)


class TestMouseProfile(unittest.TestCase):
    def test_movement_truncates_to_signed_byte(self) -> None:
        p = MouseProfile()
        p.send_movement(dx=200, dy=-5, wheel=0, buttons=mouse.BUTTON_1)
        r = p.reports.poll()

        self.assertEqual(r, bytes([0x01, 0x01, 0xC8, 0xFB, 0x00]))
        self.assertEqual(_signed(r[2]), -56)
        self.assertEqual(_signed(r[3]), -5)

    def test_truncation_is_not_saturation(self) -> None:
        p = MouseProfile()
        p.send_movement(dx=300, dy=-300, wheel=128)
        r = p.reports.poll()
        self.assertEqual(_signed(r[2]), 44)
        self.assertEqual(_signed(r[3]), -44)
        self.assertEqual(_signed(r[4]), -128)

    def test_click_is_press_then_release(self) -> None:
        p = MouseProfile()
        p.send_click(mouse.BUTTON_2)
        self.assertEqual(p.reports.poll(), bytes([0x01, 0x02, 0, 0, 0]))
        self.assertEqual(p.reports.poll(), bytes([0x01, 0x00, 0, 0, 0]))
        self.assertIsNone(p.reports.poll())

    def test_profile_shape(self) -> None:
        p = MouseProfile()
        self.assertTrue(p.needs_input_report)
        self.assertFalse(p.needs_output_report)
        self.assertEqual(p.report_interval_ms, 10)
        self.assertEqual(p.report_descriptor(), mouse.REPORT_MAP)

    def test_output_report_is_only_logged(self) -> None:
        p = MouseProfile()
        with self.assertLogs("blehid.bt_le.mouse", level="INFO"):
            p.handle_output_report(b"\x01")
        self.assertTrue(p.reports.empty())


if __name__ == "__main__":
    unittest.main()
