from __future__ import annotations

import unittest

from settlement.errors import ValidationError
from settlement.utils import money


class MoneyHelpersTestCase(unittest.TestCase):
    def test_only_minor_unit_helpers_are_exported(self):
        self.assertFalse(hasattr(money, "money_major_to_minor"))
        self.assertFalse(hasattr(money, "money_minor_to_major"))

    def test_bps_rounds_half_up(self):
        self.assertEqual(money.bps_of_minor_half_up(10000, 1000), 1000)
        self.assertEqual(money.bps_of_minor_half_up(5, 1000), 1)
        self.assertEqual(money.bps_of_minor_half_up(4, 1000), 0)
        self.assertEqual(money.bps_of_minor_half_up(-100, 1000), 0)
        self.assertEqual(money.bps_of_minor_half_up(100, -5), 0)

    def test_parse_minor_amount(self):
        self.assertEqual(money.parse_minor_amount(250), 250)
        self.assertEqual(money.parse_minor_amount(" 250 "), 250)
        self.assertEqual(money.parse_minor_amount("-3"), -3)
        self.assertIsNone(money.parse_minor_amount(True))
        self.assertIsNone(money.parse_minor_amount(2.5))
        self.assertIsNone(money.parse_minor_amount("2.50"))

    def test_optional_minor_amount(self):
        self.assertIsNone(money.optional_minor_amount({}))
        self.assertEqual(money.optional_minor_amount({"amount_minor": "40"}), 40)
        with self.assertRaises(ValidationError) as ctx:
            money.optional_minor_amount({"amount_minor": "forty"})
        self.assertEqual(ctx.exception.code, "INVALID_AMOUNT")


if __name__ == "__main__":
    unittest.main()
