from __future__ import annotations

import json
import unittest

from settlement.errors import ValidationError
from settlement.models import FeeSchedule, Order
from settlement.services import fee_calculator
from settlement.services.fee_calculator import FeeRule, FeeScheduleSnapshot, compute_fees

from settlement_case import SettlementTestCase


def _schedule(buyer=(0, False), commission=(0, False)) -> FeeScheduleSnapshot:
    return FeeScheduleSnapshot(
        buyer_fee=FeeRule(fee_type="buyer_fee", value=buyer[0], is_percentage=buyer[1], version=1),
        seller_commission=FeeRule(fee_type="seller_commission", value=commission[0], is_percentage=commission[1], version=2),
    )


class ComputeFeesTestCase(unittest.TestCase):
    def test_ten_percent_commission_leaves_ninety(self):
        out = compute_fees(10000, _schedule(commission=(1000, True)))
        self.assertEqual(out.seller_commission_minor, 1000)
        self.assertEqual(out.net_payout_minor, 9000)
        self.assertEqual(out.buyer_total_minor, 10000)

    def test_buyer_fee_is_charged_on_top(self):
        out = compute_fees(10000, _schedule(buyer=(250, False), commission=(500, True)))
        self.assertEqual(out.buyer_fee_minor, 250)
        self.assertEqual(out.buyer_total_minor, 10250)
        self.assertEqual(out.net_payout_minor, 9500)

    def test_percentage_rounds_half_up(self):
        # 2.5% of 1 is 0.025 minor units.
        self.assertEqual(compute_fees(1, _schedule(commission=(250, True))).seller_commission_minor, 0)
        # 5% of 10 is 0.5 minor units.
        self.assertEqual(compute_fees(10, _schedule(commission=(500, True))).seller_commission_minor, 1)

    def test_flat_commission_never_exceeds_amount(self):
        out = compute_fees(300, _schedule(commission=(500, False)))
        self.assertEqual(out.seller_commission_minor, 300)
        self.assertEqual(out.net_payout_minor, 0)

    def test_zero_amount(self):
        out = compute_fees(0, _schedule(buyer=(100, True), commission=(1000, True)))
        self.assertEqual(out.net_payout_minor, 0)
        self.assertEqual(out.buyer_fee_minor, 0)

    def test_rejects_non_integer_amounts(self):
        for bad in (10.5, "100", True, -1):
            with self.assertRaises(ValidationError):
                compute_fees(bad, _schedule())

    def test_version_names_both_rules(self):
        self.assertEqual(_schedule().version, "bf:1/sc:2")


class FeeScheduleTestCase(SettlementTestCase):
    def test_empty_schedule_is_zero_fee(self):
        snapshot = fee_calculator.active_fee_schedule()
        self.assertEqual(snapshot.version, "bf:0/sc:0")
        self.assertEqual(compute_fees(5000, snapshot).net_payout_minor, 5000)

    def test_activate_replaces_active_row(self):
        admin_id = self.make_user("admin")
        first = fee_calculator.activate_fee("seller_commission", 1000, is_percentage=True, admin_id=admin_id)
        second = fee_calculator.activate_fee("seller_commission", 800, is_percentage=True, admin_id=admin_id)
        active = FeeSchedule.query.filter_by(fee_type="seller_commission", is_active=True).all()
        self.assertEqual([int(r.id) for r in active], [int(second.id)])
        self.assertIsNotNone(self.fetch(FeeSchedule, int(first.id)).deactivated_at)

    def test_activate_validates_input(self):
        with self.assertRaises(ValidationError) as ctx:
            fee_calculator.activate_fee("listing_fee", 100, is_percentage=False)
        self.assertEqual(ctx.exception.code, "INVALID_FEE_TYPE")
        with self.assertRaises(ValidationError) as ctx:
            fee_calculator.activate_fee("buyer_fee", 10001, is_percentage=True)
        self.assertEqual(ctx.exception.code, "INVALID_FEE_VALUE")
        with self.assertRaises(ValidationError):
            fee_calculator.activate_fee("buyer_fee", 1.5, is_percentage=False)

    def test_paid_order_freezes_fee_split(self):
        fee_calculator.activate_fee("seller_commission", 1000, is_percentage=True)
        buyer_id = self.make_user("buyer")
        seller_id = self.make_seller()
        order_id = self.make_order(buyer_id, seller_id, amount_minor=10000)
        self.pay(order_id)

        # A later schedule change must not touch the paid order.
        fee_calculator.activate_fee("seller_commission", 2000, is_percentage=True)
        order = self.fetch(Order, order_id)
        self.assertEqual(order.seller_commission_minor, 1000)
        self.assertEqual(order.payout_amount_minor, 9000)
        snapshot = json.loads(order.fee_snapshot_json)
        self.assertEqual(snapshot["breakdown"]["net_payout_minor"], 9000)
        self.assertTrue(order.fee_schedule_version.startswith("bf:0/sc:"))


if __name__ == "__main__":
    unittest.main()
