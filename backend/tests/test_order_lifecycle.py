from __future__ import annotations

import unittest

from settlement.errors import AuthorizationError, PolicyViolationError, StaleStateError, ValidationError
from settlement.extensions import db
from settlement.integrations.messaging.mock_provider import MockMessagingProvider
from settlement.models import Notification, Order, OrderTransition, Payout, PlatformEvent, User
from settlement.services import fee_calculator, order_lifecycle, refund_service, settlement_service
from settlement.services.order_lifecycle import OrderStatus, PayoutStatus
from settlement.services.payment_events import PaymentConfirmed, PaymentFailed

from settlement_case import SettlementTestCase


class OrderLifecycleTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.buyer_id = self.make_user("buyer")
        self.seller_id = self.make_seller()
        self.order_id = self.make_order(self.buyer_id, self.seller_id, amount_minor=10000)

    def _transitions(self, axis: str = "status") -> list[tuple[str, str]]:
        rows = OrderTransition.query.filter_by(order_id=self.order_id, axis=axis).order_by(OrderTransition.id.asc()).all()
        return [(r.from_status, r.to_status) for r in rows]

    def test_happy_path_records_every_transition(self):
        self.pay(self.order_id)
        order_lifecycle.mark_shipped(self.order_id, seller_id=self.seller_id, tracking_number="TRK1", carrier="dpd")
        order_lifecycle.confirm_delivery(self.order_id, buyer_id=self.buyer_id)

        order = self.fetch(Order, self.order_id)
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertEqual(order.payout_status, PayoutStatus.NONE)
        self.assertEqual(order.tracking_number, "TRK1")
        self.assertIsNotNone(order.paid_at)
        self.assertIsNotNone(order.delivered_at)
        self.assertEqual(
            self._transitions(),
            [("pending", "paid"), ("paid", "shipped"), ("shipped", "delivered")],
        )

    def test_duplicate_payment_is_a_no_op(self):
        first = self.pay(self.order_id)
        second = self.pay(self.order_id)
        self.assertEqual(first["status"], OrderStatus.PAID)
        self.assertTrue(second["duplicate"])
        self.assertEqual(len(self._transitions()), 1)
        self.assertEqual(PlatformEvent.query.filter_by(event_type="order_paid").count(), 1)

    def test_payment_after_cancel_is_ignored(self):
        buyer = db.session.get(User, self.buyer_id)
        refund_service.cancel_unpaid_order(self.order_id, actor_user=buyer, reason="changed mind")
        result = self.pay(self.order_id)
        self.assertTrue(result["ignored"])
        order = self.fetch(Order, self.order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.payout_status, PayoutStatus.CANCELLED)
        self.assertEqual(PlatformEvent.query.filter_by(event_type="payment_after_close").count(), 1)

    def test_underpayment_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            order_lifecycle.apply_payment_confirmed(PaymentConfirmed(order_id=self.order_id, reference="X", amount_minor=9999))
        self.assertEqual(ctx.exception.code, "AMOUNT_MISMATCH")
        self.assertEqual(self.fetch(Order, self.order_id).status, OrderStatus.PENDING)

    def test_currency_mismatch_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            order_lifecycle.apply_payment_confirmed(PaymentConfirmed(order_id=self.order_id, currency="USD"))
        self.assertEqual(ctx.exception.code, "CURRENCY_MISMATCH")

    def test_payment_failed_keeps_order_pending_and_tells_buyer(self):
        result = order_lifecycle.apply_payment_failed(PaymentFailed(order_id=self.order_id, reason="card_declined"))
        self.assertEqual(result["status"], OrderStatus.PENDING)
        titles = [n.title for n in Notification.query.filter_by(user_id=self.buyer_id).all()]
        self.assertIn("Payment failed", titles)

    def test_ship_requires_tracking_and_seller(self):
        self.pay(self.order_id)
        with self.assertRaises(ValidationError):
            order_lifecycle.mark_shipped(self.order_id, seller_id=self.seller_id, tracking_number="  ")
        with self.assertRaises(AuthorizationError):
            order_lifecycle.mark_shipped(self.order_id, seller_id=self.buyer_id, tracking_number="TRK")

    def test_cannot_ship_unpaid_or_deliver_unshipped(self):
        with self.assertRaises(PolicyViolationError) as ctx:
            order_lifecycle.mark_shipped(self.order_id, seller_id=self.seller_id, tracking_number="TRK")
        self.assertEqual(ctx.exception.code, "ORDER_NOT_PAID")
        self.pay(self.order_id)
        with self.assertRaises(PolicyViolationError) as ctx:
            order_lifecycle.confirm_delivery(self.order_id, buyer_id=self.buyer_id)
        self.assertEqual(ctx.exception.code, "ORDER_NOT_SHIPPED")

    def test_only_buyer_confirms_delivery(self):
        self.pay(self.order_id)
        order_lifecycle.mark_shipped(self.order_id, seller_id=self.seller_id, tracking_number="TRK")
        with self.assertRaises(AuthorizationError):
            order_lifecycle.confirm_delivery(self.order_id, buyer_id=self.seller_id)
        order = order_lifecycle.confirm_delivery(self.order_id, actor={"type": "system"})
        self.assertEqual(order.status, OrderStatus.DELIVERED)

    def test_conditional_update_detects_stale_state(self):
        self.pay(self.order_id)
        with self.assertRaises(StaleStateError) as ctx:
            order_lifecycle.advance_status(self.order_id, expected=OrderStatus.PENDING, target=OrderStatus.PAID)
        self.assertEqual(ctx.exception.http_status, 409)
        db.session.rollback()

    def test_transition_table_rejects_skips(self):
        with self.assertRaises(ValidationError) as ctx:
            order_lifecycle.advance_status(self.order_id, expected=OrderStatus.PENDING, target=OrderStatus.DELIVERED)
        self.assertEqual(ctx.exception.code, "INVALID_TRANSITION")
        with self.assertRaises(ValidationError):
            order_lifecycle.advance_payout_status(self.order_id, expected=PayoutStatus.NONE, target=PayoutStatus.COMPLETED)

    def test_seller_is_notified_by_sms_when_paid(self):
        self.pay(self.order_id)
        seller = db.session.get(User, self.seller_id)
        self.assertTrue(any(m["to"] == seller.phone for m in MockMessagingProvider.sent))

    def test_force_status_is_audited(self):
        admin = db.session.get(User, self.make_user("admin"))
        self.pay(self.order_id)
        order_lifecycle.force_order_status(self.order_id, "delivered", admin=admin, reason="carrier confirmed by phone")
        order = self.fetch(Order, self.order_id)
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertEqual(self._transitions()[-1], ("paid", "delivered"))

    def test_force_close_refuses_open_payout(self):
        admin = db.session.get(User, self.make_user("admin"))
        order = db.session.get(Order, self.order_id)
        order.status = OrderStatus.DELIVERED
        order.payout_status = PayoutStatus.PENDING
        db.session.commit()
        with self.assertRaises(PolicyViolationError) as ctx:
            order_lifecycle.force_order_status(self.order_id, "cancelled", admin=admin, reason="fraudulent order")
        self.assertEqual(ctx.exception.code, "PAYOUT_OPEN")

    def test_force_status_requires_reason(self):
        admin = db.session.get(User, self.make_user("admin"))
        with self.assertRaises(ValidationError) as ctx:
            order_lifecycle.force_order_status(self.order_id, "paid", admin=admin, reason="")
        self.assertEqual(ctx.exception.code, "REASON_REQUIRED")

    def test_forcing_past_pending_freezes_fees(self):
        fee_calculator.activate_fee("seller_commission", 1000, is_percentage=True)
        admin = db.session.get(User, self.make_user("admin"))
        order_lifecycle.force_order_status(self.order_id, "delivered", admin=admin, reason="paid offline by bank transfer")
        order = self.fetch(Order, self.order_id)
        self.assertEqual(order.payout_amount_minor, 9000)
        self.assertEqual(order.seller_commission_minor, 1000)
        self.assertIsNotNone(order.fee_schedule_version)

        self.assertEqual(settlement_service.enqueue_eligible_payouts()["created"], 1)
        self.assertEqual(Payout.query.filter_by(order_id=self.order_id).one().net_amount_minor, 9000)

    def test_forcing_keeps_fees_frozen_at_payment(self):
        self.pay(self.order_id)
        fee_calculator.activate_fee("seller_commission", 2500, is_percentage=True)
        admin = db.session.get(User, self.make_user("admin"))
        order_lifecycle.force_order_status(self.order_id, "delivered", admin=admin, reason="carrier confirmed by phone")
        self.assertEqual(self.fetch(Order, self.order_id).payout_amount_minor, 10000)

    def test_force_back_before_delivery_refuses_live_payout(self):
        admin = db.session.get(User, self.make_user("admin"))
        self.deliver(self.order_id)
        settlement_service.enqueue_eligible_payouts()
        with self.assertRaises(PolicyViolationError) as ctx:
            order_lifecycle.force_order_status(self.order_id, "shipped", admin=admin, reason="delivery scan was wrong")
        self.assertEqual(ctx.exception.code, "PAYOUT_OPEN")


class OrderStatusTableTestCase(unittest.TestCase):
    def test_reversals_cover_every_refundable_status(self):
        self.assertEqual(set(OrderStatus.REVERSAL), OrderStatus.REFUNDABLE)
        for targets in OrderStatus.REVERSAL.values():
            self.assertEqual(targets, {OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED})

    def test_terminal_states_have_no_forward_moves(self):
        for status in OrderStatus.TERMINAL:
            self.assertNotIn(status, OrderStatus.FORWARD)
            self.assertNotIn(status, OrderStatus.REVERSAL)


if __name__ == "__main__":
    unittest.main()
