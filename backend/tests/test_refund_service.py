from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from settlement.errors import AuthorizationError, PolicyViolationError, ValidationError
from settlement.extensions import db
from settlement.integrations.payouts.mock_provider import MockPayoutProcessor
from settlement.models import AuditLog, Listing, Order, Payout, PayoutClawback, Refund, SellerRiskProfile, User
from settlement.services import refund_service, settlement_service
from settlement.services.order_lifecycle import OrderStatus, PayoutStatus
from settlement.services.refund_service import ClawbackStatus, RefundStatus

from settlement_case import SettlementTestCase

REASON = "Item arrived damaged in transit"


class RefundRequestTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.buyer_id = self.make_user("buyer")
        self.seller_id = self.make_seller()
        self.order_id = self.make_order(self.buyer_id, self.seller_id, amount_minor=10000)
        self.pay(self.order_id)

    def test_request_creates_pending_refund(self):
        refund = refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON)
        self.assertEqual(refund.status, RefundStatus.PENDING)
        self.assertEqual(refund.amount_minor, 10000)
        self.assertTrue(refund.requires_admin_approval)
        self.assertEqual(self.fetch(Order, self.order_id).refund_status, "pending_approval")
        # Nothing moves until approval.
        self.assertEqual(self.fetch(Order, self.order_id).status, OrderStatus.PAID)

    def test_reason_must_be_long_enough(self):
        with self.assertRaises(ValidationError) as ctx:
            refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason="broken")
        self.assertEqual(ctx.exception.code, "REASON_TOO_SHORT")

    def test_only_buyer_may_request(self):
        with self.assertRaises(AuthorizationError):
            refund_service.request_refund(self.order_id, requester_id=self.seller_id, reason=REASON)

    def test_amount_bounds(self):
        for bad in (0, -5, 10001):
            with self.assertRaises(ValidationError):
                refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON, amount_minor=bad)

    def test_window_is_inclusive(self):
        created = self.fetch(Order, self.order_id).created_at
        refund = refund_service.request_refund(
            self.order_id, requester_id=self.buyer_id, reason=REASON, now=created + timedelta(days=14)
        )
        self.assertEqual(refund.status, RefundStatus.PENDING)

    def test_window_expired(self):
        created = self.fetch(Order, self.order_id).created_at
        with self.assertRaises(PolicyViolationError) as ctx:
            refund_service.request_refund(
                self.order_id, requester_id=self.buyer_id, reason=REASON, now=created + timedelta(days=14, seconds=1)
            )
        self.assertEqual(ctx.exception.code, "REFUND_WINDOW_EXPIRED")

    def test_one_open_refund_per_order(self):
        refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON)
        with self.assertRaises(PolicyViolationError) as ctx:
            refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON)
        self.assertEqual(ctx.exception.code, "REFUND_ALREADY_OPEN")

    def test_daily_request_limit(self):
        admin_id = self.make_user("admin")
        for _ in range(3):
            refund = refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON)
            refund_service.reject_refund(int(refund.id), admin_id=admin_id, note="not eligible")
        with self.assertRaises(PolicyViolationError) as ctx:
            refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON)
        self.assertEqual(ctx.exception.code, "REFUND_RATE_LIMITED")

    def test_reject_is_idempotent_and_leaves_order(self):
        admin_id = self.make_user("admin")
        refund = refund_service.request_refund(self.order_id, requester_id=self.buyer_id, reason=REASON)
        refund_service.reject_refund(int(refund.id), admin_id=admin_id, note="photos do not show damage")
        again = refund_service.reject_refund(int(refund.id), admin_id=admin_id)
        self.assertEqual(again.status, RefundStatus.REJECTED)
        order = self.fetch(Order, self.order_id)
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.refund_status, "rejected")
        with self.assertRaises(PolicyViolationError):
            refund_service.approve_refund(int(refund.id), admin_id=admin_id)


class RefundApprovalTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.admin_id = self.make_user("admin")
        self.processor = MockPayoutProcessor()

    def _request(self, order_id: int, **kw) -> int:
        buyer_id = int(db.session.get(Order, order_id).buyer_id)
        return int(refund_service.request_refund(order_id, requester_id=buyer_id, reason=REASON, **kw).id)

    def test_full_refund_of_paid_order(self):
        buyer_id = self.make_user("buyer")
        seller_id = self.make_seller()
        listing_id = self.make_listing(seller_id)
        order_id = self.make_order(buyer_id, seller_id, listing_id=listing_id)
        self.pay(order_id)
        refund = refund_service.approve_refund(self._request(order_id), admin_id=self.admin_id, note="ok")

        self.assertEqual(refund.status, RefundStatus.COMPLETED)
        self.assertTrue(refund.processor_refund_id.startswith("REF-"))
        order = self.fetch(Order, order_id)
        self.assertEqual(order.status, OrderStatus.REFUNDED)
        self.assertEqual(order.payout_status, PayoutStatus.CANCELLED)
        self.assertEqual(order.refund_amount_minor, 10000)
        listing = self.fetch(Listing, listing_id)
        self.assertTrue(listing.is_active)
        self.assertFalse(listing.is_sold)
        self.assertEqual(AuditLog.query.filter_by(action="refund_approved").count(), 1)

    def test_approve_twice_returns_same_refund(self):
        buyer_id = self.make_user("buyer")
        order_id = self.make_order(buyer_id, self.make_seller())
        self.pay(order_id)
        refund_id = self._request(order_id)
        refund_service.approve_refund(refund_id, admin_id=self.admin_id)
        again = refund_service.approve_refund(refund_id, admin_id=self.admin_id)
        self.assertEqual(again.status, RefundStatus.COMPLETED)

    def test_refund_cancels_pending_payout(self):
        order_id = self.delivered_order()
        settlement_service.enqueue_eligible_payouts()
        seller_id = int(db.session.get(Order, order_id).seller_id)
        refund_service.approve_refund(self._request(order_id), admin_id=self.admin_id)

        payout = Payout.query.filter_by(order_id=order_id).one()
        self.assertEqual(payout.status, PayoutStatus.CANCELLED)
        self.assertEqual(self.fetch(Order, order_id).payout_status, PayoutStatus.CANCELLED)
        profile = SellerRiskProfile.query.filter_by(user_id=seller_id).one()
        self.assertEqual(profile.pending_balance_minor, 0)
        # Cancelled payouts are never submitted.
        self.assertEqual(settlement_service.submit_pending(processor=self.processor)["scanned"], 0)

    def test_refund_blocked_while_payout_in_flight(self):
        order_id = self.delivered_order()
        settlement_service.enqueue_eligible_payouts()
        settlement_service.submit_pending(processor=self.processor)
        refund_id = self._request(order_id)
        with self.assertRaises(PolicyViolationError) as ctx:
            refund_service.approve_refund(refund_id, admin_id=self.admin_id)
        self.assertEqual(ctx.exception.code, "PAYOUT_IN_FLIGHT")
        self.assertEqual(self.fetch(Refund, refund_id).status, RefundStatus.PENDING)

    def test_refund_after_completed_payout_opens_clawback(self):
        order_id = self.delivered_order()
        settlement_service.run_settlement_cycle(processor=self.processor)
        self.assertEqual(self.fetch(Order, order_id).payout_status, PayoutStatus.COMPLETED)

        refund_service.approve_refund(self._request(order_id), admin_id=self.admin_id)
        order = self.fetch(Order, order_id)
        self.assertEqual(order.status, OrderStatus.REFUNDED)
        self.assertEqual(order.payout_status, PayoutStatus.COMPLETED)
        self.assertTrue(order.requires_manual_review)
        self.assertEqual(order.manual_review_reason, "refund_after_payout")
        clawback = PayoutClawback.query.filter_by(order_id=order_id).one()
        self.assertEqual(clawback.status, ClawbackStatus.OPEN)
        self.assertEqual(clawback.amount_minor, 10000)

        resolved = refund_service.resolve_clawback(int(clawback.id), admin_id=self.admin_id, status="recovered")
        self.assertEqual(resolved.status, ClawbackStatus.RECOVERED)
        with self.assertRaises(PolicyViolationError):
            refund_service.resolve_clawback(int(clawback.id), admin_id=self.admin_id, status="written_off")

    def test_partial_refund_flags_manual_settlement(self):
        order_id = self.delivered_order()
        settlement_service.enqueue_eligible_payouts()
        refund = refund_service.approve_refund(self._request(order_id, amount_minor=2500), admin_id=self.admin_id)
        self.assertEqual(refund.amount_minor, 2500)
        order = self.fetch(Order, order_id)
        self.assertEqual(order.status, OrderStatus.PARTIALLY_REFUNDED)
        self.assertEqual(order.payout_status, PayoutStatus.CANCELLED)
        self.assertEqual(order.manual_review_reason, "partial_refund_settlement")

    def test_admin_can_lower_amount_on_approval(self):
        buyer_id = self.make_user("buyer")
        order_id = self.make_order(buyer_id, self.make_seller())
        self.pay(order_id)
        refund = refund_service.approve_refund(self._request(order_id), admin_id=self.admin_id, amount_minor=4000)
        self.assertEqual(refund.amount_minor, 4000)
        self.assertEqual(self.fetch(Order, order_id).status, OrderStatus.PARTIALLY_REFUNDED)

    def test_admin_refund_skips_window(self):
        buyer_id = self.make_user("buyer")
        old = datetime.utcnow() - timedelta(days=40)
        order_id = self.make_order(buyer_id, self.make_seller(), created_at=old)
        self.pay(order_id)
        refund = refund_service.admin_refund_order(order_id, admin_id=self.admin_id, reason="chargeback settled manually")
        self.assertEqual(refund.status, RefundStatus.COMPLETED)
        self.assertFalse(refund.requires_admin_approval)
        with self.assertRaises(PolicyViolationError) as ctx:
            refund_service.admin_refund_order(order_id, admin_id=self.admin_id, reason="chargeback settled manually")
        self.assertEqual(ctx.exception.code, "ALREADY_REFUNDED")


class CancelUnpaidTestCase(SettlementTestCase):
    def test_buyer_cancels_pending_order(self):
        buyer_id = self.make_user("buyer")
        order_id = self.make_order(buyer_id, self.make_seller())
        order = refund_service.cancel_unpaid_order(order_id, actor_user=db.session.get(User, buyer_id), reason="duplicate")
        self.assertEqual(order.status, OrderStatus.CANCELLED)

    def test_cancelling_rejects_open_refund(self):
        buyer_id = self.make_user("buyer")
        order_id = self.make_order(buyer_id, self.make_seller())
        refund = refund_service.request_refund(order_id, requester_id=buyer_id, reason=REASON)
        self.assertEqual(self.fetch(Order, order_id).refund_status, "pending_approval")

        refund_service.cancel_unpaid_order(order_id, actor_user=db.session.get(User, buyer_id))
        order = self.fetch(Order, order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.refund_status, "rejected")
        refund = self.fetch(Refund, refund.id)
        self.assertEqual(refund.status, RefundStatus.REJECTED)
        self.assertEqual(refund.admin_note, "order_cancelled")

    def test_paid_orders_cannot_be_cancelled(self):
        buyer_id = self.make_user("buyer")
        order_id = self.make_order(buyer_id, self.make_seller())
        self.pay(order_id)
        with self.assertRaises(PolicyViolationError) as ctx:
            refund_service.cancel_unpaid_order(order_id, actor_user=db.session.get(User, buyer_id))
        self.assertEqual(ctx.exception.code, "ORDER_NOT_PENDING")

    def test_stranger_cannot_cancel(self):
        buyer_id = self.make_user("buyer")
        stranger_id = self.make_user("buyer")
        order_id = self.make_order(buyer_id, self.make_seller())
        with self.assertRaises(AuthorizationError):
            refund_service.cancel_unpaid_order(order_id, actor_user=db.session.get(User, stranger_id))


if __name__ == "__main__":
    unittest.main()
