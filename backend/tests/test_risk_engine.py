from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from settlement.errors import PolicyViolationError, ValidationError
from settlement.extensions import db
from settlement.models import (
    Bid,
    FraudAlert,
    Listing,
    ListingModeration,
    Payout,
    PriceHistory,
    ProhibitedKeyword,
    SellerRiskProfile,
)
from settlement.services import listing_catalog, risk_admin, risk_engine
from settlement.services.risk_engine import AlertSeverity, AlertType, AutoAction
from settlement.jobs import risk_runner

from settlement_case import SettlementTestCase


class RiskEngineTestCase(SettlementTestCase):
    def _profile(self, user_id: int) -> SellerRiskProfile:
        db.session.expire_all()
        return SellerRiskProfile.query.filter_by(user_id=user_id).one()

    def test_record_access_stores_hashed_origin(self):
        user_id = self.make_user("buyer")
        row = risk_engine.record_access(user_id, "203.0.113.9", action="login")
        self.assertNotEqual(row.ip_address, "203.0.113.9")
        self.assertEqual(row.ip_address, risk_engine.origin_hash("203.0.113.9"))
        self.assertIsNone(risk_engine.record_access(user_id, "  "))

    def test_shared_origin_needs_three_accounts(self):
        a = self.make_user("buyer")
        b = self.make_user("buyer")
        c = self.make_user("buyer")
        risk_engine.record_access(a, "198.51.100.7")
        self.assertEqual(risk_engine.check_user(b, ip_address="198.51.100.7"), [])

        risk_engine.record_access(b, "198.51.100.7")
        alerts = risk_engine.check_user(c, ip_address="198.51.100.7")
        self.assertEqual([x.alert_type for x in alerts], [AlertType.MULTIPLE_ACCOUNTS])
        self.assertEqual(alerts[0].severity, AlertSeverity.CRITICAL)
        self.assertEqual(sorted(alerts[0].related_user_ids()), sorted([a, b]))
        self.assertEqual(self._profile(c).fraud_score, 25)

    def test_alerts_are_deduplicated(self):
        ids = [self.make_user("buyer") for _ in range(3)]
        for uid in ids:
            risk_engine.record_access(uid, "192.0.2.44")
        self.assertEqual(len(risk_engine.check_user(ids[0])), 1)
        self.assertEqual(risk_engine.check_user(ids[0]), [])
        self.assertEqual(FraudAlert.query.filter_by(user_id=ids[0]).count(), 1)
        self.assertEqual(self._profile(ids[0]).fraud_score, 25)

    def test_burst_listings(self):
        seller_id = self.make_seller()
        for i in range(11):
            self.make_listing(seller_id, title=f"Item {i}")
        alerts = risk_engine.check_user(seller_id)
        self.assertEqual([a.alert_type for a in alerts], [AlertType.SPAM_LISTINGS])
        self.assertEqual(self._profile(seller_id).fraud_score, 10)

    def test_shill_bidding_requests_deactivation(self):
        seller_id = self.make_seller()
        listing_id = self.make_listing(seller_id)
        db.session.add(Bid(listing_id=listing_id, bidder_id=seller_id, amount_minor=12000))
        db.session.commit()
        alerts = risk_engine.check_listing(listing_id)
        self.assertEqual(alerts[0].alert_type, AlertType.SHILL_BIDDING)
        self.assertEqual(alerts[0].auto_action_taken, AutoAction.LISTING_DEACTIVATED)
        # The engine only requests moderation; the catalog applies it.
        self.assertTrue(self.fetch(Listing, listing_id).is_active)
        result = listing_catalog.apply_moderation_requests()
        self.assertEqual(result["applied"], 1)
        self.assertFalse(self.fetch(Listing, listing_id).is_active)
        self.assertEqual(listing_catalog.apply_moderation_requests()["applied"], 0)

    def test_prohibited_keyword_is_case_insensitive(self):
        db.session.add(ProhibitedKeyword(keyword="ivory", severity="critical"))
        db.session.commit()
        seller_id = self.make_seller()
        clean = self.make_listing(seller_id, title="Oak piano stool")
        dirty = self.make_listing(seller_id, title="Carved IVORY figure")
        self.assertEqual(risk_engine.check_listing(clean), [])
        alerts = risk_engine.check_listing(dirty)
        self.assertEqual(alerts[0].alert_type, AlertType.PROHIBITED_ITEM)
        self.assertEqual(alerts[0].severity, AlertSeverity.CRITICAL)
        self.assertEqual(alerts[0].auto_action_taken, AutoAction.LISTING_DEACTIVATED)

    def test_price_swing(self):
        seller_id = self.make_seller()
        listing_id = self.make_listing(seller_id)
        now = datetime.utcnow()
        db.session.add(PriceHistory(listing_id=listing_id, price_minor=10000, recorded_at=now - timedelta(hours=2)))
        db.session.add(PriceHistory(listing_id=listing_id, price_minor=15000, recorded_at=now - timedelta(hours=1)))
        db.session.commit()
        self.assertEqual(risk_engine.check_listing(listing_id), [])

        db.session.add(PriceHistory(listing_id=listing_id, price_minor=30000, recorded_at=now))
        db.session.commit()
        alerts = risk_engine.check_listing(listing_id)
        self.assertEqual([a.alert_type for a in alerts], [AlertType.PRICE_MANIPULATION])

    def test_withdrawal_velocity_blocks_payouts(self):
        seller_id = self.make_seller()
        buyer_id = self.make_user("buyer")
        for _ in range(6):
            order_id = self.make_order(buyer_id, seller_id)
            db.session.add(Payout(order_id=order_id, seller_id=seller_id, net_amount_minor=1000, status="pending"))
        db.session.commit()
        alerts = risk_engine.check_withdrawal(seller_id)
        self.assertEqual([a.alert_type for a in alerts], [AlertType.SUSPICIOUS_WITHDRAWAL])
        profile = self._profile(seller_id)
        self.assertTrue(profile.withdrawal_blocked)
        self.assertIn("suspicious_withdrawal", profile.withdrawal_blocked_reason)
        # Already held: no second alert.
        self.assertEqual(risk_engine.check_withdrawal(seller_id), [])

    def test_new_account_with_high_balance(self):
        seller_id = self.make_seller()
        profile = SellerRiskProfile.query.filter_by(user_id=seller_id).one()
        profile.pending_balance_minor = 60000
        db.session.commit()
        alerts = risk_engine.check_withdrawal(seller_id)
        self.assertEqual([a.alert_type for a in alerts], [AlertType.NEW_ACCOUNT_HIGH_BALANCE])

        older = self.make_seller(created_at=datetime.utcnow() - timedelta(days=30))
        profile = SellerRiskProfile.query.filter_by(user_id=older).one()
        profile.pending_balance_minor = 60000
        db.session.commit()
        self.assertEqual(risk_engine.check_withdrawal(older), [])

    def test_scan_flags_stuck_orders(self):
        buyer_id = self.make_user("buyer")
        seller_id = self.make_seller()
        order_id = self.make_order(buyer_id, seller_id, created_at=datetime.utcnow() - timedelta(days=8))
        self.make_order(buyer_id, seller_id)
        summary = risk_engine.scan_platform()
        self.assertEqual(summary["stuck_orders"], 1)
        self.assertEqual(summary["by_type"], {AlertType.STUCK_ORDER: 1})
        alert = FraudAlert.query.filter_by(alert_type=AlertType.STUCK_ORDER).one()
        self.assertEqual(alert.user_id, seller_id)
        self.assertEqual(alert.evidence()["order_id"], order_id)
        self.assertEqual(risk_engine.scan_platform()["alerts"], 0)

    def test_scan_continues_past_a_failing_stuck_order(self):
        buyer_id = self.make_user("buyer")
        seller_id = self.make_seller()
        old = datetime.utcnow() - timedelta(days=8)
        broken_id = self.make_order(buyer_id, seller_id, created_at=old)
        order_id = self.make_order(buyer_id, seller_id, created_at=old)
        real_rule = risk_engine._rule_stuck_order

        def rule(order):
            if int(order.id) == broken_id:
                raise RuntimeError("bad row")
            return real_rule(order)

        with patch.object(risk_engine, "_rule_stuck_order", side_effect=rule):
            summary = risk_engine.scan_platform()
        self.assertEqual(summary["stuck_orders"], 2)
        self.assertEqual(summary["errors"], 1)
        self.assertEqual(summary["by_type"], {AlertType.STUCK_ORDER: 1})
        alert = FraudAlert.query.filter_by(alert_type=AlertType.STUCK_ORDER).one()
        self.assertEqual(alert.evidence()["order_id"], order_id)

    def test_risk_sweep_job(self):
        result = risk_runner.run_risk_sweep()
        self.assertTrue(result["ok"])
        self.assertEqual(result["alerts"], 0)


class RiskAdminTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.admin_id = self.make_user("admin")
        self.seller_id = self.make_seller()
        for i in range(11):
            self.make_listing(self.seller_id, title=f"Item {i}")
        self.alert_id = int(risk_engine.check_user(self.seller_id)[0].id)

    def _score(self) -> int:
        db.session.expire_all()
        return int(SellerRiskProfile.query.filter_by(user_id=self.seller_id).one().fraud_score)

    def test_dismissal_returns_weight(self):
        self.assertEqual(self._score(), 10)
        alert = risk_admin.review_alert(self.alert_id, admin_id=self.admin_id, outcome="dismissed", note="bulk import")
        self.assertEqual(alert.status, "dismissed")
        self.assertEqual(self._score(), 0)
        with self.assertRaises(PolicyViolationError):
            risk_admin.review_alert(self.alert_id, admin_id=self.admin_id, outcome="reviewed")

    def test_score_never_goes_negative(self):
        profile = SellerRiskProfile.query.filter_by(user_id=self.seller_id).one()
        profile.fraud_score = 3
        db.session.commit()
        risk_admin.review_alert(self.alert_id, admin_id=self.admin_id, outcome="dismissed")
        self.assertEqual(self._score(), 0)

    def test_reviewed_keeps_score(self):
        risk_admin.review_alert(self.alert_id, admin_id=self.admin_id, outcome="reviewed")
        self.assertEqual(self._score(), 10)

    def test_invalid_outcome(self):
        with self.assertRaises(ValidationError):
            risk_admin.review_alert(self.alert_id, admin_id=self.admin_id, outcome="ignored")

    def test_lift_hold(self):
        with self.assertRaises(PolicyViolationError) as ctx:
            risk_admin.lift_withdrawal_hold(self.seller_id, admin_id=self.admin_id)
        self.assertEqual(ctx.exception.code, "NO_HOLD")
        profile = SellerRiskProfile.query.filter_by(user_id=self.seller_id).one()
        profile.withdrawal_blocked = True
        profile.withdrawal_blocked_reason = "suspicious_withdrawal: pending review"
        db.session.commit()
        lifted = risk_admin.lift_withdrawal_hold(self.seller_id, admin_id=self.admin_id, note="verified by phone")
        self.assertFalse(lifted.withdrawal_blocked)
        self.assertIsNone(lifted.withdrawal_blocked_reason)

    def test_kyc_status(self):
        profile = risk_admin.set_kyc_status(self.seller_id, "rejected", admin_id=self.admin_id)
        self.assertEqual(profile.kyc_status, "rejected")
        with self.assertRaises(ValidationError):
            risk_admin.set_kyc_status(self.seller_id, "maybe", admin_id=self.admin_id)

    def test_dismissed_alert_does_not_block_relisting(self):
        listing_id = self.make_listing(self.seller_id)
        db.session.add(Bid(listing_id=listing_id, bidder_id=self.seller_id, amount_minor=100))
        db.session.commit()
        shill = [a for a in risk_engine.check_listing(listing_id) if a.alert_type == AlertType.SHILL_BIDDING][0]
        listing_catalog.apply_moderation_requests()
        self.assertTrue(listing_catalog.is_under_moderation(listing_id))
        risk_admin.review_alert(int(shill.id), admin_id=self.admin_id, outcome="dismissed")
        self.assertFalse(listing_catalog.is_under_moderation(listing_id))
        self.assertEqual(ListingModeration.query.filter_by(listing_id=listing_id).count(), 1)


if __name__ == "__main__":
    unittest.main()
