from __future__ import annotations

import unittest

from settlement.extensions import db
from settlement.integrations.payouts.mock_provider import MockPayoutProcessor
from settlement.models import Order, Payout, ReconciliationReport, SellerRiskProfile
from settlement.services import fee_calculator, settlement_service
from settlement.services.reconciliation_service import persist_report, recompute_settlement_drift

from settlement_case import SettlementTestCase


class SettlementDriftTestCase(SettlementTestCase):
    def test_settled_orders_show_no_drift(self):
        self.delivered_order()
        settlement_service.run_settlement_cycle(processor=MockPayoutProcessor())
        summary = recompute_settlement_drift()
        self.assertTrue(summary["ok"])
        self.assertEqual(summary["scope"], "settlement")
        self.assertEqual(summary["order_count"], 1)
        self.assertEqual(summary["drift_count"], 0)
        self.assertEqual(summary["drift_items"], [])

    def test_pending_balance_drift(self):
        fee_calculator.activate_fee("seller_commission", 1000, is_percentage=True)
        order_id = self.delivered_order(amount_minor=10000)
        settlement_service.enqueue_eligible_payouts()
        seller_id = int(db.session.get(Order, order_id).seller_id)
        profile = SellerRiskProfile.query.filter_by(user_id=seller_id).one()
        profile.pending_balance_minor = 1
        db.session.commit()

        summary = recompute_settlement_drift()
        self.assertEqual(summary["by_check"], {"pending_balance_drift": 1})
        item = summary["drift_items"][0]
        self.assertEqual(item["user_id"], seller_id)
        self.assertEqual(item["stored_minor"], 1)
        self.assertEqual(item["computed_minor"], 9000)

    def test_status_mirror_and_amount_drift(self):
        order_id = self.delivered_order()
        settlement_service.enqueue_eligible_payouts()
        payout = Payout.query.filter_by(order_id=order_id).one()
        payout.status = "completed"
        payout.net_amount_minor = 8000
        db.session.commit()

        by_check = recompute_settlement_drift()["by_check"]
        self.assertEqual(by_check["status_mirror"], 1)
        self.assertEqual(by_check["amount_drift"], 1)

    def test_recompute_does_not_write(self):
        order_id = self.delivered_order()
        settlement_service.enqueue_eligible_payouts()
        payout = Payout.query.filter_by(order_id=order_id).one()
        payout.status = "completed"
        db.session.commit()
        recompute_settlement_drift()
        self.assertEqual(self.fetch(Order, order_id).payout_status, "pending")
        self.assertEqual(ReconciliationReport.query.count(), 0)

    def test_persist_report(self):
        summary = recompute_settlement_drift()
        report = persist_report(summary, created_by=None)
        self.assertEqual(report.drift_count, 0)
        self.assertEqual(report.summary()["scope"], "settlement")


class ReconciliationApiTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.h = self.auth(self.make_user("admin"))

    def test_latest_is_empty_before_first_run(self):
        res = self.client.get("/api/admin/reconcile/latest", headers=self.h)
        self.assertEqual(res.status_code, 200)
        self.assertIsNone(res.get_json()["report"])

    def test_run_then_latest(self):
        self.delivered_order()
        res = self.client.post("/api/admin/reconcile", json={"limit": 100}, headers=self.h)
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["summary"]["order_count"], 1)

        latest = self.client.get("/api/admin/reconcile/latest", headers=self.h).get_json()
        self.assertEqual(latest["report"]["id"], body["report_id"])
        self.assertEqual(latest["summary"]["drift_count"], body["summary"]["drift_count"])

    def test_requires_admin(self):
        buyer = self.make_user("buyer")
        res = self.client.post("/api/admin/reconcile", json={}, headers=self.auth(buyer))
        self.assertEqual(res.status_code, 403)


if __name__ == "__main__":
    unittest.main()
