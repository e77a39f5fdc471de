from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("settlement")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_main_app(self):
        module = importlib.import_module("main")
        app = getattr(module, "app", None)
        self.assertIsNotNone(app)

    def test_import_segments(self):
        for name in (
            "settlement.segments.segment_orders_api",
            "settlement.segments.segment_payment_webhooks",
            "settlement.segments.segment_admin_ops",
            "settlement.segments.segment_risk_admin",
            "settlement.segments.segment_reconciliation_admin",
        ):
            self.assertIsNotNone(importlib.import_module(name))

    def test_import_celery_worker(self):
        module = importlib.import_module("celery_app")
        self.assertIsNotNone(getattr(module, "celery", None))
        self.assertIsNotNone(getattr(module, "flask_app", None))


if __name__ == "__main__":
    unittest.main()
