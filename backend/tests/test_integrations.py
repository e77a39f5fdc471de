from __future__ import annotations

import os
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import requests

from settlement.errors import ExternalServiceError
from settlement.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from settlement.integrations.messaging.factory import build_messaging_provider, messaging_health
from settlement.integrations.messaging.termii_provider import TermiiMessagingProvider
from settlement.integrations.payouts.factory import build_payout_processor, payout_health
from settlement.integrations.payouts.mock_provider import MockPayoutProcessor
from settlement.integrations.payouts.paystack_provider import PaystackPayoutProcessor


def _response(status: int, body: dict) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.content = b"{}"
    r.json.return_value = body
    return r


class PayoutFactoryTestCase(unittest.TestCase):
    def test_disabled_kill_switch(self):
        with self.assertRaises(IntegrationDisabledError):
            build_payout_processor(SimpleNamespace(payouts_enabled=False, payouts_provider="mock"))

    def test_env_override_wins(self):
        settings = SimpleNamespace(payouts_enabled=True, payouts_provider="paystack")
        with patch.dict(os.environ, {"PAYOUTS_PROVIDER": "mock"}):
            self.assertIsInstance(build_payout_processor(settings), MockPayoutProcessor)

    def test_paystack_needs_secret(self):
        settings = SimpleNamespace(payouts_enabled=True, payouts_provider="paystack")
        with patch.dict(os.environ, {"PAYOUTS_PROVIDER": "", "PAYSTACK_SECRET_KEY": ""}):
            with self.assertRaises(IntegrationMisconfiguredError):
                build_payout_processor(settings)
            self.assertEqual(payout_health(settings)["missing"], ["PAYSTACK_SECRET_KEY"])
        with patch.dict(os.environ, {"PAYOUTS_PROVIDER": "", "PAYSTACK_SECRET_KEY": "sk_test"}):
            self.assertIsInstance(build_payout_processor(settings), PaystackPayoutProcessor)

    def test_unknown_provider(self):
        settings = SimpleNamespace(payouts_enabled=True, payouts_provider="carrier-pigeon")
        with patch.dict(os.environ, {"PAYOUTS_PROVIDER": ""}):
            with self.assertRaises(IntegrationMisconfiguredError):
                build_payout_processor(settings)
            self.assertEqual(payout_health(settings)["status"], "misconfigured")


class PaystackProcessorTestCase(unittest.TestCase):
    def setUp(self):
        self.processor = PaystackPayoutProcessor(secret_key="sk_test", timeout=3)

    @patch("settlement.integrations.payouts.paystack_provider.requests.request")
    def test_submit_uses_key_as_reference(self, request):
        request.return_value = _response(200, {"status": True, "data": {"transfer_code": "TRF_1"}})
        result = self.processor.submit(idempotency_key="payout-7-0", recipient="RCP_1", amount_minor=9000, currency="ngn")
        self.assertEqual(result.batch_id, "TRF_1")
        sent = request.call_args.kwargs["json"]
        self.assertEqual(sent["reference"], "payout-7-0")
        self.assertEqual(sent["amount"], 9000)
        self.assertEqual(sent["currency"], "NGN")

    @patch("settlement.integrations.payouts.paystack_provider.requests.request")
    def test_duplicate_reference_looks_up_existing_transfer(self, request):
        request.side_effect = [
            _response(400, {"status": False, "message": "Duplicate Transfer Reference"}),
            _response(200, {"status": True, "data": {"transfer_code": "TRF_OLD"}}),
        ]
        result = self.processor.submit(idempotency_key="payout-7-0", recipient="RCP_1", amount_minor=9000, currency="NGN")
        self.assertEqual(result.batch_id, "TRF_OLD")
        self.assertTrue(request.call_args.args[1].endswith("/transfer/verify/payout-7-0"))

    @patch("settlement.integrations.payouts.paystack_provider.requests.request")
    def test_transport_error_is_external_failure(self, request):
        request.side_effect = requests.ConnectionError("boom")
        with self.assertRaises(ExternalServiceError) as ctx:
            self.processor.submit(idempotency_key="k", recipient="RCP_1", amount_minor=1, currency="NGN")
        self.assertEqual(ctx.exception.code, "PAYOUT_PROVIDER_DOWN")

    @patch("settlement.integrations.payouts.paystack_provider.requests.request")
    def test_status_mapping(self, request):
        for raw, expected in (("success", "success"), ("reversed", "failed"), ("otp", "pending")):
            request.return_value = _response(200, {"status": True, "data": {"status": raw}})
            self.assertEqual(self.processor.status("TRF_1"), expected)
        request.return_value = _response(404, {"status": False, "message": "Transfer not found"})
        with self.assertRaises(ExternalServiceError):
            self.processor.status("TRF_1")


class MessagingFactoryTestCase(unittest.TestCase):
    def test_disabled_by_default(self):
        with patch.dict(os.environ, {"MESSAGING_PROVIDER": ""}):
            with self.assertRaises(IntegrationDisabledError):
                build_messaging_provider(SimpleNamespace())
            self.assertEqual(messaging_health(SimpleNamespace())["status"], "disabled")

    def test_termii_requires_credentials(self):
        settings = SimpleNamespace(messaging_provider="termii")
        with patch.dict(os.environ, {"MESSAGING_PROVIDER": "", "TERMII_API_KEY": "", "TERMII_SENDER_ID": ""}):
            with self.assertRaises(IntegrationMisconfiguredError):
                build_messaging_provider(settings)
        with patch.dict(os.environ, {"MESSAGING_PROVIDER": "", "TERMII_API_KEY": "key", "TERMII_SENDER_ID": "Market"}):
            self.assertIsInstance(build_messaging_provider(settings), TermiiMessagingProvider)


class TermiiProviderTestCase(unittest.TestCase):
    @patch("settlement.integrations.messaging.termii_provider.requests.post")
    def test_error_codes(self, post):
        provider = TermiiMessagingProvider(api_key="key", sender_id="Market")
        post.return_value = _response(200, {"message_id": "1"})
        self.assertTrue(provider.send_sms(to="+2348000000000", message="hi").ok)
        post.return_value = _response(401, {"message": "bad key"})
        self.assertEqual(provider.send_sms(to="+2348000000000", message="hi").code, "TERMII_AUTH_FAILED")
        post.side_effect = requests.Timeout()
        self.assertEqual(provider.send_sms(to="+2348000000000", message="hi").code, "TERMII_PROVIDER_DOWN")


if __name__ == "__main__":
    unittest.main()
