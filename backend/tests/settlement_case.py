from __future__ import annotations

import unittest
from datetime import datetime
from unittest.mock import patch

from settlement import create_app
from settlement.extensions import db
from settlement.integrations.messaging.mock_provider import MockMessagingProvider
from settlement.integrations.payouts.mock_provider import MockPayoutProcessor
from settlement.models import Listing, Order, SellerRiskProfile, User
from settlement.services import order_lifecycle
from settlement.services.payment_events import PaymentConfirmed
from settlement.utils.jwt_utils import create_access_token
from settlement.utils.rate_limit import reset_memory_windows


TEST_ENV = {
    "SETTLEMENT_ENV": "test",
    "SECRET_KEY": "test-secret-key-with-enough-length-0001",
    "PAYOUTS_PROVIDER": "mock",
    "MESSAGING_PROVIDER": "mock",
    "MOCK_PAYOUT_DEFAULT_STATUS": "success",
    "PAYMENT_WEBHOOK_SECRET": "",
    "RISK_SERVICE_TOKEN": "",
    "RATE_LIMIT_ENABLED": "1",
    "RATE_LIMIT_REDIS_URL": "",
    "REDIS_URL": "",
    "SENTRY_DSN": "",
}


class SettlementTestCase(unittest.TestCase):
    """Fresh in-memory database and app context per test."""

    env_overrides: dict = {}

    def setUp(self):
        self._env = patch.dict("os.environ", {**TEST_ENV, **self.env_overrides})
        self._env.start()
        self.app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = self.app.test_client()
        MockPayoutProcessor.reset()
        MockMessagingProvider.sent.clear()
        reset_memory_windows()
        self._seq = 0

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()
        self._env.stop()

    # Seeding

    def make_user(self, role: str = "buyer", *, created_at: datetime | None = None, recipient: str | None = None) -> int:
        self._seq += 1
        user = User(
            name=f"{role}{self._seq}",
            email=f"{role}{self._seq}@example.test",
            phone=f"+4470000{self._seq:05d}",
            role=role,
            payout_recipient_code=recipient,
        )
        if created_at is not None:
            user.created_at = created_at
        db.session.add(user)
        db.session.commit()
        return int(user.id)

    def make_seller(self, *, kyc: str = "approved", recipient: str | None = "RCP_test", created_at: datetime | None = None) -> int:
        seller_id = self.make_user("seller", created_at=created_at, recipient=recipient)
        db.session.add(SellerRiskProfile(user_id=seller_id, kyc_status=kyc))
        db.session.commit()
        return seller_id

    def make_listing(self, seller_id: int, *, title: str = "Vintage lamp", description: str = "", price_minor: int = 10000) -> int:
        listing = Listing(seller_id=seller_id, title=title, description=description, price_minor=price_minor, is_sold=True)
        db.session.add(listing)
        db.session.commit()
        return int(listing.id)

    def make_order(
        self,
        buyer_id: int,
        seller_id: int,
        *,
        amount_minor: int = 10000,
        listing_id: int | None = None,
        created_at: datetime | None = None,
    ) -> int:
        order = Order(buyer_id=buyer_id, seller_id=seller_id, listing_id=listing_id, amount_minor=amount_minor, currency="GBP")
        if created_at is not None:
            order.created_at = created_at
        db.session.add(order)
        db.session.commit()
        return int(order.id)

    def pay(self, order_id: int, reference: str = "PAY-1") -> dict:
        return order_lifecycle.apply_payment_confirmed(PaymentConfirmed(order_id=order_id, reference=reference))

    def deliver(self, order_id: int) -> None:
        order = db.session.get(Order, order_id)
        buyer_id, seller_id = int(order.buyer_id), int(order.seller_id)
        self.pay(order_id, reference=f"PAY-{order_id}")
        order_lifecycle.mark_shipped(order_id, seller_id=seller_id, tracking_number=f"TRK{order_id}", carrier="royal_mail")
        order_lifecycle.confirm_delivery(order_id, buyer_id=buyer_id)

    def delivered_order(self, *, amount_minor: int = 10000, seller_id: int | None = None) -> int:
        buyer_id = self.make_user("buyer")
        seller_id = seller_id or self.make_seller()
        listing_id = self.make_listing(seller_id)
        order_id = self.make_order(buyer_id, seller_id, amount_minor=amount_minor, listing_id=listing_id)
        self.deliver(order_id)
        return order_id

    def fetch(self, model, row_id: int):
        db.session.expire_all()
        return db.session.get(model, int(row_id))

    def auth(self, user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
