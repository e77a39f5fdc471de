from datetime import datetime

from settlement.extensions import db


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False, default="")
    description = db.Column(db.Text, nullable=True)
    price_minor = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    is_sold = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "title": self.title or "",
            "description": self.description or "",
            "price_minor": int(self.price_minor or 0),
            "is_active": bool(self.is_active),
            "is_sold": bool(self.is_sold),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Bid(db.Model):
    __tablename__ = "bids"

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    bidder_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)


class PriceHistory(db.Model):
    __tablename__ = "price_history"

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    price_minor = db.Column(db.Integer, nullable=False)
    recorded_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)


class ListingModeration(db.Model):
    """Deactivation applied by the listing catalog on behalf of a fraud alert."""

    __tablename__ = "listing_moderations"
    __table_args__ = (
        db.UniqueConstraint("fraud_alert_id", "listing_id", name="uq_listing_moderation_alert_listing"),
    )

    id = db.Column(db.Integer, primary_key=True)
    fraud_alert_id = db.Column(db.Integer, db.ForeignKey("fraud_alerts.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    applied_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "fraud_alert_id": int(self.fraud_alert_id),
            "listing_id": int(self.listing_id),
            "action": self.action or "",
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }
