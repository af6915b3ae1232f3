"""StripeWebhookEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime
from datetime import datetime, timezone
from lateless.models.base import Base


class StripeWebhookEvent(Base):
    """Stripe webhook event log; the unique event_id makes delivery at-most-once"""
    __tablename__ = "stripe_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    account = Column(String(255), nullable=True)
    livemode = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="received")  # 'received', 'processed', 'failed'
    error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
