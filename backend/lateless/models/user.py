"""User model"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from lateless.models.base import Base


class User(Base):
    """User accounts, including the cached subscription and Stripe Connect state"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    active_workspace_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Subscription (mirrored from Stripe webhooks)
    plan = Column(String(50), default="free", nullable=False)  # 'free', 'solo', 'pro', 'studio'
    is_pro = Column(Boolean, default=False, nullable=False)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    subscription_status = Column(String(50), nullable=True)  # 'active', 'trialing', 'past_due', 'canceled', ...
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    # Stripe Connect (merchant payouts)
    stripe_connect_account_id = Column(String(255), nullable=True, index=True)
    stripe_connect_payouts_enabled = Column(Boolean, default=False, nullable=False)
    stripe_connect_details_submitted = Column(Boolean, default=False, nullable=False)

    # Relationships
    owned_workspaces = relationship("Workspace", back_populates="owner")
