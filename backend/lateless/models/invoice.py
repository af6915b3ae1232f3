"""Invoice model"""
import enum
import uuid
from sqlalchemy import Column, String, Integer, Date, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from lateless.models.base import Base


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    FAILED = "failed"
    PAID = "paid"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    DISPUTE_LOST = "dispute_lost"
    CANCELED = "canceled"


PAYABLE_STATUSES = (InvoiceStatus.PENDING.value, InvoiceStatus.OVERDUE.value, InvoiceStatus.FAILED.value)


def can_pay_invoice_status(status) -> bool:
    return isinstance(status, str) and status in PAYABLE_STATUSES


class Invoice(Base):
    """A bill owed by a customer to a workspace.

    ``amount`` is the base amount in minor currency units. The fee fields are
    written at checkout time; ``payable_amount`` is always
    ``amount + processing_uplift_amount``.
    """
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    invoice_number = Column(String(64), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="eur", nullable=False)
    status = Column(String(32), default=InvoiceStatus.PENDING.value, nullable=False, index=True)

    # Fee breakdown persisted at checkout
    processing_uplift_amount = Column(Integer, nullable=True)
    payable_amount = Column(Integer, nullable=True)
    platform_fee_amount = Column(Integer, nullable=True)

    # Stripe references
    stripe_checkout_session_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)

    # Provider-confirmed figures, known only after the charge settles
    stripe_processing_fee_amount = Column(Integer, nullable=True)
    stripe_net_amount = Column(Integer, nullable=True)

    due_date = Column(Date, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    workspace = relationship("Workspace", back_populates="invoices")
    customer = relationship("Customer", back_populates="invoices")
