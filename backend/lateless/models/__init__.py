"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from lateless.models.base import Base
from lateless.models.user import User
from lateless.models.workspace import Workspace, WorkspacePricingSettings
from lateless.models.customer import Customer
from lateless.models.invoice import Invoice, InvoiceStatus
from lateless.models.stripe_webhook_event import StripeWebhookEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Workspace", "WorkspacePricingSettings",
    "Customer", "Invoice", "InvoiceStatus", "StripeWebhookEvent"
]
