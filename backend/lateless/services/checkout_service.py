"""Invoice checkout: Stripe Checkout Session on behalf of the merchant's connected account"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from lateless.core.config import settings, PAYOUTS_SETUP_URL
from lateless.core.metrics import checkout_sessions_counter
from lateless.models.invoice import Invoice, can_pay_invoice_status
from lateless.services import stripe_service
from lateless.services.fee_service import (
    FeeBreakdown, PricingFeesMigrationRequired, PRICING_FEES_MIGRATION_REQUIRED_CODE,
    compute_invoice_fee_breakdown_for_workspace
)
from lateless.services.stripe_service import (
    CONNECT_MODE_MISMATCH_MESSAGE, StripeNotConfigured, _get_stripe_value, read_object_id
)

logger = logging.getLogger("checkout")


class CheckoutError(Exception):
    """Structured, user-actionable checkout failure"""

    def __init__(self, code: str, message: str, status_code: int, action_url: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.action_url = action_url

    def to_dict(self) -> Dict[str, Any]:
        body = {"ok": False, "code": self.code, "message": self.message}
        if self.action_url:
            body["actionUrl"] = self.action_url
        return body


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    session_id: str
    fee_breakdown: FeeBreakdown


def _connect_required() -> CheckoutError:
    return CheckoutError(
        "CONNECT_REQUIRED",
        "Payments are not enabled for this merchant yet.",
        409,
        PAYOUTS_SETUP_URL,
    )


def _mode_mismatch(message: str = CONNECT_MODE_MISMATCH_MESSAGE) -> CheckoutError:
    return CheckoutError("CONNECT_MODE_MISMATCH", message, 409, PAYOUTS_SETUP_URL)


def _card_payments_required() -> CheckoutError:
    return CheckoutError(
        "CONNECT_CARD_PAYMENTS_REQUIRED",
        "Card payments are not enabled on your connected Stripe account. "
        "Complete Stripe onboarding to enable card payments.",
        409,
        PAYOUTS_SETUP_URL,
    )


def _resolve_connected_account_id(invoice: Invoice) -> Optional[str]:
    owner = invoice.workspace.owner if invoice.workspace else None
    account_id = (owner.stripe_connect_account_id or "").strip() if owner else ""
    return account_id or None


def _create_session(invoice: Invoice, base_url: str, db: Session):
    stripe_service.assert_stripe_configured()

    connected_account_id = _resolve_connected_account_id(invoice)
    if not connected_account_id:
        raise _connect_required()

    access = stripe_service.check_connected_account_access(connected_account_id)
    if not access["ok"]:
        if access["is_mode_mismatch"]:
            logger.warning(
                f"Checkout blocked for invoice {invoice.id}: Connect mode mismatch "
                f"(account={connected_account_id}, test_mode={settings.stripe_is_test_mode})"
            )
            raise _mode_mismatch()
        raise CheckoutError("CHECKOUT_FAILED", access["message"], 500)

    capability = stripe_service.get_connect_charge_capability_status(connected_account_id, access["account"])
    if not capability["ok"]:
        logger.info(
            f"Checkout blocked for invoice {invoice.id}: card_payments={capability['card_payments']} "
            f"charges_enabled={capability['charges_enabled']} details_submitted={capability['details_submitted']}"
        )
        raise _card_payments_required()

    breakdown = compute_invoice_fee_breakdown_for_workspace(invoice.workspace_id, invoice.amount, db)
    owner = invoice.workspace.owner
    session = stripe_service.create_invoice_checkout_session(
        invoice_id=invoice.id,
        invoice_label=invoice.invoice_number or f"#{invoice.id[:8]}",
        currency=(invoice.currency or settings.INVOICE_CURRENCY).lower(),
        payable_amount=breakdown.payable_amount,
        platform_fee_amount=breakdown.platform_fee_amount,
        connected_account_id=connected_account_id,
        base_url=base_url,
        customer_email=invoice.customer.email if invoice.customer else None,
        merchant_email=owner.email if owner else None,
    )
    return session, breakdown


def create_invoice_checkout(invoice_id: str, base_url: str, db: Session) -> CheckoutResult:
    """Create the Checkout Session for an invoice and persist its fee breakdown.

    Raises:
        CheckoutError: for every user-facing failure, with code and HTTP status
    """
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if not invoice:
        raise CheckoutError("INVOICE_NOT_FOUND", "Invoice not found", 404)

    if not can_pay_invoice_status(invoice.status):
        raise CheckoutError(
            "INVOICE_STATUS_NOT_PAYABLE",
            f"Invoice status '{invoice.status}' does not allow payment",
            409,
        )

    try:
        session, breakdown = _create_session(invoice, base_url, db)
    except CheckoutError as e:
        checkout_sessions_counter.labels(outcome=e.code).inc()
        raise
    except StripeNotConfigured as e:
        checkout_sessions_counter.labels(outcome="STRIPE_NOT_CONFIGURED").inc()
        raise CheckoutError("STRIPE_NOT_CONFIGURED", str(e), 500) from e
    except PricingFeesMigrationRequired as e:
        checkout_sessions_counter.labels(outcome=PRICING_FEES_MIGRATION_REQUIRED_CODE).inc()
        raise CheckoutError(
            PRICING_FEES_MIGRATION_REQUIRED_CODE,
            "Pricing and fees require a database migration. Run migrations and retry.",
            503,
        ) from e
    except stripe.StripeError as e:
        if stripe_service.is_permission_error(e):
            checkout_sessions_counter.labels(outcome="CONNECT_MODE_MISMATCH").inc()
            raise _mode_mismatch(
                "Check Stripe secret key + Connect account, re-authorize Connect if needed."
            ) from e
        logger.error(f"Stripe error creating checkout for invoice {invoice_id}: {e}")
        checkout_sessions_counter.labels(outcome="CHECKOUT_FAILED").inc()
        raise CheckoutError("CHECKOUT_FAILED", "Failed to create checkout session", 500) from e

    session_id = _get_stripe_value(session, "id")
    payment_intent_id = read_object_id(_get_stripe_value(session, "payment_intent"))

    invoice.processing_uplift_amount = breakdown.processing_uplift_amount
    invoice.payable_amount = breakdown.payable_amount
    invoice.platform_fee_amount = breakdown.platform_fee_amount
    invoice.stripe_checkout_session_id = session_id
    invoice.stripe_payment_intent_id = payment_intent_id or invoice.stripe_payment_intent_id
    db.commit()
    logger.info(
        f"Checkout session {session_id} for invoice {invoice_id}: payable={breakdown.payable_amount} "
        f"platform_fee={breakdown.platform_fee_amount} uplift={breakdown.processing_uplift_amount}"
    )

    url = _get_stripe_value(session, "url")
    if not url:
        checkout_sessions_counter.labels(outcome="CHECKOUT_URL_MISSING").inc()
        raise CheckoutError("CHECKOUT_URL_MISSING", "Missing Stripe Checkout URL", 500)

    checkout_sessions_counter.labels(outcome="created").inc()
    return CheckoutResult(url=url, session_id=session_id, fee_breakdown=breakdown)
