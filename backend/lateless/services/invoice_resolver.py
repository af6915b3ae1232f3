"""Resolve which invoice a Stripe payment object belongs to.

Resolution is an ordered list of lookup strategies; the first one that yields
an existing invoice wins. Stripe ``resource_missing`` responses are soft
misses (see ``stripe_service``), anything else propagates so the webhook is
retried.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from lateless.models.invoice import Invoice
from lateless.services import stripe_service
from lateless.services.stripe_service import _get_stripe_value, read_invoice_id_from_metadata, read_object_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvoiceMatch:
    invoice_id: str
    source: str
    checkout_session_id: Optional[str] = None


@dataclass
class LookupContext:
    payment_intent_id: Optional[str]
    stripe_account: Optional[str] = None
    metadata: List[Any] = field(default_factory=list)


Strategy = Callable[[LookupContext, Session], Optional[InvoiceMatch]]


def _existing_invoice_id(invoice_id: Optional[str], db: Session) -> Optional[str]:
    if not invoice_id:
        return None
    row = db.query(Invoice.id).filter(Invoice.id == invoice_id).first()
    if row is None:
        logger.warning(f"Metadata references unknown invoice {invoice_id}")
        return None
    return row[0]


def find_invoice_id_by_payment_intent(payment_intent_id: Optional[str], db: Session) -> Optional[str]:
    if not payment_intent_id:
        return None
    row = db.query(Invoice.id).filter(Invoice.stripe_payment_intent_id == payment_intent_id).first()
    return row[0] if row else None


def find_invoice_id_by_checkout_session(checkout_session_id: Optional[str], db: Session) -> Optional[str]:
    if not checkout_session_id:
        return None
    row = db.query(Invoice.id).filter(Invoice.stripe_checkout_session_id == checkout_session_id).first()
    return row[0] if row else None


# ============================================================================
# STRATEGIES
# ============================================================================

def by_stored_payment_intent(ctx: LookupContext, db: Session) -> Optional[InvoiceMatch]:
    invoice_id = find_invoice_id_by_payment_intent(ctx.payment_intent_id, db)
    return InvoiceMatch(invoice_id, "stored_payment_intent") if invoice_id else None


def by_checkout_session(ctx: LookupContext, db: Session) -> Optional[InvoiceMatch]:
    if not ctx.payment_intent_id:
        return None
    session = stripe_service.find_checkout_session_by_payment_intent(ctx.payment_intent_id, ctx.stripe_account)
    if not session:
        return None

    session_id = _get_stripe_value(session, "id")
    invoice_id = find_invoice_id_by_checkout_session(session_id, db)
    if invoice_id:
        return InvoiceMatch(invoice_id, "stored_checkout_session", session_id)

    invoice_id = _existing_invoice_id(read_invoice_id_from_metadata(_get_stripe_value(session, "metadata")), db)
    return InvoiceMatch(invoice_id, "checkout_session_metadata", session_id) if invoice_id else None


def by_event_metadata(ctx: LookupContext, db: Session) -> Optional[InvoiceMatch]:
    for metadata in ctx.metadata:
        invoice_id = _existing_invoice_id(read_invoice_id_from_metadata(metadata), db)
        if invoice_id:
            return InvoiceMatch(invoice_id, "event_metadata")
    return None


def by_remote_payment_intent(ctx: LookupContext, db: Session) -> Optional[InvoiceMatch]:
    if not ctx.payment_intent_id:
        return None
    intent = stripe_service.retrieve_payment_intent(ctx.payment_intent_id, ctx.stripe_account)
    if not intent:
        return None
    invoice_id = _existing_invoice_id(read_invoice_id_from_metadata(_get_stripe_value(intent, "metadata")), db)
    return InvoiceMatch(invoice_id, "payment_intent_metadata") if invoice_id else None


DEFAULT_STRATEGIES: Sequence[Strategy] = (
    by_stored_payment_intent,
    by_checkout_session,
    by_event_metadata,
    by_remote_payment_intent,
)


def resolve_invoice(
    ctx: LookupContext,
    db: Session,
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES
) -> Optional[InvoiceMatch]:
    for strategy in strategies:
        match = strategy(ctx, db)
        if match:
            logger.debug(f"Resolved invoice {match.invoice_id} via {match.source} (pi={ctx.payment_intent_id})")
            return match
    return None


def resolve_invoice_from_payment_intent(
    payment_intent_id: Optional[str],
    db: Session,
    stripe_account: Optional[str] = None,
    metadata: Any = None
) -> Optional[InvoiceMatch]:
    ctx = LookupContext(
        payment_intent_id=payment_intent_id,
        stripe_account=stripe_account,
        metadata=[metadata] if metadata else [],
    )
    return resolve_invoice(ctx, db)


# ============================================================================
# PER-OBJECT ENTRY POINTS
# ============================================================================

def resolve_invoice_for_checkout_session(session: Any, db: Session) -> Optional[InvoiceMatch]:
    """Stored session id, then session metadata, then stored payment intent"""
    session_id = _get_stripe_value(session, "id")
    invoice_id = find_invoice_id_by_checkout_session(session_id, db)
    if invoice_id:
        return InvoiceMatch(invoice_id, "stored_checkout_session", session_id)

    invoice_id = _existing_invoice_id(read_invoice_id_from_metadata(_get_stripe_value(session, "metadata")), db)
    if invoice_id:
        return InvoiceMatch(invoice_id, "checkout_session_metadata", session_id)

    invoice_id = find_invoice_id_by_payment_intent(read_object_id(_get_stripe_value(session, "payment_intent")), db)
    if invoice_id:
        return InvoiceMatch(invoice_id, "stored_payment_intent", session_id)
    return None


def resolve_invoice_for_charge(charge: Any, db: Session, stripe_account: Optional[str] = None) -> Optional[InvoiceMatch]:
    """The charge's own metadata first, then the payment intent chain"""
    invoice_id = _existing_invoice_id(read_invoice_id_from_metadata(_get_stripe_value(charge, "metadata")), db)
    if invoice_id:
        return InvoiceMatch(invoice_id, "charge_metadata")

    payment_intent_id = read_object_id(_get_stripe_value(charge, "payment_intent"))
    if not payment_intent_id:
        return None
    return resolve_invoice_from_payment_intent(payment_intent_id, db, stripe_account)


def payment_intent_id_for_dispute(dispute: Any, stripe_account: Optional[str] = None) -> Optional[str]:
    """Disputes may omit the payment intent; fall back to the disputed charge"""
    payment_intent_id = read_object_id(_get_stripe_value(dispute, "payment_intent"))
    if payment_intent_id:
        return payment_intent_id

    charge_id = read_object_id(_get_stripe_value(dispute, "charge"))
    if not charge_id:
        return None
    charge = stripe_service.retrieve_charge(charge_id, stripe_account)
    return read_object_id(_get_stripe_value(charge, "payment_intent")) if charge else None


def resolve_invoice_for_dispute(dispute: Any, db: Session, stripe_account: Optional[str] = None) -> Optional[InvoiceMatch]:
    payment_intent_id = payment_intent_id_for_dispute(dispute, stripe_account)
    if not payment_intent_id:
        return None
    return resolve_invoice_from_payment_intent(payment_intent_id, db, stripe_account)
