"""Stripe webhook recording, deduplication and event dispatch"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lateless.core.config import settings, WEBHOOK_ERROR_MAX_LENGTH
from lateless.core.metrics import invoice_transitions_counter, webhook_events_counter
from lateless.core.otel import tracer
from lateless.models.invoice import Invoice
from lateless.models.stripe_webhook_event import StripeWebhookEvent
from lateless.models.user import User
from lateless.services import invoice_resolver, invoice_transitions, stripe_service
from lateless.services.fee_service import is_active_subscription, normalize_plan
from lateless.services.invoice_transitions import Transition
from lateless.services.stripe_service import _get_stripe_value, read_object_id

logger = logging.getLogger("webhook")


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    ok: bool
    deduped: bool = False
    error: Optional[str] = None

    def to_body(self) -> Dict[str, Any]:
        if self.status_code == 500 and self.error == MISSING_SECRET_ERROR:
            return {"error": self.error}
        body: Dict[str, Any] = {"ok": self.ok}
        if self.deduped:
            body["deduped"] = True
        if self.error:
            body["error"] = self.error
        return body


MISSING_SECRET_ERROR = "Missing STRIPE_WEBHOOK_SECRET"
INVALID_SIGNATURE_ERROR = "Invalid signature"
HANDLER_FAILED_ERROR = "Webhook handler failed"


def truncate_error(error: Any, max_length: int = WEBHOOK_ERROR_MAX_LENGTH) -> str:
    message = str(error)
    return message[:max_length]


def _from_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


# ============================================================================
# EVENT RECORDS
# ============================================================================

def record_webhook_event(event: Dict[str, Any], db: Session) -> Optional[StripeWebhookEvent]:
    """Insert the event record; returns None when the event id was already recorded.

    The unique event_id makes this the single winner among concurrent
    deliveries of the same event.
    """
    record = StripeWebhookEvent(
        event_id=event["id"],
        event_type=event.get("type") or "unknown",
        account=event.get("account"),
        livemode=bool(event.get("livemode", False)),
        status="received",
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(record)
    return record


def mark_webhook_event_processed(event_id: str, db: Session):
    db.query(StripeWebhookEvent).filter(StripeWebhookEvent.event_id == event_id).update({
        "status": "processed",
        "processed_at": datetime.now(timezone.utc),
        "error": None,
    }, synchronize_session=False)
    db.commit()


def mark_webhook_event_failed(event_id: str, error: Any, db: Session) -> bool:
    """Best-effort diagnostic write; never raises"""
    try:
        db.rollback()
        db.query(StripeWebhookEvent).filter(StripeWebhookEvent.event_id == event_id).update({
            "status": "failed",
            "processed_at": datetime.now(timezone.utc),
            "error": truncate_error(error),
        }, synchronize_session=False)
        db.commit()
        return True
    except Exception as e:
        # The processing error drives the response, not this write
        logger.error(f"Could not persist failure for event {event_id}: {e}")
        return False


# ============================================================================
# INVOICE WRITES
# ============================================================================

def apply_invoice_transition(invoice_id: str, transition: Transition, event: Dict[str, Any], db: Session) -> int:
    """Conditional UPDATE ... WHERE id = :id AND status = :expected; returns affected rows"""
    if not transition.changed:
        logger.debug(f"[{event.get('type')}] invoice {invoice_id} unchanged: {transition.reason}")
        return 0

    values: Dict[Any, Any] = {Invoice.status: transition.next_status}
    for key, value in transition.patch.items():
        column = getattr(Invoice, key)
        if key == "paid_at":
            value = datetime.now(timezone.utc)
        values[column] = func.coalesce(column, value)

    rows = db.query(Invoice).filter(
        Invoice.id == invoice_id,
        Invoice.status == transition.expected_status
    ).update(values, synchronize_session=False)
    db.commit()

    if rows == 0:
        logger.warning(
            f"[{event.get('type')}] invoice {invoice_id} update affected 0 rows "
            f"(expected status {transition.expected_status}, event {event.get('id')})"
        )
    else:
        invoice_transitions_counter.labels(
            from_status=transition.current_status or "unknown",
            to_status=transition.next_status
        ).inc()
        logger.info(
            f"[{event.get('type')}] invoice {invoice_id}: {transition.current_status} -> "
            f"{transition.next_status} ({transition.reason})"
        )
    return rows


def _current_status(invoice_id: str, db: Session) -> Optional[str]:
    row = db.query(Invoice.status).filter(Invoice.id == invoice_id).first()
    return row[0] if row else None


def _mark_invoice_paid(
    match: invoice_resolver.InvoiceMatch,
    event: Dict[str, Any],
    db: Session,
    payment_intent_id: Optional[str] = None
) -> int:
    transition = invoice_transitions.apply_payment_succeeded(
        _current_status(match.invoice_id, db),
        payment_intent_id=payment_intent_id,
        checkout_session_id=match.checkout_session_id,
    )
    return apply_invoice_transition(match.invoice_id, transition, event, db)


def _missing_invoice(event: Dict[str, Any], **context):
    logger.warning(f"[{event.get('type')}] missing invoice (ignored) event={event.get('id')} {context}")


# ============================================================================
# HANDLERS
# ============================================================================

def handle_checkout_session_completed(event: Dict[str, Any], db: Session):
    session = event["data"]["object"]
    if _get_stripe_value(session, "mode") == "subscription":
        sync_user_from_subscription_checkout(session, db)

    match = invoice_resolver.resolve_invoice_for_checkout_session(session, db)
    payment_intent_id = read_object_id(_get_stripe_value(session, "payment_intent"))
    if not match:
        _missing_invoice(event, checkout_session_id=_get_stripe_value(session, "id"), payment_intent_id=payment_intent_id)
        return
    _mark_invoice_paid(match, event, db, payment_intent_id)


def handle_payment_intent_succeeded(event: Dict[str, Any], db: Session):
    intent = event["data"]["object"]
    payment_intent_id = _get_stripe_value(intent, "id")
    match = invoice_resolver.resolve_invoice_from_payment_intent(
        payment_intent_id, db, event.get("account"), _get_stripe_value(intent, "metadata")
    ) if payment_intent_id else None
    if not match:
        _missing_invoice(event, payment_intent_id=payment_intent_id)
        return
    _mark_invoice_paid(match, event, db, payment_intent_id)


def handle_payment_intent_failed(event: Dict[str, Any], db: Session):
    intent = event["data"]["object"]
    payment_intent_id = _get_stripe_value(intent, "id")
    match = invoice_resolver.resolve_invoice_from_payment_intent(
        payment_intent_id, db, event.get("account"), _get_stripe_value(intent, "metadata")
    ) if payment_intent_id else None
    if not match:
        _missing_invoice(event, payment_intent_id=payment_intent_id)
        return
    transition = invoice_transitions.apply_payment_failed(_current_status(match.invoice_id, db))
    logger.info(f"Payment failed for invoice {match.invoice_id} (pi={payment_intent_id}): {transition.reason}")


def handle_charge_succeeded(event: Dict[str, Any], db: Session):
    charge = event["data"]["object"]
    account = event.get("account")
    match = invoice_resolver.resolve_invoice_for_charge(charge, db, account)
    payment_intent_id = read_object_id(_get_stripe_value(charge, "payment_intent"))
    if not match:
        _missing_invoice(event, charge_id=_get_stripe_value(charge, "id"), payment_intent_id=payment_intent_id)
        return
    _mark_invoice_paid(match, event, db, payment_intent_id)
    record_processing_fee(match.invoice_id, charge, account, db)


def record_processing_fee(invoice_id: str, charge: Any, stripe_account: Optional[str], db: Session):
    """Store the provider-confirmed processing fee and net from the balance transaction"""
    balance_transaction = _get_stripe_value(charge, "balance_transaction")
    if balance_transaction and isinstance(balance_transaction, str):
        try:
            balance_transaction = stripe_service.retrieve_balance_transaction(balance_transaction, stripe_account)
        except stripe.StripeError as e:
            logger.warning(f"Could not load balance transaction for invoice {invoice_id}: {e}")
            return
    if not balance_transaction:
        return

    fee = _get_stripe_value(balance_transaction, "fee")
    net = _get_stripe_value(balance_transaction, "net")
    if not isinstance(fee, int) or not isinstance(net, int):
        return
    db.query(Invoice).filter(Invoice.id == invoice_id).update({
        Invoice.stripe_processing_fee_amount: fee,
        Invoice.stripe_net_amount: net,
    }, synchronize_session=False)
    db.commit()
    logger.info(f"Invoice {invoice_id} processing fee {fee}, net {net}")


def handle_charge_refunded(event: Dict[str, Any], db: Session):
    charge = event["data"]["object"]
    match = invoice_resolver.resolve_invoice_for_charge(charge, db, event.get("account"))
    if not match:
        _missing_invoice(event, charge_id=_get_stripe_value(charge, "id"))
        return
    transition = invoice_transitions.apply_charge_refunded(
        _current_status(match.invoice_id, db),
        _get_stripe_value(charge, "amount"),
        _get_stripe_value(charge, "amount_refunded"),
    )
    apply_invoice_transition(match.invoice_id, transition, event, db)


def handle_dispute_created(event: Dict[str, Any], db: Session):
    dispute = event["data"]["object"]
    match = invoice_resolver.resolve_invoice_for_dispute(dispute, db, event.get("account"))
    if not match:
        _missing_invoice(event, dispute_id=_get_stripe_value(dispute, "id"))
        return
    transition = invoice_transitions.apply_dispute_created(_current_status(match.invoice_id, db))
    apply_invoice_transition(match.invoice_id, transition, event, db)


def handle_dispute_closed(event: Dict[str, Any], db: Session):
    dispute = event["data"]["object"]
    match = invoice_resolver.resolve_invoice_for_dispute(dispute, db, event.get("account"))
    if not match:
        _missing_invoice(event, dispute_id=_get_stripe_value(dispute, "id"))
        return
    transition = invoice_transitions.apply_dispute_closed(
        _current_status(match.invoice_id, db),
        _get_stripe_value(dispute, "status"),
    )
    apply_invoice_transition(match.invoice_id, transition, event, db)


# ============================================================================
# SUBSCRIPTION / ACCOUNT SYNC
# ============================================================================

def _metadata_user_id(metadata: Any) -> Optional[str]:
    return _get_stripe_value(metadata, "userId") or _get_stripe_value(metadata, "user_id")


def sync_user_from_subscription_checkout(session: Any, db: Session):
    metadata = _get_stripe_value(session, "metadata", {})
    raw_plan = _get_stripe_value(metadata, "plan")
    plan = normalize_plan(raw_plan) if raw_plan else None
    is_pro = plan != "free" if plan else True

    user = None
    user_id = _metadata_user_id(metadata)
    if user_id:
        user = db.query(User).filter(User.id == user_id).first()
    else:
        email = (
            _get_stripe_value(session, "customer_email")
            or _get_stripe_value(_get_stripe_value(session, "customer_details"), "email")
            or _get_stripe_value(metadata, "userEmail")
        )
        if email:
            user = db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
        else:
            logger.warning("checkout.session.completed: no userId and no email found in session")
            return

    if not user:
        logger.warning(f"checkout.session.completed: no user for session {_get_stripe_value(session, 'id')}")
        return

    user.plan = plan or user.plan
    user.is_pro = is_pro
    user.stripe_customer_id = user.stripe_customer_id or read_object_id(_get_stripe_value(session, "customer"))
    user.stripe_subscription_id = user.stripe_subscription_id or read_object_id(_get_stripe_value(session, "subscription"))
    user.subscription_status = user.subscription_status or "active"
    db.commit()
    logger.info(f"User {user.id} subscribed via checkout (plan={user.plan})")


def _first_subscription_item(subscription: Any):
    items = _get_stripe_value(_get_stripe_value(subscription, "items"), "data", [])
    return items[0] if items else None


def sync_subscription(subscription: Any, db: Session, source: str) -> List[User]:
    """Copy a Stripe subscription onto the users it belongs to; returns the users written"""
    subscription_id = _get_stripe_value(subscription, "id")
    metadata = _get_stripe_value(subscription, "metadata", {})
    first_item = _first_subscription_item(subscription)

    status = str(_get_stripe_value(subscription, "status", "")).strip().lower()
    cancel_at = _get_stripe_value(subscription, "cancel_at")
    cancel_requested = bool(_get_stripe_value(subscription, "cancel_at_period_end", False)) or cancel_at is not None
    current_period_end = _from_timestamp(
        _get_stripe_value(subscription, "current_period_end")
        or cancel_at
        or _get_stripe_value(first_item, "current_period_end")
    )

    price_id = _get_stripe_value(_get_stripe_value(first_item, "price"), "id")
    raw_plan = _get_stripe_value(metadata, "plan")
    plan = settings.plan_for_price_id(price_id) or (normalize_plan(raw_plan) if raw_plan else None)
    is_pro = is_active_subscription(status) and (plan != "free" if plan else True)

    users = db.query(User).filter(User.stripe_subscription_id == subscription_id).all()
    if not users:
        # Out-of-order delivery: the local row may not know the subscription yet
        user_id = _metadata_user_id(metadata)
        user = db.query(User).filter(User.id == user_id).first() if user_id else None
        users = [user] if user else []
    if not users:
        logger.warning(f"{source}: no user for subscription {subscription_id}")
        return []

    customer_id = read_object_id(_get_stripe_value(subscription, "customer"))
    for user in users:
        user.plan = plan or user.plan
        user.stripe_customer_id = customer_id or user.stripe_customer_id
        user.stripe_subscription_id = subscription_id
        user.subscription_status = status
        user.cancel_at_period_end = cancel_requested
        user.current_period_end = current_period_end
        user.is_pro = is_pro
    db.commit()
    logger.info(f"{source}: subscription {subscription_id} synced: status={status} plan={plan} users={len(users)}")
    return users


def handle_subscription_upsert(event: Dict[str, Any], db: Session):
    sync_subscription(event["data"]["object"], db, source=event.get("type") or "subscription")


def handle_subscription_deleted(event: Dict[str, Any], db: Session):
    subscription_id = _get_stripe_value(event["data"]["object"], "id")
    rows = db.query(User).filter(User.stripe_subscription_id == subscription_id).update({
        User.plan: "free",
        User.is_pro: False,
        User.subscription_status: "canceled",
        User.cancel_at_period_end: False,
        User.current_period_end: None,
    }, synchronize_session=False)
    db.commit()
    logger.info(f"Subscription {subscription_id} deleted; users downgraded: {rows}")


def sync_connect_account(account: Any, db: Session, source: str = "account.updated") -> int:
    """Copy payout readiness from a Stripe account onto matching users; returns rows updated"""
    account_id = str(_get_stripe_value(account, "id", "")).strip()
    payouts_enabled = bool(_get_stripe_value(account, "payouts_enabled", False))
    details_submitted = bool(_get_stripe_value(account, "details_submitted", False))

    rows = db.query(User).filter(
        func.lower(func.trim(User.stripe_connect_account_id)) == account_id.lower()
    ).update({
        User.stripe_connect_payouts_enabled: payouts_enabled,
        User.stripe_connect_details_submitted: details_submitted,
    }, synchronize_session=False)
    db.commit()

    if rows == 0:
        logger.warning(f"{source}: no matching user row for {account_id}")
    else:
        logger.info(
            f"{source} {account_id}: payouts_enabled={payouts_enabled} "
            f"details_submitted={details_submitted} users={rows}"
        )
    return rows


def handle_account_updated(event: Dict[str, Any], db: Session):
    sync_connect_account(event["data"]["object"], db)


EVENT_HANDLERS: Dict[str, Callable[[Dict[str, Any], Session], None]] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "charge.succeeded": handle_charge_succeeded,
    "charge.refunded": handle_charge_refunded,
    "charge.dispute.created": handle_dispute_created,
    "charge.dispute.closed": handle_dispute_closed,
    "customer.subscription.created": handle_subscription_upsert,
    "customer.subscription.updated": handle_subscription_upsert,
    "customer.subscription.deleted": handle_subscription_deleted,
    "account.updated": handle_account_updated,
}


def process_event(event: Dict[str, Any], db: Session):
    """Dispatch a verified event; unknown types are a no-op"""
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.debug(f"Unhandled event type {event_type} ({event.get('id')})")
        return
    with tracer.start_as_current_span("stripe.webhook.process") as span:
        span.set_attribute("stripe.event_id", event.get("id") or "")
        span.set_attribute("stripe.event_type", event_type)
        handler(event, db)


# ============================================================================
# ENTRY POINT
# ============================================================================

def process_stripe_webhook(payload: bytes, sig_header: Optional[str], db: Session) -> WebhookOutcome:
    if not sig_header:
        webhook_events_counter.labels(event_type="unknown", outcome="invalid_signature").inc()
        return WebhookOutcome(400, False, error=INVALID_SIGNATURE_ERROR)

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        return WebhookOutcome(500, False, error=MISSING_SECRET_ERROR)

    try:
        event = stripe_service.construct_webhook_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        webhook_events_counter.labels(event_type="unknown", outcome="invalid_signature").inc()
        return WebhookOutcome(400, False, error=INVALID_SIGNATURE_ERROR)

    event_id = event["id"]
    event_type = event.get("type") or "unknown"
    logger.info(f"Received {event_type} ({event_id}) account={event.get('account')}")

    if record_webhook_event(event, db) is None:
        logger.info(f"Duplicate event {event_id} ignored")
        webhook_events_counter.labels(event_type=event_type, outcome="deduped").inc()
        return WebhookOutcome(200, True, deduped=True)

    try:
        process_event(event, db)
        mark_webhook_event_processed(event_id, db)
    except Exception as e:
        logger.error(f"Webhook handler failed for {event_type} ({event_id}): {e}", exc_info=True)
        mark_webhook_event_failed(event_id, e, db)
        webhook_events_counter.labels(event_type=event_type, outcome="failed").inc()
        return WebhookOutcome(500, False, error=HANDLER_FAILED_ERROR)

    webhook_events_counter.labels(event_type=event_type, outcome="processed").inc()
    return WebhookOutcome(200, True)
