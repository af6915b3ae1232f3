"""On-demand billing reconciliation outside the webhook flow"""
import logging
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy.orm import Session

from lateless.models.stripe_webhook_event import StripeWebhookEvent
from lateless.models.user import User
from lateless.services import stripe_service, webhook_service
from lateless.services.stripe_service import StripeNotConfigured, _get_stripe_value

logger = logging.getLogger("billing_sync")

RECONCILE_SOURCE = "manual_reconcile"
CONNECT_RESYNC_SOURCE = "connect_resync"
WEBHOOK_EVENT_STATUSES = ("received", "processed", "failed")
MAX_WEBHOOK_EVENTS = 200


class BillingSyncError(Exception):
    """Reconcile or resync failure with an HTTP status and a stable code"""

    def __init__(self, code: str, message: str, status_code: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "code": self.code, "message": self.message}


def _stripe_api_error(e: stripe.StripeError) -> BillingSyncError:
    message = getattr(e, "user_message", None) or str(e) or "Stripe API request failed."
    return BillingSyncError("STRIPE_API_ERROR", message, 502)


def _subscription_from_session(session_id: str, db: Session):
    session = stripe_service.retrieve_checkout_session(session_id)
    if session is None:
        raise BillingSyncError("SESSION_NOT_FOUND", "Checkout session not found.", 404)

    subscription = _get_stripe_value(session, "subscription")
    if (
        _get_stripe_value(session, "mode") != "subscription"
        or _get_stripe_value(session, "payment_status") != "paid"
        or not subscription
    ):
        raise BillingSyncError(
            "SESSION_NOT_PAID_SUBSCRIPTION", "Checkout session is not a paid subscription session.", 409
        )

    # Links the user from session metadata before the subscription lookup
    webhook_service.sync_user_from_subscription_checkout(session, db)

    if isinstance(subscription, str):
        return stripe_service.retrieve_subscription(subscription)
    return subscription


def reconcile_subscription(
    db: Session,
    session_id: Optional[str] = None,
    subscription_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Re-read a subscription from Stripe and apply it to the local users.

    Accepts a checkout session id (must be a paid subscription session) or a
    subscription id. Uses the same field mapping as subscription webhooks.
    """
    session_id = (session_id or "").strip() or None
    subscription_id = (subscription_id or "").strip() or None
    if not session_id and not subscription_id:
        raise BillingSyncError("INVALID_REQUEST_BODY", "sessionId or subscriptionId is required", 400)

    try:
        stripe_service.assert_stripe_configured()
        if session_id:
            subscription = _subscription_from_session(session_id, db)
        else:
            subscription = stripe_service.retrieve_subscription(subscription_id)
    except StripeNotConfigured as e:
        raise BillingSyncError("STRIPE_NOT_CONFIGURED", str(e), 500) from e
    except stripe.StripeError as e:
        logger.error(f"Reconcile lookup failed (session={session_id} subscription={subscription_id}): {e}")
        raise _stripe_api_error(e) from e

    if subscription is None:
        raise BillingSyncError("SUBSCRIPTION_NOT_FOUND", "Subscription not found.", 404)

    users = webhook_service.sync_subscription(subscription, db, source=RECONCILE_SOURCE)
    if not users:
        raise BillingSyncError(
            "USER_RESOLUTION_FAILED", "Could not resolve a user for this subscription.", 409
        )

    first = users[0]
    return {
        "ok": True,
        "source": RECONCILE_SOURCE,
        "subscription_id": first.stripe_subscription_id,
        "customer_id": first.stripe_customer_id,
        "status": first.subscription_status,
        "plan": first.plan,
        "is_pro": bool(first.is_pro),
        "user_ids": [user.id for user in users],
    }


def resync_connect_account(user_id: str, db: Session) -> Dict[str, Any]:
    """Re-read a user's connected account and store its payout readiness"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise BillingSyncError("USER_NOT_FOUND", "User not found.", 404)

    account_id = (user.stripe_connect_account_id or "").strip()
    if not account_id:
        raise BillingSyncError("CONNECT_ACCOUNT_MISSING", "No connected account found.", 400)

    try:
        stripe_service.assert_stripe_configured()
        account = stripe_service.retrieve_account(account_id)
    except StripeNotConfigured as e:
        raise BillingSyncError("STRIPE_NOT_CONFIGURED", str(e), 500) from e
    except stripe.StripeError as e:
        logger.error(f"Connect resync failed for {account_id}: {e}")
        raise _stripe_api_error(e) from e

    if account is None:
        raise BillingSyncError("CONNECT_ACCOUNT_NOT_FOUND", "Connected account not found in Stripe.", 404)

    webhook_service.sync_connect_account(account, db, source=CONNECT_RESYNC_SOURCE)
    db.refresh(user)
    return {
        "ok": True,
        "account_id": account_id,
        "payouts_enabled": bool(user.stripe_connect_payouts_enabled),
        "details_submitted": bool(user.stripe_connect_details_submitted),
    }


def list_webhook_events(db: Session, status: Optional[str] = None, limit: int = 50) -> List[StripeWebhookEvent]:
    """Newest event records first, optionally filtered by status"""
    query = db.query(StripeWebhookEvent)
    if status:
        query = query.filter(StripeWebhookEvent.status == status)
    limit = max(1, min(limit, MAX_WEBHOOK_EVENTS))
    return query.order_by(StripeWebhookEvent.received_at.desc(), StripeWebhookEvent.id.desc()).limit(limit).all()
