"""Thin wrappers around the Stripe SDK used by checkout and webhook handling"""
import logging
from typing import Any, Dict, Optional

import stripe

from lateless.core.config import settings

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

CONNECT_MODE_MISMATCH_MESSAGE = (
    "Connected Stripe account belongs to a different mode/account. "
    "Reconnect payouts in the same Stripe mode as your API keys."
)


class StripeNotConfigured(Exception):
    """Stripe secret key is missing"""


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    # StripeObject raises AttributeError for unset keys
    try:
        value = getattr(obj, key)
    except (AttributeError, KeyError):
        return default
    return default if value is None else value


def read_object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object"""
    if not value:
        return None
    if isinstance(value, str):
        return value
    object_id = _get_stripe_value(value, "id")
    return object_id if isinstance(object_id, str) else None


def read_invoice_id_from_metadata(metadata: Any) -> Optional[str]:
    if not metadata:
        return None
    invoice_id = _get_stripe_value(metadata, "invoiceId") or _get_stripe_value(metadata, "invoice_id")
    if isinstance(invoice_id, str) and invoice_id.strip():
        return invoice_id.strip()
    return None


def is_resource_missing(error: Exception) -> bool:
    return (
        isinstance(error, stripe.StripeError)
        and getattr(error, "http_status", None) == 404
        and getattr(error, "code", None) == "resource_missing"
    )


def is_permission_error(error: Exception) -> bool:
    """Permission errors or 'does not have access' messages signal a Connect mode mismatch"""
    if isinstance(error, stripe.PermissionError):
        return True
    if isinstance(error, stripe.StripeError):
        message = getattr(error, "user_message", None) or str(error)
        return "does not have access" in message.lower()
    return "does not have access" in str(error).lower()


def assert_stripe_configured():
    if not settings.STRIPE_SECRET_KEY:
        raise StripeNotConfigured("STRIPE_SECRET_KEY is not configured")


# ============================================================================
# LOOKUPS (resource_missing is a soft miss)
# ============================================================================

def retrieve_payment_intent(payment_intent_id: str, stripe_account: Optional[str] = None):
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id, stripe_account=stripe_account)
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            logger.warning(f"PaymentIntent {payment_intent_id} not found (account={stripe_account}); ignoring")
            return None
        raise


def find_checkout_session_by_payment_intent(payment_intent_id: str, stripe_account: Optional[str] = None):
    try:
        sessions = stripe.checkout.Session.list(
            payment_intent=payment_intent_id,
            limit=1,
            stripe_account=stripe_account
        )
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            return None
        raise
    data = _get_stripe_value(sessions, "data", [])
    return data[0] if data else None


def retrieve_charge(charge_id: str, stripe_account: Optional[str] = None):
    try:
        return stripe.Charge.retrieve(charge_id, stripe_account=stripe_account)
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            logger.warning(f"Charge {charge_id} not found (account={stripe_account}); ignoring")
            return None
        raise


def retrieve_balance_transaction(balance_transaction_id: str, stripe_account: Optional[str] = None):
    try:
        return stripe.BalanceTransaction.retrieve(balance_transaction_id, stripe_account=stripe_account)
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            logger.warning(f"Balance transaction {balance_transaction_id} not found; ignoring")
            return None
        raise


def retrieve_checkout_session(session_id: str):
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            logger.warning(f"Checkout session {session_id} not found; ignoring")
            return None
        raise


def retrieve_subscription(subscription_id: str):
    try:
        return stripe.Subscription.retrieve(subscription_id, expand=["items.data.price"])
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            logger.warning(f"Subscription {subscription_id} not found; ignoring")
            return None
        raise


def retrieve_account(account_id: str):
    try:
        return stripe.Account.retrieve(account_id)
    except stripe.InvalidRequestError as e:
        if is_resource_missing(e):
            logger.warning(f"Connected account {account_id} not found; ignoring")
            return None
        raise


# ============================================================================
# STRIPE CONNECT
# ============================================================================

def check_connected_account_access(account_id: str) -> Dict[str, Any]:
    """Retrieve the connected account; permission failures report a mode mismatch"""
    try:
        account = stripe.Account.retrieve(account_id)
        return {"ok": True, "account": account}
    except stripe.StripeError as e:
        return {
            "ok": False,
            "is_mode_mismatch": is_permission_error(e),
            "message": getattr(e, "user_message", None) or str(e) or "Failed to retrieve connected Stripe account.",
        }


def get_connect_charge_capability_status(account_id: str, account: Any = None) -> Dict[str, Any]:
    """Card payments must be active and charges enabled before checkout"""
    if account is None:
        account = stripe.Account.retrieve(account_id)
    capabilities = _get_stripe_value(account, "capabilities", {})
    card_payments = _get_stripe_value(capabilities, "card_payments", "unrequested")
    charges_enabled = bool(_get_stripe_value(account, "charges_enabled", False))
    details_submitted = bool(_get_stripe_value(account, "details_submitted", False))
    return {
        "ok": card_payments == "active" and charges_enabled,
        "card_payments": card_payments,
        "charges_enabled": charges_enabled,
        "details_submitted": details_submitted,
    }


# ============================================================================
# CHECKOUT
# ============================================================================

def create_invoice_checkout_session(
    invoice_id: str,
    invoice_label: str,
    currency: str,
    payable_amount: int,
    platform_fee_amount: int,
    connected_account_id: str,
    base_url: str,
    customer_email: Optional[str] = None,
    merchant_email: Optional[str] = None
):
    """Destination charge for the payable amount with the platform fee as application fee"""
    metadata = {"invoice_id": invoice_id}
    if merchant_email:
        metadata["user_email"] = merchant_email

    checkout_params = {
        "mode": "payment",
        "line_items": [{
            "quantity": 1,
            "price_data": {
                "currency": currency,
                "unit_amount": payable_amount,
                "product_data": {"name": f"Invoice {invoice_label}"},
            },
        }],
        "metadata": metadata,
        "payment_intent_data": {
            "metadata": dict(metadata),
            "application_fee_amount": platform_fee_amount,
            "transfer_data": {"destination": connected_account_id},
        },
        "success_url": f"{base_url}/dashboard/invoices/{invoice_id}?paid=1",
        "cancel_url": f"{base_url}/dashboard/invoices/{invoice_id}?canceled=1",
    }
    if customer_email:
        checkout_params["customer_email"] = customer_email

    return stripe.checkout.Session.create(**checkout_params)


# ============================================================================
# WEBHOOKS
# ============================================================================

def construct_webhook_event(payload: bytes, sig_header: str, secret: str) -> Dict[str, Any]:
    """Verify the signature and return the event as a plain dict"""
    event = stripe.Webhook.construct_event(payload, sig_header, secret)
    if isinstance(event, dict):
        return event
    return event.to_dict_recursive() if hasattr(event, "to_dict_recursive") else event.to_dict()
