"""Pure invoice status transitions driven by payment events.

Each function takes the invoice's current status and the event payload and
returns a Transition. No I/O happens here; the webhook service applies the
patch with a conditional UPDATE guarded by ``expected_status``.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from lateless.models.invoice import InvoiceStatus, PAYABLE_STATUSES

PAID = InvoiceStatus.PAID.value
REFUNDED = InvoiceStatus.REFUNDED.value
DISPUTED = InvoiceStatus.DISPUTED.value
DISPUTE_LOST = InvoiceStatus.DISPUTE_LOST.value


@dataclass(frozen=True)
class Transition:
    current_status: Optional[str]
    next_status: Optional[str]
    patch: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def changed(self) -> bool:
        return self.next_status is not None and self.next_status != self.current_status

    @property
    def expected_status(self) -> Optional[str]:
        return self.current_status


def _no_change(current_status: Optional[str], reason: str) -> Transition:
    return Transition(current_status=current_status, next_status=current_status, reason=reason)


def apply_payment_succeeded(
    current_status: Optional[str],
    payment_intent_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None
) -> Transition:
    """Checkout completed / payment succeeded: payable -> paid.

    The patch carries Stripe ids for fill-if-empty and a ``paid_at`` marker
    the writer resolves as coalesce(paid_at, now()).
    """
    if current_status == PAID:
        return _no_change(current_status, "already paid")
    if current_status not in PAYABLE_STATUSES:
        return _no_change(current_status, f"status {current_status} is not payable")

    patch = {"paid_at": True}
    if payment_intent_id:
        patch["stripe_payment_intent_id"] = payment_intent_id
    if checkout_session_id:
        patch["stripe_checkout_session_id"] = checkout_session_id
    return Transition(current_status=current_status, next_status=PAID, patch=patch, reason="payment succeeded")


def apply_payment_failed(current_status: Optional[str]) -> Transition:
    # Failed attempts never move the invoice; the payer can retry
    return _no_change(current_status, "payment failed; status kept")


def is_partial_refund(amount: Any, amount_refunded: Any) -> bool:
    amount = amount if isinstance(amount, int) and not isinstance(amount, bool) else 0
    amount_refunded = amount_refunded if isinstance(amount_refunded, int) and not isinstance(amount_refunded, bool) else 0
    return amount > 0 and 0 < amount_refunded < amount


def apply_charge_refunded(current_status: Optional[str], amount: Any, amount_refunded: Any) -> Transition:
    if is_partial_refund(amount, amount_refunded):
        return _no_change(current_status, "partial refund keeps invoice paid")
    if current_status != PAID:
        return _no_change(current_status, f"refund ignored for status {current_status}")
    return Transition(current_status=current_status, next_status=REFUNDED, reason="charge fully refunded")


def apply_dispute_created(current_status: Optional[str]) -> Transition:
    if current_status != PAID:
        return _no_change(current_status, f"dispute ignored for status {current_status}")
    return Transition(current_status=current_status, next_status=DISPUTED, reason="dispute opened")


def apply_dispute_closed(current_status: Optional[str], dispute_status: Optional[str]) -> Transition:
    """lost -> dispute_lost; won or warning_closed -> paid"""
    if current_status != DISPUTED:
        return _no_change(current_status, f"dispute close ignored for status {current_status}")
    outcome = (dispute_status or "").strip().lower()
    next_status = DISPUTE_LOST if outcome == "lost" else PAID
    return Transition(current_status=current_status, next_status=next_status, reason=f"dispute closed ({outcome or 'unknown'})")
