"""Estimate the processor's own fee for a charge from a workspace's settled invoices.

Fits ``fee = fixed + gross * percent_bp / 10000`` to recently paid invoices
whose processing fee was confirmed by Stripe. The result is always an
estimate; the authoritative figure only exists once a charge settles.
"""
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from statistics import median
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from lateless.models.invoice import Invoice, InvoiceStatus
from lateless.services.fee_service import normalize_cents

logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 50
MIN_SAMPLE_COUNT = 10
MIN_GROSS_FOR_PERCENT_CENTS = 5000
LOOKBACK_DAYS = 90


@dataclass(frozen=True)
class ProcessingFeeModel:
    percent_bp: int
    fixed_cents: int


@dataclass(frozen=True)
class ProcessingFeeEstimate:
    ok: bool
    fee_estimate_cents: Optional[int]
    low_cents: Optional[int]
    high_cents: Optional[int]
    sample_count: int
    model: Optional[ProcessingFeeModel]
    is_estimate: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _round(value: float) -> int:
    # Halves round toward positive infinity, also for negative residuals
    return math.floor(value + 0.5)


def _percentile(values: Sequence[int], p: float) -> int:
    if not values:
        return 0
    ordered = sorted(values)
    index = max(0, min(len(ordered) - 1, math.floor((len(ordered) - 1) * p)))
    return ordered[index]


def not_enough_data(sample_count: int) -> ProcessingFeeEstimate:
    return ProcessingFeeEstimate(
        ok=False,
        fee_estimate_cents=None,
        low_cents=None,
        high_cents=None,
        sample_count=sample_count,
        model=None,
    )


def estimate_from_samples(samples: Sequence[Tuple[int, int]], charge_amount: Any) -> ProcessingFeeEstimate:
    """Fit the fee model to (fee, gross) samples and apply it to ``charge_amount``"""
    amount = normalize_cents(charge_amount)
    usable = [
        (fee, gross) for fee, gross in samples
        if isinstance(fee, int) and isinstance(gross, int) and gross > 0
    ]
    sample_count = len(usable)
    if amount <= 0 or sample_count < MIN_SAMPLE_COUNT:
        return not_enough_data(sample_count)

    percent_candidates = [
        _round(fee * 10000 / gross) for fee, gross in usable if gross >= MIN_GROSS_FOR_PERCENT_CENTS
    ]
    if not percent_candidates:
        return not_enough_data(sample_count)
    percent_bp = _round(median(percent_candidates))

    fixed_cents = _round(median([fee - _round(gross * percent_bp / 10000) for fee, gross in usable]))

    residuals = [fee - (fixed_cents + _round(gross * percent_bp / 10000)) for fee, gross in usable]
    fee_estimate = fixed_cents + _round(amount * percent_bp / 10000)
    low = normalize_cents(fee_estimate + _percentile(residuals, 0.1))
    high = max(low, normalize_cents(fee_estimate + _percentile(residuals, 0.9)))

    return ProcessingFeeEstimate(
        ok=True,
        fee_estimate_cents=normalize_cents(fee_estimate),
        low_cents=low,
        high_cents=high,
        sample_count=sample_count,
        model=ProcessingFeeModel(percent_bp=percent_bp, fixed_cents=fixed_cents),
    )


def fetch_fee_samples(
    workspace_id: str,
    currency: str,
    db: Session,
    now: Optional[datetime] = None
) -> List[Tuple[int, int]]:
    """(confirmed fee, payable amount) of recent paid invoices, newest first"""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=LOOKBACK_DAYS)
    rows = db.query(Invoice.stripe_processing_fee_amount, Invoice.payable_amount).filter(
        Invoice.workspace_id == workspace_id,
        Invoice.status == InvoiceStatus.PAID.value,
        Invoice.paid_at >= cutoff,
        func.lower(Invoice.currency) == currency,
        Invoice.stripe_processing_fee_amount.isnot(None),
        Invoice.payable_amount.isnot(None)
    ).order_by(Invoice.paid_at.desc()).limit(SAMPLE_LIMIT).all()
    return [(fee, gross) for fee, gross in rows]


def estimate_workspace_processing_fee(
    workspace_id: str,
    currency: str,
    charge_amount: Any,
    db: Session,
    now: Optional[datetime] = None
) -> ProcessingFeeEstimate:
    normalized_currency = (currency or "").strip().lower()
    if not normalized_currency or normalize_cents(charge_amount) <= 0:
        return not_enough_data(0)

    samples = fetch_fee_samples(workspace_id, normalized_currency, db, now)
    estimate = estimate_from_samples(samples, charge_amount)
    logger.debug(f"Processing fee estimate for workspace {workspace_id}: {estimate}")
    return estimate
