"""Invoice fee computation: processing uplift, platform fee and payable amount.

The calculator functions are pure and referentially transparent; the same
inputs always give the same breakdown, so a preview rendered today matches the
amounts persisted at checkout. The workspace helpers at the bottom only read
the inputs (uplift preference, effective plan) from the database.
"""
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from lateless.core.config import settings
from lateless.models.user import User
from lateless.models.workspace import Workspace, WorkspacePricingSettings

logger = logging.getLogger(__name__)

PLAN_IDS = ("free", "solo", "pro", "studio")
PAID_PLAN_IDS = ("solo", "pro", "studio")
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")

PRICING_FEES_MIGRATION_REQUIRED_CODE = "PRICING_FEES_MIGRATION_REQUIRED"


class PricingFeesMigrationRequired(Exception):
    """The database is missing the pricing/fee schema"""
    code = PRICING_FEES_MIGRATION_REQUIRED_CODE

    def __init__(self, message: str = PRICING_FEES_MIGRATION_REQUIRED_CODE):
        super().__init__(message)


@dataclass(frozen=True)
class PlanFeeSchedule:
    fixed_cents: int
    percent: float
    cap_cents: int


PLAN_FEE_SCHEDULES: Dict[str, PlanFeeSchedule] = {
    "free": PlanFeeSchedule(fixed_cents=60, percent=1.5, cap_cents=1500),
    "solo": PlanFeeSchedule(fixed_cents=45, percent=1.0, cap_cents=1000),
    "pro": PlanFeeSchedule(fixed_cents=30, percent=0.7, cap_cents=700),
    "studio": PlanFeeSchedule(fixed_cents=20, percent=0.4, cap_cents=500),
}


@dataclass(frozen=True)
class ProcessingUpliftConfig:
    enabled_by_default: bool
    fixed_cents: int
    percent: float
    payer_label: str = "Payment processing included"


@dataclass(frozen=True)
class FeeBreakdown:
    base_amount: int
    processing_uplift_amount: int
    payable_amount: int
    platform_fee_amount: int
    # Ignores the processor's own transaction fee; see Invoice.stripe_net_amount
    # for the provider-confirmed figure.
    merchant_net_amount: int
    processing_uplift_enabled: bool
    plan: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (ArithmeticError, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def _round_half_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def normalize_cents(value: Any) -> int:
    """Clamp an amount to a non-negative integer; non-finite input becomes 0"""
    number = _to_decimal(value)
    if number is None:
        return 0
    return max(0, _round_half_up(number))


def normalize_percent(value: Any) -> float:
    number = _to_decimal(value)
    if number is None:
        return 0.0
    return max(0.0, float(number))


def normalize_plan(plan: Optional[str]) -> str:
    if not plan:
        return "free"
    normalized = plan.strip().lower()
    return normalized if normalized in PLAN_IDS else "free"


def is_active_subscription(status: Optional[str]) -> bool:
    return status in ACTIVE_SUBSCRIPTION_STATUSES


def resolve_effective_plan(plan: Optional[str], subscription_status: Optional[str]) -> str:
    """Paid plans only apply while the subscription is active or trialing"""
    normalized = normalize_plan(plan)
    if normalized == "free":
        return "free"
    return normalized if is_active_subscription(subscription_status) else "free"


def get_processing_uplift_config() -> ProcessingUpliftConfig:
    return ProcessingUpliftConfig(
        enabled_by_default=settings.PROCESSING_UPLIFT_ENABLED_DEFAULT,
        fixed_cents=normalize_cents(settings.PROCESSING_UPLIFT_FIXED_CENTS),
        percent=normalize_percent(settings.PROCESSING_UPLIFT_PERCENT),
    )


def compute_processing_uplift_amount(
    base_amount: Any,
    uplift_config: Optional[ProcessingUpliftConfig] = None
) -> int:
    """Gross-up surcharge so the processor's percent+fixed fee on the payable
    amount still leaves the base amount plus the fixed fee.

    A rate of 0% or 100% and above cannot be grossed up and falls back to the
    fixed fee alone.
    """
    config = uplift_config or get_processing_uplift_config()
    base = normalize_cents(base_amount)
    fixed = normalize_cents(config.fixed_cents)
    rate = Decimal(str(normalize_percent(config.percent))) / 100

    if rate <= 0 or rate >= 1:
        return fixed

    payable = int(((base + fixed) / (1 - rate)).to_integral_value(rounding=ROUND_CEILING))
    return max(0, payable - base)


def compute_platform_fee_amount(
    base_amount: Any,
    plan: str,
    schedules: Optional[Mapping[str, PlanFeeSchedule]] = None
) -> int:
    """Platform fee on the base amount: fixed + percent, capped, never negative"""
    schedule = (schedules or PLAN_FEE_SCHEDULES)[normalize_plan(plan)]
    base = normalize_cents(base_amount)
    fixed = normalize_cents(schedule.fixed_cents)
    percent = Decimal(str(normalize_percent(schedule.percent)))
    cap = normalize_cents(schedule.cap_cents)

    percent_amount = _round_half_up(base * percent / 100)
    return max(0, min(fixed + percent_amount, cap))


def compute_invoice_fee_breakdown(
    base_amount: Any,
    processing_uplift_enabled: bool,
    plan: str = "free",
    schedules: Optional[Mapping[str, PlanFeeSchedule]] = None,
    uplift_config: Optional[ProcessingUpliftConfig] = None
) -> FeeBreakdown:
    base = normalize_cents(base_amount)
    plan = normalize_plan(plan)
    uplift = compute_processing_uplift_amount(base, uplift_config) if processing_uplift_enabled else 0
    platform_fee = compute_platform_fee_amount(base, plan, schedules)

    return FeeBreakdown(
        base_amount=base,
        processing_uplift_amount=uplift,
        payable_amount=base + uplift,
        platform_fee_amount=platform_fee,
        merchant_net_amount=max(0, base - platform_fee),
        processing_uplift_enabled=bool(processing_uplift_enabled),
        plan=plan,
    )


# ============================================================================
# WORKSPACE CONTEXT
# ============================================================================

def assert_pricing_fees_schema_ready(db: Session) -> None:
    """Raise PricingFeesMigrationRequired unless the fee schema exists"""
    inspector = inspect(db.get_bind())
    if not inspector.has_table("workspace_pricing_settings") or not inspector.has_table("invoices"):
        raise PricingFeesMigrationRequired()

    invoice_columns = {column["name"] for column in inspector.get_columns("invoices")}
    required = {"processing_uplift_amount", "payable_amount", "platform_fee_amount"}
    if not required.issubset(invoice_columns):
        logger.error(f"Invoice fee columns missing: {sorted(required - invoice_columns)}")
        raise PricingFeesMigrationRequired()


def fetch_workspace_pricing_settings(workspace_id: str, db: Session) -> bool:
    """Return whether processing uplift is enabled for the workspace"""
    row = db.query(WorkspacePricingSettings).filter(
        WorkspacePricingSettings.workspace_id == workspace_id
    ).first()
    if row is None or row.processing_uplift_enabled is None:
        return get_processing_uplift_config().enabled_by_default
    return row.processing_uplift_enabled


def upsert_workspace_pricing_settings(workspace_id: str, processing_uplift_enabled: bool, db: Session) -> bool:
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if not workspace:
        raise ValueError("Workspace not found")

    row = db.query(WorkspacePricingSettings).filter(
        WorkspacePricingSettings.workspace_id == workspace_id
    ).first()
    if row is None:
        row = WorkspacePricingSettings(workspace_id=workspace_id)
        db.add(row)
    row.processing_uplift_enabled = bool(processing_uplift_enabled)
    db.commit()
    logger.info(f"Workspace {workspace_id} processing uplift set to {row.processing_uplift_enabled}")
    return row.processing_uplift_enabled


def resolve_workspace_plan(workspace_id: Optional[str], db: Session) -> str:
    """Effective plan of the workspace owner; free when unknown"""
    if not workspace_id:
        return "free"
    owner = db.query(User).join(Workspace, Workspace.owner_user_id == User.id).filter(
        Workspace.id == workspace_id
    ).first()
    if not owner:
        return "free"
    return resolve_effective_plan(owner.plan, owner.subscription_status)


def compute_invoice_fee_breakdown_for_workspace(workspace_id: str, base_amount: Any, db: Session) -> FeeBreakdown:
    assert_pricing_fees_schema_ready(db)
    return compute_invoice_fee_breakdown(
        base_amount,
        fetch_workspace_pricing_settings(workspace_id, db),
        resolve_workspace_plan(workspace_id, db),
    )
