"""Fee calculator tests"""
import pytest
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP

from lateless.models.workspace import WorkspacePricingSettings
from lateless.services.fee_service import (
    PLAN_FEE_SCHEDULES, PlanFeeSchedule, ProcessingUpliftConfig, PricingFeesMigrationRequired,
    assert_pricing_fees_schema_ready, compute_invoice_fee_breakdown,
    compute_invoice_fee_breakdown_for_workspace, compute_platform_fee_amount,
    compute_processing_uplift_amount, fetch_workspace_pricing_settings, normalize_cents,
    normalize_plan, resolve_effective_plan, resolve_workspace_plan, upsert_workspace_pricing_settings
)

UPLIFT = ProcessingUpliftConfig(enabled_by_default=True, fixed_cents=30, percent=2.9)


@pytest.mark.critical
class TestProcessingUplift:
    """Gross-up of the processor fee onto the payable amount"""

    def test_uplift_example(self):
        """10000 + 30 grossed up at 2.9% is 10330"""
        assert compute_processing_uplift_amount(10000, UPLIFT) == 330

    def test_uplift_on_zero_base_covers_fixed_fee(self):
        assert compute_processing_uplift_amount(0, UPLIFT) == 31

    def test_payable_is_smallest_amount_covering_processor_fee(self):
        """payable*(1-rate) >= base+fixed and payable-1 would fall short"""
        for base in range(0, 20000, 137):
            payable = base + compute_processing_uplift_amount(base, UPLIFT)
            assert payable * 971 >= (base + 30) * 1000
            assert (payable - 1) * 971 < (base + 30) * 1000

    def test_ceiling_and_rounded_fee_agree_at_10000(self):
        """Ceiling gross-up is authoritative; the rounded-fee check agrees with it at 10000"""
        base = 10000
        payable = base + compute_processing_uplift_amount(base, UPLIFT)
        ceiling = int((Decimal(base + 30) / Decimal("0.971")).to_integral_value(rounding=ROUND_CEILING))

        def rounded_net(amount):
            fee = int((Decimal(amount) * Decimal("0.029")).to_integral_value(rounding=ROUND_HALF_UP))
            return amount - fee - 30

        assert payable == ceiling == 10330
        assert rounded_net(payable) >= base
        assert rounded_net(payable - 1) < base

    @pytest.mark.parametrize("percent", [0, -1, 100, 150])
    def test_degenerate_rate_falls_back_to_fixed_fee(self, percent):
        config = ProcessingUpliftConfig(enabled_by_default=True, fixed_cents=30, percent=percent)
        assert compute_processing_uplift_amount(10000, config) == 30

    def test_disabled_uplift_leaves_payable_equal_to_base(self):
        for base in (0, 1, 999, 10000, 123456):
            breakdown = compute_invoice_fee_breakdown(base, False, "free", uplift_config=UPLIFT)
            assert breakdown.processing_uplift_amount == 0
            assert breakdown.payable_amount == base

    def test_uplift_config_read_from_settings_by_default(self):
        """Defaults are 30 cents + 2.9%"""
        assert compute_processing_uplift_amount(10000) == 330


@pytest.mark.critical
class TestPlatformFee:
    """Platform fee on the base amount"""

    def test_injected_schedule_example(self):
        schedules = {"pro": PlanFeeSchedule(fixed_cents=0, percent=1.5, cap_cents=500)}
        breakdown = compute_invoice_fee_breakdown(10000, False, "pro", schedules=schedules)
        assert breakdown.platform_fee_amount == 150
        assert breakdown.payable_amount == 10000
        assert breakdown.merchant_net_amount == 9850

    def test_default_schedules(self):
        assert compute_platform_fee_amount(10000, "free") == 210
        assert compute_platform_fee_amount(10000, "solo") == 145
        assert compute_platform_fee_amount(10000, "pro") == 100
        assert compute_platform_fee_amount(10000, "studio") == 60

    def test_fee_is_capped(self):
        assert compute_platform_fee_amount(1_000_000, "free") == PLAN_FEE_SCHEDULES["free"].cap_cents

    def test_percent_part_rounds_half_up(self):
        """125 * 0.4% = 0.5 rounds to 1"""
        assert compute_platform_fee_amount(125, "studio") == 21

    def test_fee_monotonic_and_bounded(self):
        for plan, schedule in PLAN_FEE_SCHEDULES.items():
            previous = 0
            for base in range(0, 400000, 997):
                fee = compute_platform_fee_amount(base, plan)
                assert previous <= fee <= schedule.cap_cents
                previous = fee

    def test_fee_independent_of_uplift(self):
        with_uplift = compute_invoice_fee_breakdown(10000, True, "free", uplift_config=UPLIFT)
        without_uplift = compute_invoice_fee_breakdown(10000, False, "free", uplift_config=UPLIFT)
        assert with_uplift.platform_fee_amount == without_uplift.platform_fee_amount

    def test_unknown_plan_uses_free_schedule(self):
        assert compute_platform_fee_amount(10000, "enterprise") == compute_platform_fee_amount(10000, "free")


@pytest.mark.high
class TestFeeBreakdown:
    """Breakdown value object and input normalization"""

    def test_breakdown_fields(self):
        breakdown = compute_invoice_fee_breakdown(10000, True, "free", uplift_config=UPLIFT)
        assert breakdown.to_dict() == {
            "base_amount": 10000,
            "processing_uplift_amount": 330,
            "payable_amount": 10330,
            "platform_fee_amount": 210,
            "merchant_net_amount": 9790,
            "processing_uplift_enabled": True,
            "plan": "free",
        }

    def test_merchant_net_never_negative(self):
        for base in (0, 10, 59, 60, 61, 5000):
            breakdown = compute_invoice_fee_breakdown(base, True, "free", uplift_config=UPLIFT)
            assert breakdown.merchant_net_amount == max(0, base - breakdown.platform_fee_amount)
            assert breakdown.merchant_net_amount >= 0

    def test_deterministic(self):
        first = compute_invoice_fee_breakdown(4321, True, "solo", uplift_config=UPLIFT)
        second = compute_invoice_fee_breakdown(4321, True, "solo", uplift_config=UPLIFT)
        assert first == second

    def test_negative_base_clamped_to_zero(self):
        breakdown = compute_invoice_fee_breakdown(-500, False, "free")
        assert breakdown.base_amount == 0
        assert breakdown.payable_amount == 0
        assert breakdown.merchant_net_amount == 0

    @pytest.mark.parametrize("value,expected", [
        (float("nan"), 0),
        (float("inf"), 0),
        (None, 0),
        ("abc", 0),
        (-5, 0),
        (2.5, 3),
        (2.4, 2),
        (100, 100),
    ])
    def test_normalize_cents(self, value, expected):
        assert normalize_cents(value) == expected

    def test_normalize_plan(self):
        assert normalize_plan(" PRO ") == "pro"
        assert normalize_plan("") == "free"
        assert normalize_plan(None) == "free"
        assert normalize_plan("gold") == "free"


@pytest.mark.high
class TestEffectivePlan:
    """Paid plans only count while the subscription is live"""

    @pytest.mark.parametrize("plan,status,expected", [
        ("pro", "active", "pro"),
        ("studio", "trialing", "studio"),
        ("pro", "past_due", "free"),
        ("solo", "canceled", "free"),
        ("solo", None, "free"),
        ("bogus", "active", "free"),
        (None, None, "free"),
    ])
    def test_resolve_effective_plan(self, plan, status, expected):
        assert resolve_effective_plan(plan, status) == expected


@pytest.mark.high
class TestWorkspacePricing:
    """Workspace pricing settings and plan resolution"""

    def test_missing_settings_use_default(self, workspace, db_session):
        assert fetch_workspace_pricing_settings(workspace.id, db_session) is True

    def test_upsert_settings(self, workspace, db_session):
        assert upsert_workspace_pricing_settings(workspace.id, False, db_session) is False
        assert fetch_workspace_pricing_settings(workspace.id, db_session) is False

        assert upsert_workspace_pricing_settings(workspace.id, True, db_session) is True
        rows = db_session.query(WorkspacePricingSettings).filter(
            WorkspacePricingSettings.workspace_id == workspace.id
        ).all()
        assert len(rows) == 1
        assert rows[0].processing_uplift_enabled is True

    def test_upsert_unknown_workspace_raises(self, db_session):
        with pytest.raises(ValueError):
            upsert_workspace_pricing_settings("missing", True, db_session)

    def test_workspace_plan_follows_owner_subscription(self, workspace, merchant, db_session):
        assert resolve_workspace_plan(workspace.id, db_session) == "free"

        merchant.plan = "pro"
        merchant.subscription_status = "active"
        db_session.commit()
        assert resolve_workspace_plan(workspace.id, db_session) == "pro"

        merchant.subscription_status = "unpaid"
        db_session.commit()
        assert resolve_workspace_plan(workspace.id, db_session) == "free"

    def test_unknown_workspace_is_free(self, db_session):
        assert resolve_workspace_plan("missing", db_session) == "free"
        assert resolve_workspace_plan(None, db_session) == "free"

    def test_breakdown_for_workspace(self, workspace, db_session):
        breakdown = compute_invoice_fee_breakdown_for_workspace(workspace.id, 10000, db_session)
        assert breakdown.processing_uplift_amount == 330
        assert breakdown.payable_amount == 10330
        assert breakdown.platform_fee_amount == 210
        assert breakdown.plan == "free"

    def test_schema_ready(self, db_session):
        assert_pricing_fees_schema_ready(db_session)

    def test_schema_missing_pricing_table(self, database, db_session):
        WorkspacePricingSettings.__table__.drop(database.engine)
        with pytest.raises(PricingFeesMigrationRequired):
            assert_pricing_fees_schema_ready(db_session)
