"""Invoice status transition tests"""
import pytest

from lateless.services.invoice_transitions import (
    apply_charge_refunded, apply_dispute_closed, apply_dispute_created,
    apply_payment_failed, apply_payment_succeeded, is_partial_refund
)


@pytest.mark.critical
class TestPaymentTransitions:

    @pytest.mark.parametrize("status", ["pending", "overdue", "failed"])
    def test_payment_succeeded_marks_payable_invoice_paid(self, status):
        transition = apply_payment_succeeded(status, payment_intent_id="pi_1", checkout_session_id="cs_1")
        assert transition.changed
        assert transition.next_status == "paid"
        assert transition.expected_status == status
        assert transition.patch == {
            "paid_at": True,
            "stripe_payment_intent_id": "pi_1",
            "stripe_checkout_session_id": "cs_1",
        }

    def test_payment_succeeded_is_idempotent(self):
        transition = apply_payment_succeeded("paid", payment_intent_id="pi_1")
        assert not transition.changed
        assert transition.next_status == "paid"

    @pytest.mark.parametrize("status", ["refunded", "disputed", "dispute_lost", "canceled"])
    def test_payment_succeeded_does_not_reopen_settled_invoice(self, status):
        assert not apply_payment_succeeded(status).changed

    def test_payment_failed_never_changes_status(self):
        for status in ("pending", "paid", "failed"):
            transition = apply_payment_failed(status)
            assert not transition.changed
            assert transition.next_status == status


@pytest.mark.critical
class TestRefundTransitions:

    def test_full_refund_of_paid_invoice(self):
        transition = apply_charge_refunded("paid", 10330, 10330)
        assert transition.changed
        assert transition.next_status == "refunded"
        assert transition.expected_status == "paid"

    def test_partial_refund_keeps_paid(self):
        transition = apply_charge_refunded("paid", 10330, 5000)
        assert not transition.changed
        assert transition.next_status == "paid"

    def test_refund_with_unknown_amount_is_full(self):
        assert apply_charge_refunded("paid", None, None).next_status == "refunded"

    @pytest.mark.parametrize("status", ["pending", "refunded", "disputed"])
    def test_refund_only_applies_to_paid(self, status):
        assert not apply_charge_refunded(status, 100, 100).changed

    def test_is_partial_refund(self):
        assert is_partial_refund(100, 50)
        assert not is_partial_refund(100, 100)
        assert not is_partial_refund(100, 0)
        assert not is_partial_refund(0, 50)
        assert not is_partial_refund(None, 50)


@pytest.mark.critical
class TestDisputeTransitions:

    def test_dispute_created_on_paid(self):
        transition = apply_dispute_created("paid")
        assert transition.changed
        assert transition.next_status == "disputed"

    @pytest.mark.parametrize("status", ["refunded", "pending", "disputed", "dispute_lost"])
    def test_dispute_created_ignored_unless_paid(self, status):
        assert not apply_dispute_created(status).changed

    def test_dispute_lost(self):
        transition = apply_dispute_closed("disputed", "lost")
        assert transition.next_status == "dispute_lost"
        assert transition.expected_status == "disputed"

    @pytest.mark.parametrize("outcome", ["won", "warning_closed", " WON "])
    def test_dispute_won_reverts_to_paid(self, outcome):
        assert apply_dispute_closed("disputed", outcome).next_status == "paid"

    def test_dispute_closed_ignored_unless_disputed(self):
        assert not apply_dispute_closed("refunded", "lost").changed
        assert not apply_dispute_closed("paid", "won").changed
