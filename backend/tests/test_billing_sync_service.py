"""Subscription reconcile, Connect resync and webhook event listing tests"""
import time
import pytest
import stripe
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from lateless.core.config import settings
from lateless.models.stripe_webhook_event import StripeWebhookEvent
from lateless.services import stripe_service
from lateless.services.billing_sync_service import (
    BillingSyncError, list_webhook_events, reconcile_subscription, resync_connect_account
)


def subscription_object(subscription_id="sub_1", status="active", price_id="price_pro", metadata=None):
    return {
        "id": subscription_id,
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "current_period_end": int(time.time()) + 30 * 86400,
        "items": {"data": [{"price": {"id": price_id}}]},
        "metadata": metadata or {},
    }


@pytest.fixture
def stripe_lookups():
    with patch.object(stripe_service, "retrieve_checkout_session", Mock(return_value=None)) as sessions:
        with patch.object(stripe_service, "retrieve_subscription", Mock(return_value=None)) as subscriptions:
            with patch.object(stripe_service, "retrieve_account", Mock(return_value=None)) as accounts:
                yield Mock(sessions=sessions, subscriptions=subscriptions, accounts=accounts)


@pytest.mark.high
class TestReconcileSubscription:
    """Plan re-sync from a checkout session or subscription id"""

    def test_requires_session_or_subscription(self, db_session, stripe_settings, stripe_lookups):
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, session_id="  ", subscription_id=None)
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "INVALID_REQUEST_BODY"

    def test_by_subscription_id(self, merchant, db_session, stripe_settings, stripe_lookups):
        merchant.stripe_subscription_id = "sub_1"
        db_session.commit()
        stripe_lookups.subscriptions.return_value = subscription_object()

        with patch.object(settings, "STRIPE_PRICE_PRO", "price_pro"):
            result = reconcile_subscription(db_session, subscription_id="sub_1")

        stripe_lookups.subscriptions.assert_called_once_with("sub_1")
        assert result["ok"] is True
        assert result["source"] == "manual_reconcile"
        assert result["plan"] == "pro"
        assert result["user_ids"] == [merchant.id]
        db_session.refresh(merchant)
        assert merchant.plan == "pro"
        assert merchant.is_pro is True
        assert merchant.subscription_status == "active"
        assert merchant.stripe_customer_id == "cus_1"

    def test_by_session_links_user_from_metadata(self, merchant, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.sessions.return_value = {
            "id": "cs_sub", "mode": "subscription", "payment_status": "paid",
            "subscription": "sub_2", "customer": "cus_2",
            "metadata": {"userId": merchant.id, "plan": "solo"},
        }
        stripe_lookups.subscriptions.return_value = subscription_object(
            subscription_id="sub_2", status="trialing", price_id="price_unmapped"
        )

        result = reconcile_subscription(db_session, session_id="cs_sub")

        stripe_lookups.sessions.assert_called_once_with("cs_sub")
        stripe_lookups.subscriptions.assert_called_once_with("sub_2")
        assert result["subscription_id"] == "sub_2"
        db_session.refresh(merchant)
        assert merchant.plan == "solo"
        assert merchant.subscription_status == "trialing"
        assert merchant.is_pro is True

    def test_expanded_session_subscription_is_used_directly(self, merchant, db_session, stripe_settings,
                                                            stripe_lookups):
        merchant.stripe_subscription_id = "sub_1"
        db_session.commit()
        stripe_lookups.sessions.return_value = {
            "id": "cs_sub", "mode": "subscription", "payment_status": "paid",
            "subscription": subscription_object(status="past_due", metadata={"plan": "studio"}),
            "metadata": {},
        }

        result = reconcile_subscription(db_session, session_id="cs_sub")

        stripe_lookups.subscriptions.assert_not_called()
        assert result["status"] == "past_due"
        assert result["is_pro"] is False

    def test_unpaid_session_is_rejected(self, merchant, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.sessions.return_value = {
            "id": "cs_open", "mode": "subscription", "payment_status": "unpaid", "subscription": "sub_1",
        }
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, session_id="cs_open")
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "SESSION_NOT_PAID_SUBSCRIPTION"
        stripe_lookups.subscriptions.assert_not_called()

    def test_payment_session_is_rejected(self, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.sessions.return_value = {"id": "cs_pay", "mode": "payment", "payment_status": "paid"}
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, session_id="cs_pay")
        assert exc_info.value.code == "SESSION_NOT_PAID_SUBSCRIPTION"

    def test_missing_session(self, db_session, stripe_settings, stripe_lookups):
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, session_id="cs_missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "SESSION_NOT_FOUND"

    def test_missing_subscription(self, db_session, stripe_settings, stripe_lookups):
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, subscription_id="sub_missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "SUBSCRIPTION_NOT_FOUND"

    def test_no_matching_user(self, merchant, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.subscriptions.return_value = subscription_object(subscription_id="sub_unknown")
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, subscription_id="sub_unknown")
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "USER_RESOLUTION_FAILED"
        db_session.refresh(merchant)
        assert merchant.stripe_subscription_id is None

    def test_stripe_error_is_bad_gateway(self, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.subscriptions.side_effect = stripe.APIConnectionError("network down")
        with pytest.raises(BillingSyncError) as exc_info:
            reconcile_subscription(db_session, subscription_id="sub_1")
        assert exc_info.value.status_code == 502
        assert exc_info.value.code == "STRIPE_API_ERROR"

    def test_stripe_not_configured(self, db_session, stripe_lookups):
        with patch.object(settings, "STRIPE_SECRET_KEY", ""):
            with pytest.raises(BillingSyncError) as exc_info:
                reconcile_subscription(db_session, subscription_id="sub_1")
        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "STRIPE_NOT_CONFIGURED"
        stripe_lookups.subscriptions.assert_not_called()


@pytest.mark.high
class TestResyncConnectAccount:
    """Payout readiness re-read from the connected account"""

    def test_updates_payout_flags(self, merchant, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.accounts.return_value = {
            "id": "acct_test123", "payouts_enabled": True, "details_submitted": True,
        }

        result = resync_connect_account(merchant.id, db_session)

        stripe_lookups.accounts.assert_called_once_with("acct_test123")
        assert result == {
            "ok": True,
            "account_id": "acct_test123",
            "payouts_enabled": True,
            "details_submitted": True,
        }
        db_session.refresh(merchant)
        assert merchant.stripe_connect_payouts_enabled is True
        assert merchant.stripe_connect_details_submitted is True

    def test_flags_can_be_cleared(self, merchant, db_session, stripe_settings, stripe_lookups):
        merchant.stripe_connect_payouts_enabled = True
        db_session.commit()
        stripe_lookups.accounts.return_value = {"id": "acct_test123", "payouts_enabled": False}

        result = resync_connect_account(merchant.id, db_session)

        assert result["payouts_enabled"] is False
        db_session.refresh(merchant)
        assert merchant.stripe_connect_payouts_enabled is False

    def test_unknown_user(self, db_session, stripe_settings, stripe_lookups):
        with pytest.raises(BillingSyncError) as exc_info:
            resync_connect_account("missing", db_session)
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "USER_NOT_FOUND"

    def test_user_without_connected_account(self, merchant, db_session, stripe_settings, stripe_lookups):
        merchant.stripe_connect_account_id = "  "
        db_session.commit()
        with pytest.raises(BillingSyncError) as exc_info:
            resync_connect_account(merchant.id, db_session)
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "No connected account found."
        stripe_lookups.accounts.assert_not_called()

    def test_account_missing_in_stripe(self, merchant, db_session, stripe_settings, stripe_lookups):
        with pytest.raises(BillingSyncError) as exc_info:
            resync_connect_account(merchant.id, db_session)
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "CONNECT_ACCOUNT_NOT_FOUND"

    def test_permission_error_is_bad_gateway(self, merchant, db_session, stripe_settings, stripe_lookups):
        stripe_lookups.accounts.side_effect = stripe.PermissionError("The provided key does not have access")
        with pytest.raises(BillingSyncError) as exc_info:
            resync_connect_account(merchant.id, db_session)
        assert exc_info.value.status_code == 502
        assert exc_info.value.code == "STRIPE_API_ERROR"
        db_session.refresh(merchant)
        assert merchant.stripe_connect_payouts_enabled is False


@pytest.mark.medium
class TestListWebhookEvents:
    """Recent event records for operators"""

    @pytest.fixture
    def events(self, db_session):
        now = datetime.now(timezone.utc)
        rows = [
            StripeWebhookEvent(event_id="evt_old", event_type="charge.refunded", status="failed",
                               error="boom", received_at=now - timedelta(hours=2)),
            StripeWebhookEvent(event_id="evt_mid", event_type="account.updated", status="processed",
                               received_at=now - timedelta(hours=1), processed_at=now),
            StripeWebhookEvent(event_id="evt_new", event_type="charge.succeeded", status="failed",
                               error="lookup exploded", received_at=now),
        ]
        db_session.add_all(rows)
        db_session.commit()
        return rows

    def test_newest_first(self, db_session, events):
        assert [e.event_id for e in list_webhook_events(db_session)] == ["evt_new", "evt_mid", "evt_old"]

    def test_filter_by_status(self, db_session, events):
        failed = list_webhook_events(db_session, status="failed")
        assert [e.event_id for e in failed] == ["evt_new", "evt_old"]
        assert failed[0].error == "lookup exploded"

    def test_limit(self, db_session, events):
        assert len(list_webhook_events(db_session, limit=1)) == 1
        assert len(list_webhook_events(db_session, limit=0)) == 1
