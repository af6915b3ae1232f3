"""Stripe API routes"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from lateless.core.config import settings
from lateless.db.session import get_db
from lateless.schemas.billing import (
    ConnectResyncResponse, ReconcileRequest, ReconcileResponse, WebhookEventResponse
)
from lateless.services.billing_sync_service import (
    BillingSyncError, WEBHOOK_EVENT_STATUSES, list_webhook_events,
    reconcile_subscription, resync_connect_account
)
from lateless.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    The body is read as raw bytes; signature verification fails on re-serialized JSON.
    Duplicates answer 200, processing failures answer 500.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    outcome = process_stripe_webhook(payload, sig_header, db)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_body())


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(body: ReconcileRequest, db: Session = Depends(get_db)):
    """Re-sync a user's plan from a checkout session or subscription id"""
    try:
        return reconcile_subscription(db, session_id=body.session_id, subscription_id=body.subscription_id)
    except BillingSyncError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())


@router.post("/connect-resync/{user_id}", response_model=ConnectResyncResponse)
def connect_resync(user_id: str, db: Session = Depends(get_db)):
    """Re-read payout readiness of the user's connected account"""
    try:
        return resync_connect_account(user_id, db)
    except BillingSyncError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())


@router.get("/events", response_model=List[WebhookEventResponse])
def get_webhook_events(
    status: str = Query(None, description="received, processed or failed"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """Recent Stripe webhook event records for debugging"""
    if status and status not in WEBHOOK_EVENT_STATUSES:
        return JSONResponse(
            status_code=400,
            content={"ok": False, "code": "INVALID_STATUS",
                     "message": f"status must be one of: {', '.join(WEBHOOK_EVENT_STATUSES)}"}
        )
    return list_webhook_events(db, status=status, limit=limit)


@router.get("/config")
def get_stripe_config():
    """Publishable key for the frontend"""
    return {
        "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
        "test_mode": settings.stripe_is_test_mode,
    }
