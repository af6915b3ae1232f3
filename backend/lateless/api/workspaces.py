"""Workspace pricing API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from lateless.core.config import settings
from lateless.db.session import get_db
from lateless.models.workspace import Workspace
from lateless.schemas.billing import (
    PricingSettingsResponse, PricingSettingsUpdate, ProcessingFeeEstimateResponse
)
from lateless.services.fee_service import (
    fetch_workspace_pricing_settings, resolve_workspace_plan, upsert_workspace_pricing_settings
)
from lateless.services.processing_estimator import estimate_workspace_processing_fee

router = APIRouter(prefix="/api/workspaces", tags=["workspaces"])
logger = logging.getLogger(__name__)


def _require_workspace(workspace_id: str, db: Session) -> Workspace:
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if not workspace:
        raise HTTPException(404, "Workspace not found")
    return workspace


@router.get("/{workspace_id}/pricing", response_model=PricingSettingsResponse)
def get_pricing_settings(workspace_id: str, db: Session = Depends(get_db)):
    _require_workspace(workspace_id, db)
    return PricingSettingsResponse(
        workspace_id=workspace_id,
        processing_uplift_enabled=fetch_workspace_pricing_settings(workspace_id, db),
        plan=resolve_workspace_plan(workspace_id, db),
    )


@router.put("/{workspace_id}/pricing", response_model=PricingSettingsResponse)
def update_pricing_settings(
    workspace_id: str,
    body: PricingSettingsUpdate,
    db: Session = Depends(get_db)
):
    try:
        enabled = upsert_workspace_pricing_settings(workspace_id, body.processing_uplift_enabled, db)
    except ValueError as e:
        raise HTTPException(404, str(e))
    return PricingSettingsResponse(
        workspace_id=workspace_id,
        processing_uplift_enabled=enabled,
        plan=resolve_workspace_plan(workspace_id, db),
    )


@router.get("/{workspace_id}/processing-fee-estimate", response_model=ProcessingFeeEstimateResponse)
def get_processing_fee_estimate(
    workspace_id: str,
    amount: int = Query(..., ge=0, description="Charge amount in minor units"),
    currency: str = Query(None, description="ISO currency code; defaults to the invoice currency"),
    db: Session = Depends(get_db)
):
    """Estimated Stripe processing fee, fitted to the workspace's settled charges"""
    _require_workspace(workspace_id, db)
    estimate = estimate_workspace_processing_fee(workspace_id, currency or settings.INVOICE_CURRENCY, amount, db)
    return estimate.to_dict()
