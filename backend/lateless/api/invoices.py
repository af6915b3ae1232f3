"""Invoice payment API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from lateless.core.config import settings
from lateless.core.security import require_checkout_rate_limit
from lateless.db.session import get_db
from lateless.models.invoice import Invoice
from lateless.schemas.billing import CheckoutResponse, InvoiceFeesResponse
from lateless.services.checkout_service import CheckoutError, create_invoice_checkout
from lateless.services.fee_service import (
    PricingFeesMigrationRequired, PRICING_FEES_MIGRATION_REQUIRED_CODE,
    compute_invoice_fee_breakdown_for_workspace, get_processing_uplift_config
)

router = APIRouter(prefix="/api/invoices", tags=["invoices"])
logger = logging.getLogger(__name__)


@router.post("/{invoice_id}/pay", response_model=CheckoutResponse)
def pay_invoice(
    invoice_id: str,
    request: Request,
    _: None = Depends(require_checkout_rate_limit),
    db: Session = Depends(get_db)
):
    """Create a Stripe Checkout Session for the invoice and return its URL"""
    base_url = settings.APP_URL or str(request.base_url).rstrip("/")
    try:
        result = create_invoice_checkout(invoice_id, base_url, db)
    except CheckoutError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return {"url": result.url}


@router.get("/{invoice_id}/fees", response_model=InvoiceFeesResponse)
def get_invoice_fees(invoice_id: str, db: Session = Depends(get_db)):
    """Fee preview; the merchant net is an estimate until Stripe confirms the charge"""
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if not invoice:
        raise HTTPException(404, "Invoice not found")

    try:
        breakdown = compute_invoice_fee_breakdown_for_workspace(invoice.workspace_id, invoice.amount, db)
    except PricingFeesMigrationRequired:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "code": PRICING_FEES_MIGRATION_REQUIRED_CODE,
                     "message": "Pricing and fees require a database migration. Run migrations and retry."}
        )

    return InvoiceFeesResponse(
        invoice_id=invoice.id,
        currency=invoice.currency,
        base_amount=breakdown.base_amount,
        processing_uplift_amount=breakdown.processing_uplift_amount,
        payable_amount=breakdown.payable_amount,
        platform_fee_amount=breakdown.platform_fee_amount,
        estimated_merchant_net_amount=breakdown.merchant_net_amount,
        processing_uplift_enabled=breakdown.processing_uplift_enabled,
        processing_uplift_label=get_processing_uplift_config().payer_label if breakdown.processing_uplift_enabled else None,
        plan=breakdown.plan,
        stripe_processing_fee_amount=invoice.stripe_processing_fee_amount,
        stripe_net_amount=invoice.stripe_net_amount,
    )
