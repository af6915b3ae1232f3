"""Pydantic schemas for billing endpoints"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class PricingSettingsUpdate(BaseModel):
    processing_uplift_enabled: bool


class PricingSettingsResponse(BaseModel):
    workspace_id: str
    processing_uplift_enabled: bool
    plan: str


class InvoiceFeesResponse(BaseModel):
    invoice_id: str
    currency: str
    base_amount: int
    processing_uplift_amount: int
    payable_amount: int
    platform_fee_amount: int
    # Ignores the processor's own fee
    estimated_merchant_net_amount: int
    is_estimate: bool = True
    processing_uplift_enabled: bool
    processing_uplift_label: Optional[str] = None
    plan: str
    # Provider-confirmed once the charge has settled
    stripe_processing_fee_amount: Optional[int] = None
    stripe_net_amount: Optional[int] = None


class CheckoutResponse(BaseModel):
    url: str


class ProcessingFeeModelResponse(BaseModel):
    percent_bp: int
    fixed_cents: int


class ProcessingFeeEstimateResponse(BaseModel):
    ok: bool
    fee_estimate_cents: Optional[int] = None
    low_cents: Optional[int] = None
    high_cents: Optional[int] = None
    sample_count: int
    model: Optional[ProcessingFeeModelResponse] = None
    is_estimate: bool = True


class ReconcileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId")
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")


class ReconcileResponse(BaseModel):
    ok: bool
    source: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    plan: Optional[str] = None
    is_pro: bool
    user_ids: List[str]


class ConnectResyncResponse(BaseModel):
    ok: bool
    account_id: str
    payouts_enabled: bool
    details_submitted: bool


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    account: Optional[str] = None
    livemode: bool
    status: str
    error: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
