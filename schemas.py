# schemas.py
from __future__ import annotations

from typing import Annotated, Optional, List, Dict, Any, Literal, Union
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, ConfigDict, field_validator

from models import FulfillmentStage

# =========================
# Base model configurations
# =========================

class ORMBase(BaseModel):
    """Base for models mapped to SQLAlchemy objects."""
    model_config = ConfigDict(from_attributes=True)

class APIBase(BaseModel):
    """Base for models mapped to external API payloads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

class ActionBase(BaseModel):
    """Base for staff fulfillment actions."""
    model_config = ConfigDict(extra="forbid")
    # Version of the snapshot the caller acted on; a mismatch is a Conflict.
    expected_version: Optional[int] = None


# ======================================================
# Shopify order webhook payload
# ======================================================

class ShopifyAddress(APIBase):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    province_code: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None

class ShopifyCustomer(APIBase):
    id: int
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    default_address: Optional[ShopifyAddress] = None

class ShopifyDiscountCode(APIBase):
    code: str
    amount: Optional[str] = None
    type: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _clip_code(cls, v: str) -> str:
        return v[:100]

class ShopifyShippingLine(APIBase):
    id: Optional[Union[int, str]] = None
    title: Optional[str] = None
    code: Optional[str] = None
    price: Optional[Decimal] = None
    discounted_price: Optional[Decimal] = None

class ShopifyLineItem(APIBase):
    id: Union[int, str]
    variant_id: int
    product_id: Optional[Union[int, str]] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    vendor: Optional[str] = Field(None, max_length=255)
    price: Decimal
    compare_at_price: Optional[Decimal] = None
    quantity: int = Field(..., ge=1)

class ShopifyOrderWebhook(APIBase):
    id: int
    created_at: datetime
    currency: str
    financial_status: str
    line_items: List[ShopifyLineItem]
    total_price: Decimal

    source_name: Optional[str] = None
    user_id: Optional[int] = None
    location_id: Optional[Union[int, str]] = None
    order_number: Optional[int] = None
    name: Optional[str] = None
    subtotal_price: Optional[Decimal] = None
    total_discounts: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    current_subtotal_price: Optional[Decimal] = None
    current_total_discounts: Optional[Decimal] = None
    current_total_tax: Optional[Decimal] = None
    current_total_price: Optional[Decimal] = None
    fulfillment_status: Optional[str] = None
    email: Optional[str] = None
    contact_email: Optional[str] = None
    phone: Optional[str] = None

    shipping_address: Optional[ShopifyAddress] = None
    billing_address: Optional[ShopifyAddress] = None
    discount_codes: List[ShopifyDiscountCode] = Field(default_factory=list)
    discount_applications: List[Dict[str, Any]] = Field(default_factory=list)
    shipping_lines: List[ShopifyShippingLine] = Field(default_factory=list)
    customer: Optional[ShopifyCustomer] = None

    @property
    def is_paid(self) -> bool:
        return self.financial_status.strip().lower() == "paid"


# ======================================================
# Staff fulfillment actions (discriminated on "action")
# ======================================================

class SampleRequest(BaseModel):
    sample_free_issue_item_id: int
    quantity: int = Field(..., ge=1, le=99)

class AddSamples(ActionBase):
    action: Literal["add_samples"]
    samples: List[SampleRequest] = Field(default_factory=list, max_length=20)

class AdvanceToPrint(ActionBase):
    action: Literal["advance_to_print"]

class PutOnHold(ActionBase):
    action: Literal["put_on_hold"]
    hold_reason_id: Optional[int] = None

class MarkReady(ActionBase):
    action: Literal["mark_ready"]

class RevertHold(ActionBase):
    action: Literal["revert_hold"]

class Dispatch(ActionBase):
    action: Literal["dispatch"]
    rider_id: Optional[int] = None
    courier_service_id: Optional[int] = None

class MarkDelivered(ActionBase):
    action: Literal["mark_delivered"]

class MarkInvoiceComplete(ActionBase):
    action: Literal["mark_invoice_complete"]

class CompletePos(ActionBase):
    action: Literal["complete_pos"]

FulfillmentAction = Annotated[
    Union[AddSamples, AdvanceToPrint, PutOnHold, MarkReady, RevertHold,
          Dispatch, MarkDelivered, MarkInvoiceComplete, CompletePos],
    Field(discriminator="action"),
]


# ======================================================
# Order snapshot (read-side projection)
# ======================================================

class LineItem(ORMBase):
    shopify_line_item_id: str
    shopify_variant_id: Optional[str] = None
    product_item_id: Optional[int] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    quantity: int
    price: Decimal
    compare_at_price: Optional[Decimal] = None

class SampleAllocation(ORMBase):
    id: int
    sample_free_issue_item_id: int
    quantity: int
    added_by_id: Optional[int] = None

class Remark(ORMBase):
    id: int
    stage: FulfillmentStage
    type: str
    content: str
    show_on_invoice: bool
    created_at: Optional[datetime] = None

class OrderSnapshot(ORMBase):
    id: int
    shopify_order_id: str
    name: Optional[str] = None
    order_number: Optional[str] = None
    source_name: str
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    total_price: Decimal
    subtotal_price: Optional[Decimal] = None
    total_discounts: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    total_shipping: Optional[Decimal] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    assigned_merchant_id: Optional[int] = None
    customer_id: Optional[int] = None

    fulfillment_stage: FulfillmentStage
    version: int
    sample_free_issue_complete_at: Optional[datetime] = None
    sample_free_issue_complete_by_id: Optional[int] = None
    print_count: int
    last_printed_at: Optional[datetime] = None
    last_printed_by_id: Optional[int] = None
    package_on_hold_at: Optional[datetime] = None
    package_hold_reason_id: Optional[int] = None
    package_ready_at: Optional[datetime] = None
    package_ready_by_id: Optional[int] = None
    dispatched_at: Optional[datetime] = None
    dispatched_by_id: Optional[int] = None
    dispatched_by_rider_id: Optional[int] = None
    dispatched_by_courier_service_id: Optional[int] = None
    delivery_complete_at: Optional[datetime] = None
    delivery_complete_by_id: Optional[int] = None
    invoice_complete_at: Optional[datetime] = None
    invoice_complete_by_id: Optional[int] = None

    line_items: List[LineItem] = Field(default_factory=list)
    sample_free_issues: List[SampleAllocation] = Field(default_factory=list)
    remarks: List[Remark] = Field(default_factory=list)

class ActionResult(BaseModel):
    success: bool = True
    order: OrderSnapshot


# ======================================================
# Remarks
# ======================================================

class RemarkCreate(BaseModel):
    stage: FulfillmentStage
    type: Literal["internal", "external"]
    content: str = Field(..., min_length=1, max_length=2000)
    show_on_invoice: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

class RemarkUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)
    show_on_invoice: bool

    @field_validator("content", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


# ======================================================
# Failed webhooks and rider delivery
# ======================================================

class FailedWebhook(ORMBase):
    id: int
    company_location_id: int
    shopify_order_id: Optional[str] = None
    shopify_topic: Optional[str] = None
    error_message: str
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

class FailedWebhookDetail(FailedWebhook):
    error_stack: Optional[str] = None
    raw_payload: Any = None

class RiderDeliveryConfirm(BaseModel):
    confirmed: bool = False
