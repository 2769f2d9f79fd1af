# models.py

import enum

from sqlalchemy import (Column, Integer, String, DateTime, Text, JSON,
                        ForeignKey, NUMERIC, BOOLEAN, Enum, UniqueConstraint)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
from database import Base


# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class FulfillmentStage(str, enum.Enum):
    ORDER_RECEIVED = "order_received"
    SAMPLE_FREE_ISSUE = "sample_free_issue"
    PRINT = "print"
    READY_TO_DISPATCH = "ready_to_dispatch"
    DISPATCHED = "dispatched"
    DELIVERY_COMPLETE = "delivery_complete"
    INVOICE_COMPLETE = "invoice_complete"


def _stage_column(**kwargs):
    return Column(
        Enum(FulfillmentStage, native_enum=False, length=30,
             values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


class Company(Base):
    __tablename__ = "companies"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    locations = relationship("CompanyLocation", back_populates="company")
    webhook_secrets = relationship("WebhookSecret", back_populates="company", cascade="all, delete-orphan")


class CompanyLocation(Base):
    __tablename__ = "company_locations"
    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    shopify_location_id = Column(String(100), unique=True, nullable=True)
    shopify_shop_name = Column(String(255))
    default_merchant_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    company = relationship("Company", back_populates="locations")
    default_merchant = relationship("User", foreign_keys=[default_merchant_user_id])


class User(Base):
    """Staff member. Riders and merchants are users too."""
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255))
    email = Column(String(255), index=True)
    mobile = Column(String(30))
    is_rider = Column(BOOLEAN, default=False, nullable=False)
    shopify_user_ids = Column(JSONType, default=list)
    coupon_codes = Column(JSONType, default=list)


class WebhookSecret(Base):
    __tablename__ = "webhook_secrets"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    secret = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    company = relationship("Company", back_populates="webhook_secrets")


class Customer(Base):
    __tablename__ = "customers"
    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    shopify_customer_id = Column(String(50), nullable=False)
    email = Column(String(255))
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(30))
    default_address = Column(JSONType)
    order_count = Column(Integer, default=0, nullable=False)
    last_purchase_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint('company_id', 'shopify_customer_id', name='customers_company_id_shopify_customer_id_key'),
    )


class Vendor(Base):
    __tablename__ = "vendors"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    name = Column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint('company_id', 'name', name='vendors_company_id_name_key'),
    )


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    name = Column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint('company_id', 'name', name='categories_company_id_name_key'),
    )


class ProductItem(Base):
    __tablename__ = "product_items"
    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    company_location_id = Column(Integer, ForeignKey("company_locations.id"), nullable=False)
    shopify_location_id = Column(String(100))
    shopify_product_id = Column(String(50))
    shopify_variant_id = Column(String(50), nullable=False)
    product_title = Column(String(255))
    variant_title = Column(String(255))
    sku = Column(String(255), index=True)
    barcode = Column(String(255))
    price = Column(NUMERIC(12, 2))
    compare_at_price = Column(NUMERIC(12, 2))
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint('company_location_id', 'shopify_variant_id',
                         name='product_items_company_location_id_shopify_variant_id_key'),
    )


class PackageHoldReason(Base):
    __tablename__ = "package_hold_reasons"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)


class CourierService(Base):
    __tablename__ = "courier_services"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)


class SampleFreeIssueItem(Base):
    __tablename__ = "sample_free_issue_items"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default="sample")  # sample | free_issue


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    company_location_id = Column(Integer, ForeignKey("company_locations.id"), nullable=False)
    assigned_merchant_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)

    shopify_order_id = Column(String(50), unique=True, nullable=False)
    source_name = Column(String(20), nullable=False, default="web")
    shopify_user_id = Column(String(50))
    order_number = Column(String(50))
    name = Column(String(100))

    total_price = Column(NUMERIC(12, 2), nullable=False)
    subtotal_price = Column(NUMERIC(12, 2))
    total_discounts = Column(NUMERIC(12, 2))
    total_tax = Column(NUMERIC(12, 2))
    total_shipping = Column(NUMERIC(12, 2))
    currency = Column(String(10))
    financial_status = Column(String(50))
    fulfillment_status = Column(String(50))

    customer_email = Column(String(255))
    customer_phone = Column(String(30))
    shipping_address = Column(JSONType)
    billing_address = Column(JSONType)
    discount_codes = Column(JSONType)
    discount_applications = Column(JSONType)
    shipping_lines = Column(JSONType)
    raw_payload = Column(JSONType, nullable=False)

    # --- fulfillment pipeline ---
    fulfillment_stage = _stage_column(nullable=False, default=FulfillmentStage.ORDER_RECEIVED, index=True)
    # Bumped by every stage/flag write; the optimistic guard matches on it.
    version = Column(Integer, nullable=False, default=0)

    sample_free_issue_complete_at = Column(DateTime(timezone=True))
    sample_free_issue_complete_by_id = Column(Integer, ForeignKey("users.id"))
    print_count = Column(Integer, nullable=False, default=0)
    last_printed_at = Column(DateTime(timezone=True))
    last_printed_by_id = Column(Integer, ForeignKey("users.id"))
    package_on_hold_at = Column(DateTime(timezone=True))
    package_hold_reason_id = Column(Integer, ForeignKey("package_hold_reasons.id"))
    package_ready_at = Column(DateTime(timezone=True))
    package_ready_by_id = Column(Integer, ForeignKey("users.id"))
    dispatched_at = Column(DateTime(timezone=True))
    dispatched_by_id = Column(Integer, ForeignKey("users.id"))
    dispatched_by_rider_id = Column(Integer, ForeignKey("users.id"))
    dispatched_by_courier_service_id = Column(Integer, ForeignKey("courier_services.id"))
    rider_delivery_token = Column(String(64), unique=True, nullable=True)
    delivery_complete_at = Column(DateTime(timezone=True))
    delivery_complete_by_id = Column(Integer, ForeignKey("users.id"))
    invoice_complete_at = Column(DateTime(timezone=True))
    invoice_complete_by_id = Column(Integer, ForeignKey("users.id"))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    company_location = relationship("CompanyLocation")
    package_hold_reason = relationship("PackageHoldReason")
    dispatched_by_rider = relationship("User", foreign_keys=[dispatched_by_rider_id])
    dispatched_by_courier_service = relationship("CourierService")
    line_items = relationship("OrderLineItem", back_populates="order", cascade="all, delete-orphan",
                              order_by="OrderLineItem.shopify_line_item_id")
    sample_free_issues = relationship("OrderSampleFreeIssue", back_populates="order", cascade="all, delete-orphan")
    remarks = relationship("OrderRemark", back_populates="order", cascade="all, delete-orphan",
                           order_by="OrderRemark.created_at")


class OrderLineItem(Base):
    __tablename__ = "order_line_items"
    # Natural key, so a delete-then-insert refresh reproduces identical rows.
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True)
    shopify_line_item_id = Column(String(50), primary_key=True)
    product_item_id = Column(Integer, ForeignKey("product_items.id"), nullable=True)
    shopify_variant_id = Column(String(50))
    title = Column(String(255))
    sku = Column(String(255))
    barcode = Column(String(255))
    quantity = Column(Integer, nullable=False)
    price = Column(NUMERIC(12, 2), nullable=False)
    compare_at_price = Column(NUMERIC(12, 2))

    order = relationship("Order", back_populates="line_items")
    product_item = relationship("ProductItem")


class OrderSampleFreeIssue(Base):
    __tablename__ = "order_sample_free_issues"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    sample_free_issue_item_id = Column(Integer, ForeignKey("sample_free_issue_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    added_by_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="sample_free_issues")
    sample_free_issue_item = relationship("SampleFreeIssueItem")

    __table_args__ = (
        UniqueConstraint('order_id', 'sample_free_issue_item_id',
                         name='order_sample_free_issues_order_id_item_id_key'),
    )


class OrderRemark(Base):
    __tablename__ = "order_remarks"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = _stage_column(nullable=False)
    type = Column(String(20), nullable=False, default="internal")  # internal | external
    content = Column(Text, nullable=False)
    show_on_invoice = Column(BOOLEAN, default=False, nullable=False)
    added_by_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="remarks")


class FailedOrderWebhook(Base):
    __tablename__ = "failed_order_webhooks"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    company_location_id = Column(Integer, ForeignKey("company_locations.id"), nullable=False)
    shopify_order_id = Column(String(50), index=True)
    shopify_topic = Column(String(100))
    error_message = Column(Text, nullable=False)
    error_stack = Column(Text)
    raw_payload = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True))

    company_location = relationship("CompanyLocation")


class SmsNotificationConfig(Base):
    __tablename__ = "sms_notification_configs"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    trigger = Column(String(50), nullable=False)
    enabled = Column(BOOLEAN, default=True, nullable=False)
    template = Column(Text, nullable=False)
    send_to_customer = Column(BOOLEAN, default=True, nullable=False)
    send_to_rider = Column(BOOLEAN, default=True, nullable=False)
    additional_recipients = Column(JSONType, default=list)

    __table_args__ = (
        UniqueConstraint('company_id', 'trigger', name='sms_notification_configs_company_id_trigger_key'),
    )


class SmsPortalConfig(Base):
    __tablename__ = "sms_portal_configs"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), unique=True, nullable=False)
    auth_url = Column(String(2048), nullable=False)
    sms_url = Column(String(2048), nullable=False)
    username = Column(String(255), nullable=False)
    password = Column(String(255), nullable=False)
    campaign_name = Column(String(255))
    sms_mask = Column(String(50))


class SmsLog(Base):
    __tablename__ = "sms_logs"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    phone_number = Column(String(30), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)
    sent_by_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
