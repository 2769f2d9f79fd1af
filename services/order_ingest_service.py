# services/order_ingest_service.py
"""
Idempotent reconciliation of Shopify order webhooks into the order store.

Every event is applied as full desired state keyed on the Shopify order id, so
replaying the same payload any number of times converges on the same rows.
Fulfillment progress is never written from here, with the single exception of
the "paid" fast-forward.
"""
from __future__ import annotations

import json
import traceback
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PayloadError
from sqlalchemy.orm import Session

import models
import schemas
from crud import catalog as crud_catalog
from crud import customer as crud_customer
from crud import failed_webhooks as crud_failed
from crud import order as crud_order
from errors import IngestionFailure, NotFound, ValidationError
from models import FulfillmentStage
from services.notification_service import order_context
from services.stage_graph import PRE_DISPATCH_STAGES
from utils import get_logger, parse_dt, truncate, utcnow

logger = get_logger("ingest")

DEFAULT_SOURCE = "web"


@dataclass(frozen=True)
class IngestResult:
    order_id: int
    created: bool
    fast_forwarded: bool = False


def _source_name(event: schemas.ShopifyOrderWebhook) -> str:
    source = (event.source_name or "").strip().lower()
    return truncate(source or DEFAULT_SOURCE, 20)


def _shipping_total(event: schemas.ShopifyOrderWebhook) -> Decimal:
    total = Decimal("0")
    for line in event.shipping_lines:
        amount = line.price if line.price is not None else line.discounted_price
        if amount is not None:
            total += amount
    return total


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


def _customer_phone(event: schemas.ShopifyOrderWebhook) -> Optional[str]:
    return _first(
        event.phone or None,
        event.shipping_address.phone if event.shipping_address else None,
        event.customer.phone if event.customer else None,
        event.billing_address.phone if event.billing_address else None,
    )


def _discount_code_list(event: schemas.ShopifyOrderWebhook) -> List[str]:
    return [d.code for d in event.discount_codes if d.code]


def _payload_id(raw_payload: Any) -> Optional[str]:
    if isinstance(raw_payload, dict) and raw_payload.get("id") is not None:
        return str(raw_payload["id"])[:50]
    return None


class IngestionEngine:
    def __init__(self, dispatcher, clock: Callable[[], Any] = utcnow):
        self.dispatcher = dispatcher
        self.clock = clock

    # ------------------------------------------------------------------
    # resolution
    # ------------------------------------------------------------------

    def _resolve_merchant(self, db: Session, event: schemas.ShopifyOrderWebhook,
                          location: models.CompanyLocation, source: str) -> Optional[int]:
        merchant_id = None
        if source == "pos" and event.user_id is not None:
            merchant_id = crud_customer.find_merchant_by_shopify_user(db, location.company_id, str(event.user_id))
        elif source == "web" and event.discount_codes:
            merchant_id = crud_customer.find_merchant_by_coupon(db, location.company_id, _discount_code_list(event))
        return merchant_id or location.default_merchant_user_id

    def _resolve_customer(self, db: Session, event: schemas.ShopifyOrderWebhook,
                          location: models.CompanyLocation, is_new_order: bool) -> Optional[int]:
        if event.customer is None:
            return None
        c = event.customer
        contact = {
            "email": c.email,
            "first_name": truncate(c.first_name, 100),
            "last_name": truncate(c.last_name, 100),
            "phone": truncate(c.phone, 30),
            "default_address": c.default_address.model_dump(exclude_none=True) if c.default_address else None,
        }
        return crud_customer.ensure_customer(
            db, location.company_id, str(c.id), contact,
            purchased_at=parse_dt(event.created_at),
            is_new_order=is_new_order,
        )

    def _line_item_rows(self, db: Session, event: schemas.ShopifyOrderWebhook,
                        location: models.CompanyLocation) -> List[Dict[str, Any]]:
        rows = []
        for li in event.line_items:
            variant_id = str(li.variant_id)
            product_item_id = crud_catalog.ensure_product_item(db, location, {
                "shopify_variant_id": variant_id,
                "shopify_product_id": str(li.product_id) if li.product_id is not None else None,
                "title": truncate(li.title, 255),
                "sku": truncate(li.sku, 255),
                "barcode": truncate(li.barcode, 255),
                "price": li.price,
                "compare_at_price": li.compare_at_price,
                "vendor": li.vendor,
            })
            rows.append({
                "shopify_line_item_id": str(li.id),
                "product_item_id": product_item_id,
                "shopify_variant_id": variant_id,
                "title": truncate(li.title, 255),
                "sku": truncate(li.sku, 255),
                "barcode": truncate(li.barcode, 255),
                "quantity": li.quantity,
                "price": li.price,
                "compare_at_price": li.compare_at_price,
            })
        return rows

    def _order_values(self, event: schemas.ShopifyOrderWebhook, location: models.CompanyLocation,
                      raw_payload: Dict[str, Any], source: str,
                      customer_id: Optional[int], merchant_id: Optional[int]) -> Dict[str, Any]:
        return {
            "shopify_order_id": str(event.id),
            "company_id": location.company_id,
            "company_location_id": location.id,
            "assigned_merchant_id": merchant_id,
            "customer_id": customer_id,
            "source_name": source,
            "shopify_user_id": str(event.user_id) if event.user_id is not None else None,
            "order_number": str(event.order_number) if event.order_number is not None else None,
            "name": truncate(event.name, 100),
            "total_price": event.total_price,
            "subtotal_price": _first(event.subtotal_price, event.current_subtotal_price),
            "total_discounts": _first(event.total_discounts, event.current_total_discounts),
            "total_tax": _first(event.total_tax, event.current_total_tax),
            "total_shipping": _shipping_total(event),
            "currency": truncate(event.currency, 10),
            "financial_status": truncate(event.financial_status, 50),
            "fulfillment_status": truncate(event.fulfillment_status, 50),
            "customer_email": truncate(event.email or event.contact_email
                                       or (event.customer.email if event.customer else None), 255),
            "customer_phone": truncate(_customer_phone(event), 30),
            # Blobs are kept exactly as Shopify sent them.
            "shipping_address": raw_payload.get("shipping_address"),
            "billing_address": raw_payload.get("billing_address"),
            "discount_codes": raw_payload.get("discount_codes") or [],
            "discount_applications": raw_payload.get("discount_applications") or [],
            "shipping_lines": raw_payload.get("shipping_lines") or [],
            "raw_payload": raw_payload,
        }

    # ------------------------------------------------------------------
    # the idempotent write
    # ------------------------------------------------------------------

    def ingest(self, db: Session, event: schemas.ShopifyOrderWebhook,
               location: models.CompanyLocation, raw_payload: Dict[str, Any]) -> IngestResult:
        """Apply one validated order event. Raises on any failure; the caller records it."""
        now = self.clock()
        existing = crud_order.get_order_by_shopify_id(db, str(event.id))
        was_paid = bool(existing and (existing.financial_status or "").strip().lower() == "paid")

        source = _source_name(event)
        customer_id = self._resolve_customer(db, event, location, is_new_order=existing is None)
        merchant_id = self._resolve_merchant(db, event, location, source)
        line_items = self._line_item_rows(db, event, location)

        values = self._order_values(event, location, raw_payload, source, customer_id, merchant_id)
        # Only used when the row is inserted; an existing row keeps its pipeline state.
        values["version"] = 0
        values["print_count"] = 0
        if event.is_paid:
            values["fulfillment_stage"] = FulfillmentStage.INVOICE_COMPLETE
            values["invoice_complete_at"] = now
        else:
            values["fulfillment_stage"] = FulfillmentStage.ORDER_RECEIVED

        order, created = crud_order.upsert_order(db, values)

        fast_forwarded = False
        if not created and event.is_paid and not was_paid:
            fast_forwarded = crud_order.fast_forward_paid(db, order.id, PRE_DISPATCH_STAGES, now)
        crud_order.replace_line_items(db, order.id, line_items)
        # Order row, fast-forward and line items land in one commit.
        db.commit()

        if fast_forwarded:
            logger.info("[ingest] order %s paid, fast-forwarded to invoice_complete", order.shopify_order_id)
        logger.info("[ingest] order %s %s (location %s, %d line items)", order.shopify_order_id,
                    "created" if created else "updated", location.id, len(event.line_items))

        if created:
            self.dispatcher.submit(location.company_id, order.id, "order_received",
                                   order_context(order, location.name))
        return IngestResult(order_id=order.id, created=created, fast_forwarded=fast_forwarded)

    # ------------------------------------------------------------------
    # boundary + replay
    # ------------------------------------------------------------------

    def _record_failure(self, db: Session, location: models.CompanyLocation, raw_payload: Any,
                        topic: Optional[str], exc: Exception) -> models.FailedOrderWebhook:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        record = crud_failed.create_failed_webhook(
            db, location, _payload_id(raw_payload), topic, str(exc), stack, raw_payload,
        )
        first_line = str(exc).splitlines()[0] if str(exc) else type(exc).__name__
        logger.error("[ingest] order %s failed (record %s): %s", record.shopify_order_id, record.id, first_line)
        return record

    def handle_webhook(self, db: Session, location: models.CompanyLocation,
                       raw_payload: Any, topic: Optional[str] = None) -> IngestResult:
        """
        Validate and ingest a webhook body. Every failure is captured as a
        FailedOrderWebhook first: an invalid payload is then reported with its
        validation details, anything else as an opaque IngestionFailure.
        """
        try:
            event = schemas.ShopifyOrderWebhook.model_validate(raw_payload)
        except PayloadError as e:
            record = self._record_failure(db, location, raw_payload, topic, e)
            raise ValidationError("Invalid payload", details=json.loads(e.json(include_url=False)),
                                  failed_record_id=record.id)

        try:
            return self.ingest(db, event, location, raw_payload)
        except Exception as e:
            db.rollback()
            record = self._record_failure(db, location, raw_payload, topic, e)
            raise IngestionFailure(failed_record_id=record.id) from e

    def replay(self, db: Session, record_id: int, company_id: Optional[int] = None) -> IngestResult:
        """Re-run ingestion for a stored failed webhook against its original location."""
        record = crud_failed.get_failed_webhook(db, record_id, company_id)
        if not record:
            raise NotFound("Failed webhook not found")
        if record.resolved_at is not None:
            raise ValidationError("Failed webhook was already replayed")

        try:
            event = schemas.ShopifyOrderWebhook.model_validate(record.raw_payload)
        except PayloadError as e:
            crud_failed.record_retry_failure(db, record, str(e), None)
            raise ValidationError("Stored payload is not a valid order", failed_record_id=record.id)

        location = record.company_location
        try:
            result = self.ingest(db, event, location, record.raw_payload)
        except Exception as e:
            db.rollback()
            crud_failed.record_retry_failure(db, record, str(e), traceback.format_exc())
            logger.error("[replay] record %s failed again: %s", record.id, e)
            raise IngestionFailure(failed_record_id=record.id) from e

        crud_failed.mark_resolved(db, record, self.clock())
        logger.info("[replay] record %s resolved (order %s)", record.id, result.order_id)
        return result
