# crud/order.py
#
# Persistence facade for orders. Every stage/flag write goes through
# apply_transition (conditional on the version that was read) and every
# ingestion write through upsert_order (keyed on the Shopify order id).

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, update
from sqlalchemy.orm import Session, selectinload

import models
from models import FulfillmentStage
from .utils import upsert_batch


# Columns an ingestion update may overwrite. Fulfillment progress is never among them.
INGESTED_COLUMNS = (
    "company_id",
    "company_location_id",
    "assigned_merchant_id",
    "customer_id",
    "source_name",
    "shopify_user_id",
    "order_number",
    "name",
    "total_price",
    "subtotal_price",
    "total_discounts",
    "total_tax",
    "total_shipping",
    "currency",
    "financial_status",
    "fulfillment_status",
    "customer_email",
    "customer_phone",
    "shipping_address",
    "billing_address",
    "discount_codes",
    "discount_applications",
    "shipping_lines",
    "raw_payload",
)


# ---------------- reads (always fresh, never from the identity map) ----------------

def get_order_by_shopify_id(db: Session, shopify_order_id: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.shopify_order_id == str(shopify_order_id))
        .populate_existing()
        .one_or_none()
    )


def get_order_for_company(db: Session, order_id: int, company_id: int) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.id == order_id, models.Order.company_id == company_id)
        .populate_existing()
        .one_or_none()
    )


def get_order_detail(db: Session, order_id: int, company_id: int) -> Optional[models.Order]:
    """Order with line items, sample allocations and remarks loaded for the snapshot view."""
    return (
        db.query(models.Order)
        .options(
            selectinload(models.Order.line_items),
            selectinload(models.Order.sample_free_issues),
            selectinload(models.Order.remarks),
        )
        .filter(models.Order.id == order_id, models.Order.company_id == company_id)
        .populate_existing()
        .one_or_none()
    )


def get_order_by_rider_token(db: Session, token: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.rider_delivery_token == token)
        .populate_existing()
        .one_or_none()
    )


# ---------------- ingestion writes ----------------

def upsert_order(db: Session, values: Dict[str, Any]) -> Tuple[models.Order, bool]:
    """
    Insert-or-update keyed on shopify_order_id. `values` carries the full insert
    row (including the seeded stage); only INGESTED_COLUMNS are applied to an
    existing row. Returns (order, created); only the writer whose insert landed
    sees created=True.
    """
    result = upsert_batch(db, models.Order, [values], ['shopify_order_id'], update_columns=[])
    created = result.rowcount == 1
    if not created:
        db.execute(
            update(models.Order)
            .where(models.Order.shopify_order_id == values["shopify_order_id"])
            .values(**{c: values[c] for c in INGESTED_COLUMNS if c in values})
            .execution_options(synchronize_session=False)
        )
    db.flush()
    return get_order_by_shopify_id(db, values["shopify_order_id"]), created


def fast_forward_paid(db: Session, order_id: int, pre_stages: Iterable[FulfillmentStage], now: datetime) -> bool:
    """
    Jump a not-yet-dispatched order straight to invoice_complete. Conditional on the
    stage still being in `pre_stages`, so a concurrent staff transition is never undone.
    """
    result = db.execute(
        update(models.Order)
        .where(
            models.Order.id == order_id,
            models.Order.fulfillment_stage.in_(list(pre_stages)),
            models.Order.invoice_complete_at.is_(None),
        )
        .values(
            fulfillment_stage=FulfillmentStage.INVOICE_COMPLETE,
            invoice_complete_at=now,
            version=models.Order.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def replace_line_items(db: Session, order_id: int, rows: List[Dict[str, Any]]) -> None:
    db.execute(delete(models.OrderLineItem).where(models.OrderLineItem.order_id == order_id))
    if rows:
        db.execute(models.OrderLineItem.__table__.insert(), [dict(r, order_id=order_id) for r in rows])


# ---------------- staff transitions ----------------

def apply_transition(
    db: Session,
    order_id: int,
    expected_version: int,
    fields: Dict[str, Any],
    increments: Optional[Dict[str, int]] = None,
) -> bool:
    """
    Conditional update: succeeds only if the stored version still equals the one the
    caller read. Returns False when a concurrent writer got there first.
    """
    values: Dict[str, Any] = dict(fields)
    for column, delta in (increments or {}).items():
        values[column] = getattr(models.Order, column) + delta
    values["version"] = models.Order.version + 1

    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order_id, models.Order.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def upsert_sample_allocations(
    db: Session,
    order_id: int,
    allocations: Iterable[Tuple[int, int]],
    added_by_id: Optional[int],
) -> None:
    """Re-submitting an item adjusts its quantity instead of adding a second row."""
    rows = [
        {
            "order_id": order_id,
            "sample_free_issue_item_id": item_id,
            "quantity": quantity,
            "added_by_id": added_by_id,
        }
        for item_id, quantity in allocations
    ]
    upsert_batch(
        db, models.OrderSampleFreeIssue, rows,
        ['order_id', 'sample_free_issue_item_id'],
        update_columns=['quantity'],
    )


def record_print(db: Session, order_id: int, company_id: int, actor_id: Optional[int], now: datetime) -> bool:
    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order_id, models.Order.company_id == company_id)
        .values(
            print_count=models.Order.print_count + 1,
            last_printed_at=now,
            last_printed_by_id=actor_id,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------- reference lookups for transitions ----------------

def get_hold_reason(db: Session, hold_reason_id: int, company_id: int) -> Optional[models.PackageHoldReason]:
    return db.query(models.PackageHoldReason).filter(
        models.PackageHoldReason.id == hold_reason_id,
        models.PackageHoldReason.company_id == company_id,
    ).first()


def get_rider(db: Session, user_id: int, company_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(
        models.User.id == user_id,
        models.User.company_id == company_id,
        models.User.is_rider.is_(True),
    ).first()


def get_courier_service(db: Session, courier_service_id: int, company_id: int) -> Optional[models.CourierService]:
    return db.query(models.CourierService).filter(
        models.CourierService.id == courier_service_id,
        models.CourierService.company_id == company_id,
    ).first()


def get_sample_item_ids(db: Session, item_ids: Iterable[int], company_id: int) -> set:
    ids = list(item_ids)
    if not ids:
        return set()
    return {
        i for (i,) in db.query(models.SampleFreeIssueItem.id).filter(
            models.SampleFreeIssueItem.id.in_(ids),
            models.SampleFreeIssueItem.company_id == company_id,
        ).all()
    }
