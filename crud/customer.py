# crud/customer.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from .utils import upsert_batch


def get_customer(db: Session, company_id: int, shopify_customer_id: str) -> Optional[models.Customer]:
    return db.query(models.Customer).filter(
        models.Customer.company_id == company_id,
        models.Customer.shopify_customer_id == shopify_customer_id,
    ).populate_existing().first()


def ensure_customer(
    db: Session,
    company_id: int,
    shopify_customer_id: str,
    contact: Dict[str, Any],
    purchased_at: datetime,
    is_new_order: bool,
) -> int:
    """
    Upsert the customer and refresh its contact fields. Only a new order bumps
    order_count; last_purchase_at only ever moves forward.
    """
    upsert_batch(
        db, models.Customer,
        [dict(contact, company_id=company_id, shopify_customer_id=shopify_customer_id,
              order_count=0, last_purchase_at=None)],
        ['company_id', 'shopify_customer_id'],
        update_columns=list(contact.keys()),
    )
    customer = get_customer(db, company_id, shopify_customer_id)

    if is_new_order:
        customer.order_count = (customer.order_count or 0) + 1
    last = customer.last_purchase_at
    if last is not None and last.tzinfo is None:
        last = last.replace(tzinfo=purchased_at.tzinfo)
    if last is None or purchased_at > last:
        customer.last_purchase_at = purchased_at
    db.flush()
    return customer.id


# ---------------- merchant assignment ----------------

def find_merchant_by_shopify_user(db: Session, company_id: int, shopify_user_id: str) -> Optional[int]:
    for user in db.query(models.User).filter(models.User.company_id == company_id).all():
        if shopify_user_id in [str(u) for u in (user.shopify_user_ids or [])]:
            return user.id
    return None


def find_merchant_by_coupon(db: Session, company_id: int, codes: List[str]) -> Optional[int]:
    wanted = {c.lower().strip() for c in codes if c and c.strip()}
    if not wanted:
        return None
    for user in db.query(models.User).filter(models.User.company_id == company_id).order_by(models.User.id).all():
        if any((c or "").lower().strip() in wanted for c in (user.coupon_codes or [])):
            return user.id
    return None
