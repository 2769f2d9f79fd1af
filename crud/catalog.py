# crud/catalog.py

from typing import Optional

from sqlalchemy.orm import Session

import models
from .utils import upsert_batch

UNCATEGORIZED_NAME = "Uncategorized"


def get_product_item(db: Session, company_location_id: int, shopify_variant_id: str) -> Optional[models.ProductItem]:
    return db.query(models.ProductItem).filter(
        models.ProductItem.company_location_id == company_location_id,
        models.ProductItem.shopify_variant_id == shopify_variant_id,
    ).first()


def ensure_vendor(db: Session, company_id: int, name: str) -> int:
    upsert_batch(db, models.Vendor, [{"company_id": company_id, "name": name}],
                 ['company_id', 'name'], update_columns=[])
    return db.query(models.Vendor.id).filter(
        models.Vendor.company_id == company_id, models.Vendor.name == name
    ).scalar()


def ensure_category(db: Session, company_id: int, name: str = UNCATEGORIZED_NAME) -> int:
    upsert_batch(db, models.Category, [{"company_id": company_id, "name": name}],
                 ['company_id', 'name'], update_columns=[])
    return db.query(models.Category.id).filter(
        models.Category.company_id == company_id, models.Category.name == name
    ).scalar()


def ensure_product_item(db: Session, location: models.CompanyLocation, item: dict) -> int:
    """
    Resolve the catalog row for a line item by (location, variant id), creating it
    with its vendor and the company's "Uncategorized" category when absent.
    Concurrent creators converge on the same row through the unique key.
    """
    existing = get_product_item(db, location.id, item["shopify_variant_id"])
    if existing:
        return existing.id

    vendor_id = ensure_vendor(db, location.company_id, item["vendor"]) if item.get("vendor") else None
    category_id = ensure_category(db, location.company_id)

    upsert_batch(
        db, models.ProductItem,
        [{
            "company_id": location.company_id,
            "company_location_id": location.id,
            "shopify_location_id": location.shopify_location_id or str(location.id),
            "shopify_product_id": item.get("shopify_product_id"),
            "shopify_variant_id": item["shopify_variant_id"],
            "product_title": item.get("title") or "Unknown",
            "sku": item.get("sku"),
            "barcode": item.get("barcode"),
            "price": item["price"],
            "compare_at_price": item.get("compare_at_price"),
            "vendor_id": vendor_id,
            "category_id": category_id,
        }],
        ['company_location_id', 'shopify_variant_id'],
        update_columns=[],
    )
    return get_product_item(db, location.id, item["shopify_variant_id"]).id
