# crud/failed_webhooks.py

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy.orm import Session

import models

MAX_ERROR_TEXT = 10000


def create_failed_webhook(
    db: Session,
    location: models.CompanyLocation,
    shopify_order_id: Optional[str],
    topic: Optional[str],
    error_message: str,
    error_stack: Optional[str],
    raw_payload: Any,
) -> models.FailedOrderWebhook:
    """Saves an order event that could not be reconciled, for later replay."""
    record = models.FailedOrderWebhook(
        company_id=location.company_id,
        company_location_id=location.id,
        shopify_order_id=shopify_order_id,
        shopify_topic=topic[:100] if topic else None,
        error_message=(error_message or "")[:MAX_ERROR_TEXT],
        error_stack=error_stack[:MAX_ERROR_TEXT] if error_stack else None,
        raw_payload=raw_payload,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def get_failed_webhook(db: Session, record_id: int, company_id: Optional[int] = None) -> Optional[models.FailedOrderWebhook]:
    q = db.query(models.FailedOrderWebhook).filter(models.FailedOrderWebhook.id == record_id)
    if company_id is not None:
        q = q.filter(models.FailedOrderWebhook.company_id == company_id)
    return q.first()


def list_unresolved(db: Session, company_id: Optional[int] = None, limit: int = 100) -> List[models.FailedOrderWebhook]:
    q = db.query(models.FailedOrderWebhook).filter(models.FailedOrderWebhook.resolved_at.is_(None))
    if company_id is not None:
        q = q.filter(models.FailedOrderWebhook.company_id == company_id)
    return q.order_by(models.FailedOrderWebhook.created_at.asc(), models.FailedOrderWebhook.id.asc()).limit(limit).all()


def mark_resolved(db: Session, record: models.FailedOrderWebhook, when: datetime) -> None:
    record.resolved_at = when
    db.commit()


def record_retry_failure(db: Session, record: models.FailedOrderWebhook, error_message: str, error_stack: Optional[str]) -> None:
    record.error_message = (error_message or "")[:MAX_ERROR_TEXT]
    record.error_stack = error_stack[:MAX_ERROR_TEXT] if error_stack else None
    db.commit()


def delete_failed_webhook(db: Session, record: models.FailedOrderWebhook) -> None:
    db.delete(record)
    db.commit()
