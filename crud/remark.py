# crud/remark.py

from typing import Optional

from sqlalchemy.orm import Session

import models
import schemas


def get_remark(db: Session, order_id: int, remark_id: int, company_id: int) -> Optional[models.OrderRemark]:
    return (
        db.query(models.OrderRemark)
        .join(models.Order, models.Order.id == models.OrderRemark.order_id)
        .filter(
            models.OrderRemark.id == remark_id,
            models.OrderRemark.order_id == order_id,
            models.Order.company_id == company_id,
        )
        .first()
    )


def create_remark(db: Session, order_id: int, remark: schemas.RemarkCreate, added_by_id: Optional[int]) -> models.OrderRemark:
    db_remark = models.OrderRemark(
        order_id=order_id,
        stage=remark.stage,
        type=remark.type,
        content=remark.content,
        show_on_invoice=remark.show_on_invoice,
        added_by_id=added_by_id,
    )
    db.add(db_remark)
    db.commit()
    db.refresh(db_remark)
    return db_remark


def update_remark(db: Session, db_remark: models.OrderRemark, changes: schemas.RemarkUpdate) -> models.OrderRemark:
    db_remark.content = changes.content
    db_remark.show_on_invoice = changes.show_on_invoice
    db.commit()
    db.refresh(db_remark)
    return db_remark


def delete_remark(db: Session, db_remark: models.OrderRemark) -> None:
    db.delete(db_remark)
    db.commit()
