# routes/orders.py

from fastapi import APIRouter, Depends, Body
from sqlalchemy.orm import Session

import schemas
from database import get_db
from crud import order as crud_order
from crud import remark as crud_remark
from deps import ActorContext, get_actor_context, get_fulfillment_engine, require_any
from errors import NotFound
from services.fulfillment_service import FulfillmentEngine

router = APIRouter(
    prefix="/api/orders",
    tags=["Orders & Fulfillment"],
    responses={404: {"description": "Not found"}},
)

can_read = require_any("orders.read", "orders.manage")
can_manage = require_any("orders.manage")


@router.get("/{order_id}", response_model=schemas.OrderSnapshot)
def get_order(order_id: int, db: Session = Depends(get_db), ctx: ActorContext = Depends(can_read)):
    """Full order view: stage, every stage timestamp/actor, line items, samples and remarks."""
    order = crud_order.get_order_detail(db, order_id, ctx.company_id)
    if not order:
        raise NotFound("Order not found")
    return order


@router.patch("/{order_id}/fulfillment", response_model=schemas.ActionResult)
def update_fulfillment(
    order_id: int,
    action: schemas.FulfillmentAction = Body(...),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
):
    """Applies one staff fulfillment action; the body is discriminated on `action`."""
    order = engine.apply_action(db, ctx, order_id, action)
    return {"success": True, "order": order}


@router.post("/{order_id}/print", response_model=schemas.OrderSnapshot)
def record_print(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
):
    return engine.record_print(db, ctx, order_id)


@router.post("/{order_id}/resend-rider-sms")
def resend_rider_sms(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
):
    engine.resend_rider_sms(db, ctx, order_id)
    return {"success": True}


# ---------------- remarks ----------------

@router.post("/{order_id}/remarks", response_model=schemas.Remark, status_code=201)
def add_remark(
    order_id: int,
    remark: schemas.RemarkCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(can_manage),
):
    if not crud_order.get_order_for_company(db, order_id, ctx.company_id):
        raise NotFound("Order not found")
    return crud_remark.create_remark(db, order_id, remark, ctx.user_id)


@router.patch("/{order_id}/remarks/{remark_id}", response_model=schemas.Remark)
def edit_remark(
    order_id: int,
    remark_id: int,
    changes: schemas.RemarkUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(can_manage),
):
    db_remark = crud_remark.get_remark(db, order_id, remark_id, ctx.company_id)
    if not db_remark:
        raise NotFound("Remark not found")
    return crud_remark.update_remark(db, db_remark, changes)


@router.delete("/{order_id}/remarks/{remark_id}")
def remove_remark(
    order_id: int,
    remark_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(can_manage),
):
    db_remark = crud_remark.get_remark(db, order_id, remark_id, ctx.company_id)
    if not db_remark:
        raise NotFound("Remark not found")
    crud_remark.delete_remark(db, db_remark)
    return {"success": True}
