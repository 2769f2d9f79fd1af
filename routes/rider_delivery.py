# routes/rider_delivery.py
# Public endpoints behind the link texted to riders; the token is the only credential.
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Body, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

import schemas
from database import get_db
from deps import get_fulfillment_engine
from models import FulfillmentStage
from services.fulfillment_service import FulfillmentEngine

ROOT_DIR = Path(__file__).resolve().parent.parent
templates = Jinja2Templates(directory=str(ROOT_DIR / "templates"))

router = APIRouter(prefix="/api/public/rider-delivery", tags=["Rider Delivery"])
page_router = APIRouter(tags=["Rider Delivery"])


def _order_label(order) -> str:
    return order.name or order.order_number or order.shopify_order_id


@router.get("/{token}")
def get_delivery(token: str, db: Session = Depends(get_db),
                 engine: FulfillmentEngine = Depends(get_fulfillment_engine)):
    order = engine.rider_order(db, token)
    body = {"orderName": _order_label(order)}
    if order.fulfillment_stage == FulfillmentStage.DELIVERY_COMPLETE:
        body["message"] = "Delivery already confirmed"
    return body


@router.post("/{token}")
def confirm_delivery(
    token: str,
    payload: Optional[schemas.RiderDeliveryConfirm] = Body(None),
    db: Session = Depends(get_db),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
):
    order = engine.confirm_rider_delivery(db, token, bool(payload and payload.confirmed))
    return {"success": True, "orderName": _order_label(order), "stage": order.fulfillment_stage.value}


@page_router.get("/r/d/{token}", response_class=HTMLResponse, include_in_schema=False)
def delivery_page(token: str, request: Request, db: Session = Depends(get_db),
                  engine: FulfillmentEngine = Depends(get_fulfillment_engine)):
    order = engine.rider_order(db, token)
    return templates.TemplateResponse(request, "rider_delivery.html", {
        "title": "Confirm delivery",
        "order_name": _order_label(order),
        "already_confirmed": order.fulfillment_stage == FulfillmentStage.DELIVERY_COMPLETE,
        "confirm_url": f"{router.prefix}/{token}",
    })
