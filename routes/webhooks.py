# routes/webhooks.py
import json

from fastapi import APIRouter, Depends, HTTPException, Request, Header, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from database import get_db
from crud import location as crud_location
from deps import get_ingest_engine
from services.order_ingest_service import IngestionEngine
from utils import get_logger, verify_hmac

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])
logger = get_logger("webhooks")

MAX_LOCATION_ID_LENGTH = 100


@router.post("/shopify/orders")
async def receive_order_webhook(
    request: Request,
    location_id: str = Query(None),
    x_shopify_hmac_sha256: str = Header(None),
    x_shopify_topic: str = Header(None),
    db: Session = Depends(get_db),
    engine: IngestionEngine = Depends(get_ingest_engine),
):
    """
    Receives orders/create and orders/updated webhooks for one location,
    verifies them against the company's webhook secrets and ingests the order.
    """
    if not location_id or not location_id.strip():
        raise HTTPException(status_code=400, detail="location_id query param is required")

    location = crud_location.get_location_by_shopify_id(db, location_id.strip()[:MAX_LOCATION_ID_LENGTH])
    if not location:
        raise HTTPException(status_code=404, detail="Location not found for given shopify location id")

    secrets = [s.secret for s in location.company.webhook_secrets]
    if not secrets:
        raise HTTPException(status_code=500, detail="No webhook secrets configured for this company")

    raw_body = await request.body()
    # Any of the company's secrets may have signed it (one per connected shop/app).
    if not any(verify_hmac(secret, raw_body, x_shopify_hmac_sha256) for secret in secrets):
        raise HTTPException(status_code=401, detail="Invalid HMAC signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    result = await run_in_threadpool(engine.handle_webhook, db, location, payload, x_shopify_topic)
    return {"ok": True, "order_id": result.order_id, "created": result.created}
