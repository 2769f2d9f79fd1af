# routes/failed_webhooks.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, BackgroundTasks, Query
from sqlalchemy.orm import Session

import schemas
from database import get_db, SessionLocal
from crud import failed_webhooks as crud_failed
from deps import ActorContext, get_ingest_engine, require_any
from errors import NotFound
from jobs.failed_webhook_replay import run_failed_webhook_replay
from services import task_tracker
from services.order_ingest_service import IngestionEngine

router = APIRouter(prefix="/api/orders/failed-webhooks", tags=["Failed Webhooks"])

can_read = require_any("orders.read", "orders.manage")
can_manage = require_any("orders.manage")


@router.get("", response_model=List[schemas.FailedWebhook])
def list_failed_webhooks(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(can_read),
):
    return crud_failed.list_unresolved(db, ctx.company_id, limit)


@router.get("/tasks")
def get_replay_tasks(ctx: ActorContext = Depends(can_read)) -> Dict[str, Any]:
    task_tracker.clear_finished(older_than_seconds=3600)
    return {"tasks": task_tracker.list_tasks(ctx.company_id)}


@router.post("/replay-all", status_code=202)
def replay_all_failed_webhooks(
    background_tasks: BackgroundTasks,
    limit: Optional[int] = Query(None, ge=1, le=500),
    ctx: ActorContext = Depends(can_manage),
    engine: IngestionEngine = Depends(get_ingest_engine),
) -> Dict[str, Any]:
    task_id = task_tracker.add_task("Replay failed webhooks", company_id=ctx.company_id)
    background_tasks.add_task(
        run_failed_webhook_replay,
        SessionLocal,
        engine,
        ctx.company_id,
        limit,
        task_id,
    )
    return {"status": "ok", "task_id": task_id}


@router.get("/{record_id}", response_model=schemas.FailedWebhookDetail)
def get_failed_webhook(record_id: int, db: Session = Depends(get_db), ctx: ActorContext = Depends(can_read)):
    record = crud_failed.get_failed_webhook(db, record_id, ctx.company_id)
    if not record:
        raise NotFound("Failed webhook not found")
    return record


@router.post("/{record_id}/retry")
def retry_failed_webhook(
    record_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(can_manage),
    engine: IngestionEngine = Depends(get_ingest_engine),
):
    result = engine.replay(db, record_id, ctx.company_id)
    return {"success": True, "order_id": result.order_id, "created": result.created}


@router.delete("/{record_id}")
def delete_failed_webhook(record_id: int, db: Session = Depends(get_db), ctx: ActorContext = Depends(can_manage)):
    record = crud_failed.get_failed_webhook(db, record_id, ctx.company_id)
    if not record:
        raise NotFound("Failed webhook not found")
    crud_failed.delete_failed_webhook(db, record)
    return {"success": True}
