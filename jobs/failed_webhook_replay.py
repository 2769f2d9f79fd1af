# jobs/failed_webhook_replay.py

from typing import Optional

from sqlalchemy.orm import Session

from config import settings
from crud import failed_webhooks as crud_failed
from errors import FulfillmentError
from services import task_tracker
from utils import get_logger

logger = get_logger("replay")


def run_failed_webhook_replay(db_factory, engine, company_id: Optional[int] = None,
                              limit: Optional[int] = None, task_id: Optional[str] = None):
    """
    Replay the oldest unresolved failed webhooks one by one. Each record is its
    own unit of work; a failure is written back to the record and the batch moves on.
    """
    db: Session = db_factory()
    succeeded = failed = 0
    try:
        ids = [r.id for r in crud_failed.list_unresolved(db, company_id, limit or settings.failed_webhook_replay_batch)]
        logger.info("[replay] %d unresolved webhook(s) to replay", len(ids))
        if task_id:
            task_tracker.set_total(task_id, len(ids))
        for record_id in ids:
            try:
                engine.replay(db, record_id, company_id)
            except FulfillmentError as e:
                failed += 1
                if task_id:
                    task_tracker.record(task_id, False, f"record {record_id}: {e.message}")
                continue
            succeeded += 1
            if task_id:
                task_tracker.record(task_id, True, f"record {record_id} resolved")
    except Exception as e:
        logger.exception("[replay] batch aborted: %s", e)
        if task_id:
            task_tracker.finish_task(task_id, False, str(e))
        raise
    finally:
        db.close()

    logger.info("[replay] batch done: %d resolved, %d still failing", succeeded, failed)
    if task_id:
        task_tracker.finish_task(task_id, failed == 0, f"{succeeded} resolved, {failed} still failing")
    return succeeded, failed
