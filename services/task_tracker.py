# services/task_tracker.py
# In-process registry of operator-triggered background jobs (e.g. failed webhook replay).
from dataclasses import dataclass, asdict
from threading import Lock
from typing import Dict, Optional, List
import uuid
import time


@dataclass
class _Task:
    id: str
    title: str
    company_id: Optional[int] = None
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    done: bool = False
    ok: Optional[bool] = None
    note: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0


_TASKS: Dict[str, _Task] = {}
_LOCK = Lock()


def _now() -> float:
    return time.time()


def add_task(title: str, total: int = 0, company_id: Optional[int] = None) -> str:
    t = _Task(id=str(uuid.uuid4()), title=title, company_id=company_id, total=total,
              created_at=_now(), updated_at=_now())
    with _LOCK:
        _TASKS[t.id] = t
    return t.id


def set_total(task_id: str, total: int):
    with _LOCK:
        if t := _TASKS.get(task_id):
            t.total, t.updated_at = total, _now()


def record(task_id: str, succeeded: bool, note: Optional[str] = None):
    with _LOCK:
        if t := _TASKS.get(task_id):
            if succeeded:
                t.succeeded += 1
            else:
                t.failed += 1
            t.note, t.updated_at = note, _now()


def finish_task(task_id: str, ok: bool, note: Optional[str] = None):
    with _LOCK:
        if t := _TASKS.get(task_id):
            t.done, t.ok, t.note, t.updated_at = True, ok, note, _now()


def list_tasks(company_id: Optional[int] = None) -> List[Dict]:
    with _LOCK:
        tasks = [t for t in _TASKS.values() if company_id is None or t.company_id == company_id]
        return [asdict(t) for t in sorted(tasks, key=lambda x: x.updated_at, reverse=True)]


def clear_finished(older_than_seconds: int = 3600):
    now = _now()
    with _LOCK:
        for k in [k for k, t in _TASKS.items() if t.done and (now - t.updated_at) >= older_than_seconds]:
            _TASKS.pop(k, None)
