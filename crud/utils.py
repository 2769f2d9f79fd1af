# crud/utils.py

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def _insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upsert is not supported on dialect '{dialect}'")


def upsert_batch(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    index_elements: List[str],
    update_columns: Optional[Iterable[str]] = None,
):
    """
    INSERT ... ON CONFLICT (index_elements) DO UPDATE for a batch of row dicts.

    Columns named in `update_columns` are overwritten on conflict (default: every
    non-key column present in the rows). An empty update set turns the statement
    into an insert-if-absent.
    """
    if not rows:
        return None

    stmt = _insert_for(db, model).values(rows)
    if update_columns is None:
        update_columns = [c for c in rows[0].keys() if c not in index_elements]
    set_ = {c: stmt.excluded[c] for c in update_columns}

    if set_:
        stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return db.execute(stmt)
