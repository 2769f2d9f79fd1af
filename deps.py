# deps.py
# Request-scoped dependencies: the caller context and the service engines.
from dataclasses import dataclass, field
from threading import Lock
from typing import FrozenSet, Iterable, Optional

from fastapi import Depends, HTTPException, Request
from jose import jwt, JOSEError

from config import settings
from errors import PermissionDenied
from services.fulfillment_service import FulfillmentEngine
from services.notification_service import NotificationDispatcher
from services.order_ingest_service import IngestionEngine


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, for which company, with which grants. Built once per request."""
    user_id: int
    company_id: int
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def has_any(self, required: Iterable[str]) -> bool:
        return any(p in self.permissions for p in required)


def _token_from_request(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.cookies.get(settings.auth_cookie_name)


def get_actor_context(request: Request) -> ActorContext:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JOSEError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    try:
        return ActorContext(
            user_id=int(payload["sub"]),
            company_id=int(payload["company_id"]),
            permissions=frozenset(payload.get("permissions") or []),
        )
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Malformed token")


def require_any(*permissions: str):
    """Route dependency: the caller must hold at least one of `permissions`."""
    def _checker(ctx: ActorContext = Depends(get_actor_context)) -> ActorContext:
        if not ctx.has_any(permissions):
            raise PermissionDenied("Missing permission", required=list(permissions))
        return ctx
    return _checker


# --- shared notification pool ---
_dispatcher: Optional[NotificationDispatcher] = None
_dispatcher_lock = Lock()


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = NotificationDispatcher()
        return _dispatcher


def shutdown_dispatcher() -> None:
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None:
            _dispatcher.shutdown(wait=False)
            _dispatcher = None


def get_ingest_engine(dispatcher=Depends(get_dispatcher)) -> IngestionEngine:
    return IngestionEngine(dispatcher)


def get_fulfillment_engine(dispatcher=Depends(get_dispatcher)) -> FulfillmentEngine:
    return FulfillmentEngine(dispatcher)
