# services/notification_service.py
"""
Fire-and-forget order SMS.

Callers hand a trigger and its template variables to NotificationDispatcher.submit
and move on; delivery happens on a worker thread with its own DB session.
Failures end up in the log and nowhere else.
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from config import settings
from database import SessionLocal
from errors import NotificationFailure
from sms_service import SmsSendError, SmsService
from utils import address_customer_name, get_logger

logger = get_logger("notifications")

PLACEHOLDERS = ("orderNumber", "orderName", "customerName", "locationName",
                "deliveryUrl", "riderName", "riderPhone")


def delivery_url(token: Optional[str]) -> str:
    if not token:
        return ""
    base = settings.app_base_url.rstrip("/")
    if not base.startswith("http"):
        base = "https://" + base
    return f"{base}/r/d/{token}"


def order_context(order: models.Order, location_name: Optional[str] = None) -> Dict[str, str]:
    """Template variables every order notification shares."""
    return {
        "orderNumber": order.order_number or order.name or order.shopify_order_id,
        "orderName": order.name or "",
        "customerName": address_customer_name(order.shipping_address)
        or address_customer_name(order.billing_address),
        "customerPhone": order.customer_phone or "",
        "locationName": location_name or "",
    }


def render_template(template: str, context: Dict[str, str]) -> str:
    message = template
    for key in PLACEHOLDERS:
        message = message.replace("{" + key + "}", context.get(key) or "")
    return message


def _recipients(trigger: str, config: models.SmsNotificationConfig, context: Dict[str, str]) -> List[str]:
    recipients: List[str] = []
    if trigger == "rider_dispatched":
        if config.send_to_rider and (context.get("riderPhone") or "").strip():
            recipients.append(context["riderPhone"].strip())
    elif config.send_to_customer and (context.get("customerPhone") or "").strip():
        recipients.append(context["customerPhone"].strip())
    # Additional recipients always get a copy (monitoring/backup).
    recipients.extend(p.strip() for p in (config.additional_recipients or []) if p and p.strip())
    return list(dict.fromkeys(recipients))


def send_order_sms(
    db: Session,
    company_id: int,
    order_id: int,
    trigger: str,
    context: Dict[str, str],
    sms_factory: Callable[[models.SmsPortalConfig], SmsService] = SmsService.from_config,
) -> int:
    """Render and send one trigger's message. Returns how many recipients accepted it."""
    config = db.query(models.SmsNotificationConfig).filter(
        models.SmsNotificationConfig.company_id == company_id,
        models.SmsNotificationConfig.trigger == trigger,
    ).first()
    if not config:
        logger.warning("[sms] %s: no config for company %s", trigger, company_id)
        return 0
    if not config.enabled:
        return 0

    recipients = _recipients(trigger, config, context)
    if not recipients:
        logger.warning("[sms] %s order %s: no recipients", trigger, order_id)
        return 0

    portal = db.query(models.SmsPortalConfig).filter(models.SmsPortalConfig.company_id == company_id).first()
    if not portal:
        raise NotificationFailure(f"SMS portal not configured for company {company_id}")

    message = render_template(config.template, context)
    client = sms_factory(portal)
    sent, failures = 0, []
    for phone in recipients:
        try:
            client.send(phone, message)
        except (SmsSendError, ValueError) as e:
            failures.append(f"{phone}: {e}")
            continue
        db.add(models.SmsLog(company_id=company_id, phone_number=phone, message=message, status="sent"))
        sent += 1
    db.commit()

    if failures:
        raise NotificationFailure(f"{trigger} order {order_id}: " + "; ".join(failures))
    return sent


class NotificationDispatcher:
    def __init__(self, session_factory=SessionLocal, max_workers: int = settings.notification_workers,
                 sms_factory: Callable[[models.SmsPortalConfig], SmsService] = SmsService.from_config):
        self._session_factory = session_factory
        self._sms_factory = sms_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def submit(self, company_id: int, order_id: int, trigger: str, context: Dict[str, str]) -> Optional[Future]:
        """Queue a notification. Never raises; the returned future is for tests and shutdown only."""
        try:
            future = self._executor.submit(self._deliver, company_id, order_id, trigger, dict(context))
        except RuntimeError as e:
            logger.error("[sms] %s order %s not queued: %s", trigger, order_id, e)
            return None
        future.add_done_callback(partial(self._log_outcome, trigger, order_id))
        return future

    def _deliver(self, company_id: int, order_id: int, trigger: str, context: Dict[str, str]) -> int:
        db = self._session_factory()
        try:
            return send_order_sms(db, company_id, order_id, trigger, context, self._sms_factory)
        finally:
            db.close()

    @staticmethod
    def _log_outcome(trigger: str, order_id: int, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("[sms] %s order %s failed: %s", trigger, order_id, exc)
        else:
            logger.debug("[sms] %s order %s delivered to %s recipient(s)", trigger, order_id, future.result())

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
