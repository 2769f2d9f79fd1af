# services/fulfillment_service.py
"""
Staff-driven fulfillment transitions.

Each action re-reads the order, lets the stage graph decide the field delta and
writes it conditionally on the version that was read. A lost race is retried
once from a fresh read; a second loss surfaces as Conflict.
"""
from __future__ import annotations

from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

import models
import schemas
from crud import order as crud_order
from errors import Conflict, InvalidStage, NotFound, PermissionDenied, ValidationError
from services import stage_graph
from services.notification_service import delivery_url, order_context
from utils import get_logger, utcnow

logger = get_logger("fulfillment")

MAX_ATTEMPTS = 2
MIN_TOKEN_LENGTH = 16


class FulfillmentEngine:
    def __init__(self, dispatcher, token_factory: Callable[[], str] = stage_graph.new_delivery_token,
                 clock: Callable[[], Any] = utcnow):
        self.dispatcher = dispatcher
        self.token_factory = token_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_permission(ctx, action_name: str) -> None:
        required = stage_graph.ACTION_PERMISSIONS[action_name]
        if not ctx.has_any(required):
            raise PermissionDenied(f"Missing permission for {action_name}", required=list(required))

    @staticmethod
    def _resolve_references(db: Session, order: models.Order, action) -> stage_graph.References:
        company_id = order.company_id
        if isinstance(action, schemas.PutOnHold) and action.hold_reason_id is not None:
            return stage_graph.References(
                hold_reason_found=crud_order.get_hold_reason(db, action.hold_reason_id, company_id) is not None)
        if isinstance(action, schemas.Dispatch):
            return stage_graph.References(
                rider_found=action.rider_id is not None
                and crud_order.get_rider(db, action.rider_id, company_id) is not None,
                courier_found=action.courier_service_id is not None
                and crud_order.get_courier_service(db, action.courier_service_id, company_id) is not None,
            )
        if isinstance(action, schemas.AddSamples):
            wanted = [s.sample_free_issue_item_id for s in action.samples]
            found = crud_order.get_sample_item_ids(db, wanted, company_id)
            return stage_graph.References(
                missing_sample_item_ids=tuple(sorted({i for i in wanted if i not in found})))
        return stage_graph.References()

    def _notification_context(self, db: Session, order: models.Order) -> Dict[str, str]:
        location = order.company_location
        context = order_context(order, location.name if location else None)
        context["deliveryUrl"] = delivery_url(order.rider_delivery_token)
        rider = order.dispatched_by_rider
        context["riderName"] = (rider.name or "") if rider else ""
        context["riderPhone"] = (rider.mobile or "") if rider else ""
        return context

    def _notify(self, db: Session, order: models.Order, triggers) -> None:
        if not triggers:
            return
        context = self._notification_context(db, order)
        for trigger in triggers:
            self.dispatcher.submit(order.company_id, order.id, trigger, context)

    def _snapshot(self, db: Session, order_id: int, company_id: int) -> models.Order:
        order = crud_order.get_order_detail(db, order_id, company_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    # ------------------------------------------------------------------
    # staff actions
    # ------------------------------------------------------------------

    def apply_action(self, db: Session, ctx, order_id: int, action) -> models.Order:
        """Run one staff action and return the refreshed order."""
        self._check_permission(ctx, action.action)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            order = crud_order.get_order_for_company(db, order_id, ctx.company_id)
            if order is None:
                raise NotFound("Order not found")

            read_version = order.version
            if action.expected_version is not None and action.expected_version != read_version:
                logger.warning("[fulfillment] order %s %s: acted on version %s, stored %s (attempt %d)",
                               order_id, action.action, action.expected_version, read_version, attempt)
                continue

            refs = self._resolve_references(db, order, action)
            transition = stage_graph.plan(
                stage_graph.StageState.of(order), action, refs,
                actor_id=ctx.user_id, now=self.clock(), token_factory=self.token_factory,
            )

            if crud_order.apply_transition(db, order.id, read_version, transition.fields, transition.increments):
                if transition.allocations:
                    crud_order.upsert_sample_allocations(db, order.id, transition.allocations, ctx.user_id)
                db.commit()
                break

            db.rollback()
            logger.warning("[fulfillment] order %s %s lost a concurrent write (attempt %d)",
                           order_id, action.action, attempt)
        else:
            raise Conflict("Order was modified concurrently, reload and try again")

        order = self._snapshot(db, order_id, ctx.company_id)
        logger.info("[fulfillment] order %s %s -> %s by user %s", order_id, action.action,
                    order.fulfillment_stage.value, ctx.user_id)
        self._notify(db, order, transition.notifications)
        return order

    def record_print(self, db: Session, ctx, order_id: int) -> models.Order:
        self._check_permission(ctx, "print")
        if not crud_order.record_print(db, order_id, ctx.company_id, ctx.user_id, self.clock()):
            db.rollback()
            raise NotFound("Order not found")
        db.commit()
        return self._snapshot(db, order_id, ctx.company_id)

    def resend_rider_sms(self, db: Session, ctx, order_id: int) -> models.Order:
        self._check_permission(ctx, "resend_rider_sms")
        order = self._snapshot(db, order_id, ctx.company_id)
        if order.fulfillment_stage != models.FulfillmentStage.DISPATCHED:
            raise InvalidStage("Order is not dispatched", current_stage=order.fulfillment_stage.value)
        if order.dispatched_by_rider_id is None or not order.rider_delivery_token:
            raise InvalidStage("Order was not dispatched with a rider", current_stage=order.fulfillment_stage.value)
        self._notify(db, order, ("rider_dispatched",))
        return order

    # ------------------------------------------------------------------
    # public rider link
    # ------------------------------------------------------------------

    def rider_order(self, db: Session, token: str) -> models.Order:
        if not token or len(token) < MIN_TOKEN_LENGTH:
            raise ValidationError("Invalid token")
        order = crud_order.get_order_by_rider_token(db, token)
        if order is None:
            raise NotFound("Invalid or expired link")
        return order

    def confirm_rider_delivery(self, db: Session, token: str, confirmed: bool) -> models.Order:
        """
        Rider confirms delivery through the token link. The token is cleared on
        success, so the link stops resolving afterwards; an order already past
        dispatch is returned untouched.
        """
        order = self.rider_order(db, token)
        if not confirmed or order.fulfillment_stage != models.FulfillmentStage.DISPATCHED:
            return order

        transition = stage_graph.plan_rider_confirmation(stage_graph.StageState.of(order), self.clock())
        if not crud_order.apply_transition(db, order.id, order.version, transition.fields):
            db.rollback()
            raise Conflict("Order was modified concurrently, reload and try again")
        db.commit()

        order = self._snapshot(db, order.id, order.company_id)
        logger.info("[fulfillment] order %s delivered (rider confirmation)", order.id)
        self._notify(db, order, transition.notifications)
        return order
