# services/stage_graph.py
"""
The fixed fulfillment stage graph.

Every function here is pure: given the order's current stage and hold/ready
flags, an action and the references the caller resolved, it returns the field
delta to write or raises a StageRejection. Nothing touches the database.
"""
from __future__ import annotations

import secrets
import typing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

import schemas
from errors import ConflictingParameter, InvalidStage, MissingParameter, ReferenceNotFound
from models import FulfillmentStage as S

FORWARD_PATH: Tuple[S, ...] = (
    S.ORDER_RECEIVED,
    S.SAMPLE_FREE_ISSUE,
    S.PRINT,
    S.READY_TO_DISPATCH,
    S.DISPATCHED,
    S.DELIVERY_COMPLETE,
    S.INVOICE_COMPLETE,
)

# Stages from which a "paid" ingestion update may still fast-forward the order.
PRE_DISPATCH_STAGES: FrozenSet[S] = frozenset({
    S.ORDER_RECEIVED, S.SAMPLE_FREE_ISSUE, S.PRINT, S.READY_TO_DISPATCH,
})
POS_COMPLETABLE_STAGES: FrozenSet[S] = PRE_DISPATCH_STAGES | {S.DISPATCHED}

# Any one of these grants the action.
ACTION_PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    "add_samples": ("orders.manage", "fulfillment.sample_free_issue.manage"),
    "advance_to_print": ("orders.manage", "fulfillment.sample_free_issue.manage"),
    "put_on_hold": ("orders.manage", "fulfillment.ready_dispatch.put_on_hold"),
    "mark_ready": ("orders.manage", "fulfillment.ready_dispatch.package_ready"),
    "revert_hold": ("orders.manage", "fulfillment.ready_dispatch.revert_hold"),
    "dispatch": ("orders.manage", "fulfillment.ready_dispatch.dispatch"),
    "mark_delivered": ("orders.manage", "fulfillment.delivery_invoice.mark_delivered"),
    "mark_invoice_complete": ("orders.manage", "fulfillment.delivery_invoice.mark_complete"),
    "complete_pos": ("orders.manage",),
    # Order operations that do not move the stage.
    "print": ("orders.read", "fulfillment.order_print.print"),
    "resend_rider_sms": ("orders.manage",),
}


def stage_index(stage: S) -> int:
    return FORWARD_PATH.index(stage)


def new_delivery_token() -> str:
    return secrets.token_hex(16)


@dataclass(frozen=True)
class StageState:
    stage: S
    on_hold: bool
    ready: bool
    source_name: str = "web"

    @classmethod
    def of(cls, order) -> "StageState":
        return cls(
            stage=S(order.fulfillment_stage),
            on_hold=order.package_on_hold_at is not None,
            ready=order.package_ready_at is not None,
            source_name=(order.source_name or "web").lower(),
        )


@dataclass(frozen=True)
class References:
    """Which of the action's referenced ids exist in the caller's company."""
    hold_reason_found: bool = False
    rider_found: bool = False
    courier_found: bool = False
    missing_sample_item_ids: Tuple[int, ...] = ()


@dataclass
class Transition:
    fields: Dict[str, Any] = field(default_factory=dict)
    increments: Dict[str, int] = field(default_factory=dict)
    notifications: Tuple[str, ...] = ()
    allocations: Tuple[Tuple[int, int], ...] = ()

    @property
    def target_stage(self) -> Optional[S]:
        return self.fields.get("fulfillment_stage")


def _require_stage(state: StageState, allowed: FrozenSet[S], message: str) -> None:
    if state.stage not in allowed:
        raise InvalidStage(message, current_stage=state.stage.value)


# --------------------------- planners ---------------------------

def _plan_add_samples(state, action: schemas.AddSamples, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.ORDER_RECEIVED, S.SAMPLE_FREE_ISSUE}),
                   "Samples can only be added at sample/free issue stage")
    if not action.samples:
        raise MissingParameter("At least one sample/free issue item is required")
    item_ids = [s.sample_free_issue_item_id for s in action.samples]
    if len(set(item_ids)) != len(item_ids):
        raise ConflictingParameter("Each sample/free issue item may appear only once")
    if refs.missing_sample_item_ids:
        raise ReferenceNotFound(
            f"Sample/free issue item not found: {', '.join(str(i) for i in refs.missing_sample_item_ids)}"
        )

    fields: Dict[str, Any] = {}
    if state.stage == S.ORDER_RECEIVED:
        fields["fulfillment_stage"] = S.SAMPLE_FREE_ISSUE
    return Transition(
        fields=fields,
        allocations=tuple((s.sample_free_issue_item_id, s.quantity) for s in action.samples),
    )


def _plan_advance_to_print(state, action, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.ORDER_RECEIVED, S.SAMPLE_FREE_ISSUE}),
                   "Can only advance to print from sample/free issue stage")
    return Transition(fields={
        "fulfillment_stage": S.PRINT,
        "sample_free_issue_complete_at": now,
        "sample_free_issue_complete_by_id": actor_id,
    })


def _plan_put_on_hold(state, action: schemas.PutOnHold, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.PRINT, S.READY_TO_DISPATCH}),
                   "Can only put on hold at print or ready to dispatch stage")
    if action.hold_reason_id is None:
        raise MissingParameter("A hold reason is required")
    if not refs.hold_reason_found:
        raise ReferenceNotFound("Hold reason not found")
    return Transition(fields={
        "fulfillment_stage": S.READY_TO_DISPATCH,
        "package_on_hold_at": now,
        "package_hold_reason_id": action.hold_reason_id,
        "package_ready_at": None,
        "package_ready_by_id": None,
    })


def _plan_mark_ready(state, action, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.PRINT, S.READY_TO_DISPATCH}),
                   "Can only mark ready at print or ready to dispatch stage")
    return Transition(
        fields={
            "fulfillment_stage": S.READY_TO_DISPATCH,
            "package_ready_at": now,
            "package_ready_by_id": actor_id,
            "package_on_hold_at": None,
            "package_hold_reason_id": None,
        },
        notifications=("package_ready",),
    )


def _plan_revert_hold(state, action, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.PRINT, S.READY_TO_DISPATCH}),
                   "Can only revert hold at ready to dispatch stage")
    if not state.on_hold:
        raise InvalidStage("Package is not on hold", current_stage=state.stage.value)
    # Stage is left alone: holding never moves the order along the path.
    return Transition(fields={
        "package_on_hold_at": None,
        "package_hold_reason_id": None,
    })


def _plan_dispatch(state, action: schemas.Dispatch, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.READY_TO_DISPATCH}), "Order must be at ready to dispatch stage")
    if state.on_hold:
        raise InvalidStage("Package is on hold", current_stage=state.stage.value)
    if not state.ready:
        raise InvalidStage("Package must be marked ready before dispatch", current_stage=state.stage.value)
    if action.rider_id is not None and action.courier_service_id is not None:
        raise ConflictingParameter("Select either rider or courier service, not both")
    if action.rider_id is None and action.courier_service_id is None:
        raise MissingParameter("Select either rider or courier service")

    token = None
    notifications: Tuple[str, ...] = ("dispatched",)
    if action.rider_id is not None:
        if not refs.rider_found:
            raise ReferenceNotFound("Selected user is not a rider")
        token = token_factory()
        notifications = ("dispatched", "rider_dispatched")
    elif not refs.courier_found:
        raise ReferenceNotFound("Courier service not found")

    return Transition(
        fields={
            "fulfillment_stage": S.DISPATCHED,
            "dispatched_at": now,
            "dispatched_by_id": actor_id,
            "dispatched_by_rider_id": action.rider_id,
            "dispatched_by_courier_service_id": action.courier_service_id,
            "rider_delivery_token": token,
        },
        notifications=notifications,
    )


def _plan_mark_delivered(state, action, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.DISPATCHED}), "Can only mark delivered when order is dispatched")
    return Transition(
        fields={
            "fulfillment_stage": S.DELIVERY_COMPLETE,
            "delivery_complete_at": now,
            "delivery_complete_by_id": actor_id,
            "rider_delivery_token": None,
        },
        notifications=("delivery_complete",),
    )


def _plan_mark_invoice_complete(state, action, refs, actor_id, now, token_factory):
    _require_stage(state, frozenset({S.DELIVERY_COMPLETE}),
                   "Delivery must be marked complete before invoice complete")
    return Transition(fields={
        "fulfillment_stage": S.INVOICE_COMPLETE,
        "fulfillment_status": "fulfilled",
        "invoice_complete_at": now,
        "invoice_complete_by_id": actor_id,
    })


def _plan_complete_pos(state, action, refs, actor_id, now, token_factory):
    if state.source_name != "pos":
        raise InvalidStage("Complete POS is only for POS orders", current_stage=state.stage.value)
    _require_stage(state, POS_COMPLETABLE_STAGES, "Order is already complete")
    # invoice_complete_at is stamped whether or not the order is paid.
    # Unpaid POS orders are not treated differently here.
    return Transition(
        fields={
            "fulfillment_stage": S.DELIVERY_COMPLETE,
            "sample_free_issue_complete_at": now,
            "sample_free_issue_complete_by_id": actor_id,
            "last_printed_at": now,
            "last_printed_by_id": actor_id,
            "package_ready_at": now,
            "package_ready_by_id": actor_id,
            "package_on_hold_at": None,
            "package_hold_reason_id": None,
            "dispatched_at": now,
            "dispatched_by_id": actor_id,
            "dispatched_by_rider_id": None,
            "dispatched_by_courier_service_id": None,
            "rider_delivery_token": None,
            "delivery_complete_at": now,
            "delivery_complete_by_id": actor_id,
            "invoice_complete_at": now,
            "invoice_complete_by_id": actor_id,
        },
        increments={"print_count": 1},
    )


_PLANNERS: Dict[type, Callable[..., Transition]] = {
    schemas.AddSamples: _plan_add_samples,
    schemas.AdvanceToPrint: _plan_advance_to_print,
    schemas.PutOnHold: _plan_put_on_hold,
    schemas.MarkReady: _plan_mark_ready,
    schemas.RevertHold: _plan_revert_hold,
    schemas.Dispatch: _plan_dispatch,
    schemas.MarkDelivered: _plan_mark_delivered,
    schemas.MarkInvoiceComplete: _plan_mark_invoice_complete,
    schemas.CompletePos: _plan_complete_pos,
}

_unplanned = set(typing.get_args(typing.get_args(schemas.FulfillmentAction)[0])) - set(_PLANNERS)
if _unplanned:
    raise RuntimeError(f"No stage planner for actions: {sorted(c.__name__ for c in _unplanned)}")


def plan(
    state: StageState,
    action,
    refs: References,
    actor_id: Optional[int],
    now: datetime,
    token_factory: Callable[[], str] = new_delivery_token,
) -> Transition:
    """Decide the field delta for `action` taken from `state`, or raise a StageRejection."""
    planner = _PLANNERS[type(action)]
    return planner(state, action, refs, actor_id, now, token_factory)


def plan_rider_confirmation(state: StageState, now: datetime) -> Transition:
    """A rider confirming delivery through the token link; there is no staff actor."""
    return _plan_mark_delivered(state, None, References(), None, now, new_delivery_token)
