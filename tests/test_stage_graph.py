from datetime import datetime, timezone

import pytest

import schemas
from errors import ConflictingParameter, InvalidStage, MissingParameter, ReferenceNotFound
from models import FulfillmentStage as S
from services import stage_graph
from services.stage_graph import References, StageState, plan

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ACTOR = 7


def _plan(state, action, refs=References()):
    return plan(state, action, refs, ACTOR, NOW, token_factory=lambda: "tok" * 8)


def test_add_samples_from_order_received_advances_stage():
    action = schemas.AddSamples(action="add_samples",
                                samples=[{"sample_free_issue_item_id": 3, "quantity": 2}])
    t = _plan(StageState(S.ORDER_RECEIVED, False, False), action)
    assert t.target_stage == S.SAMPLE_FREE_ISSUE
    assert t.allocations == ((3, 2),)


def test_add_samples_at_sample_stage_keeps_stage():
    action = schemas.AddSamples(action="add_samples",
                                samples=[{"sample_free_issue_item_id": 3, "quantity": 1}])
    t = _plan(StageState(S.SAMPLE_FREE_ISSUE, False, False), action)
    assert "fulfillment_stage" not in t.fields


def test_add_samples_rejections():
    state = StageState(S.SAMPLE_FREE_ISSUE, False, False)
    with pytest.raises(MissingParameter):
        _plan(state, schemas.AddSamples(action="add_samples", samples=[]))
    dup = schemas.AddSamples(action="add_samples", samples=[
        {"sample_free_issue_item_id": 3, "quantity": 1},
        {"sample_free_issue_item_id": 3, "quantity": 2},
    ])
    with pytest.raises(ConflictingParameter):
        _plan(state, dup)
    one = schemas.AddSamples(action="add_samples", samples=[{"sample_free_issue_item_id": 9, "quantity": 1}])
    with pytest.raises(ReferenceNotFound):
        _plan(state, one, References(missing_sample_item_ids=(9,)))
    with pytest.raises(InvalidStage) as exc:
        _plan(StageState(S.PRINT, False, False), one)
    assert exc.value.current_stage == "print"


def test_put_on_hold_clears_ready_and_keeps_ready_to_dispatch():
    t = _plan(StageState(S.READY_TO_DISPATCH, False, True),
              schemas.PutOnHold(action="put_on_hold", hold_reason_id=4),
              References(hold_reason_found=True))
    assert t.fields["fulfillment_stage"] == S.READY_TO_DISPATCH
    assert t.fields["package_on_hold_at"] == NOW
    assert t.fields["package_ready_at"] is None


def test_put_on_hold_needs_an_existing_reason():
    state = StageState(S.PRINT, False, False)
    with pytest.raises(MissingParameter):
        _plan(state, schemas.PutOnHold(action="put_on_hold"))
    with pytest.raises(ReferenceNotFound):
        _plan(state, schemas.PutOnHold(action="put_on_hold", hold_reason_id=4))


def test_mark_ready_clears_hold_and_notifies():
    t = _plan(StageState(S.READY_TO_DISPATCH, True, False), schemas.MarkReady(action="mark_ready"))
    assert t.fields["package_on_hold_at"] is None
    assert t.fields["package_ready_by_id"] == ACTOR
    assert t.notifications == ("package_ready",)


def test_revert_hold_requires_hold_and_leaves_stage_alone():
    with pytest.raises(InvalidStage):
        _plan(StageState(S.READY_TO_DISPATCH, False, False), schemas.RevertHold(action="revert_hold"))
    t = _plan(StageState(S.READY_TO_DISPATCH, True, False), schemas.RevertHold(action="revert_hold"))
    assert "fulfillment_stage" not in t.fields
    assert t.fields == {"package_on_hold_at": None, "package_hold_reason_id": None}


@pytest.mark.parametrize("rider_id,courier_id,error", [
    (1, 2, ConflictingParameter),
    (None, None, MissingParameter),
])
def test_dispatch_method_is_exclusive(rider_id, courier_id, error):
    action = schemas.Dispatch(action="dispatch", rider_id=rider_id, courier_service_id=courier_id)
    with pytest.raises(error):
        _plan(StageState(S.READY_TO_DISPATCH, False, True), action, References(rider_found=True, courier_found=True))


def test_dispatch_is_gated_by_hold_and_ready():
    action = schemas.Dispatch(action="dispatch", courier_service_id=2)
    refs = References(courier_found=True)
    with pytest.raises(InvalidStage):
        _plan(StageState(S.READY_TO_DISPATCH, True, True), action, refs)
    with pytest.raises(InvalidStage):
        _plan(StageState(S.READY_TO_DISPATCH, False, False), action, refs)
    with pytest.raises(InvalidStage):
        _plan(StageState(S.PRINT, False, True), action, refs)


def test_dispatch_with_rider_issues_token_and_two_notifications():
    t = _plan(StageState(S.READY_TO_DISPATCH, False, True),
              schemas.Dispatch(action="dispatch", rider_id=1), References(rider_found=True))
    assert t.fields["rider_delivery_token"] == "tok" * 8
    assert t.notifications == ("dispatched", "rider_dispatched")


def test_dispatch_with_courier_has_no_token():
    t = _plan(StageState(S.READY_TO_DISPATCH, False, True),
              schemas.Dispatch(action="dispatch", courier_service_id=2), References(courier_found=True))
    assert t.fields["rider_delivery_token"] is None
    assert t.notifications == ("dispatched",)


def test_dispatch_to_non_rider_is_reference_not_found():
    with pytest.raises(ReferenceNotFound):
        _plan(StageState(S.READY_TO_DISPATCH, False, True),
              schemas.Dispatch(action="dispatch", rider_id=1), References(rider_found=False))


def test_delivery_then_invoice():
    t = _plan(StageState(S.DISPATCHED, False, True), schemas.MarkDelivered(action="mark_delivered"))
    assert t.target_stage == S.DELIVERY_COMPLETE
    assert t.fields["rider_delivery_token"] is None
    assert t.notifications == ("delivery_complete",)

    t = _plan(StageState(S.DELIVERY_COMPLETE, False, True),
              schemas.MarkInvoiceComplete(action="mark_invoice_complete"))
    assert t.target_stage == S.INVOICE_COMPLETE
    with pytest.raises(InvalidStage):
        _plan(StageState(S.DISPATCHED, False, True), schemas.MarkInvoiceComplete(action="mark_invoice_complete"))


def test_complete_pos_short_circuits_without_notifications():
    t = _plan(StageState(S.PRINT, False, False, source_name="pos"), schemas.CompletePos(action="complete_pos"))
    assert t.target_stage == S.DELIVERY_COMPLETE
    assert t.increments == {"print_count": 1}
    assert t.notifications == ()
    assert t.fields["invoice_complete_at"] == NOW


def test_complete_pos_rejects_web_orders_and_finished_orders():
    with pytest.raises(InvalidStage):
        _plan(StageState(S.PRINT, False, False, source_name="web"), schemas.CompletePos(action="complete_pos"))
    with pytest.raises(InvalidStage):
        _plan(StageState(S.DELIVERY_COMPLETE, False, False, source_name="pos"),
              schemas.CompletePos(action="complete_pos"))


def test_no_action_moves_an_order_backwards():
    for stage in stage_graph.FORWARD_PATH:
        for on_hold in (False, True):
            for ready in (False, True):
                state = StageState(stage, on_hold, ready, source_name="pos")
                for action in (
                    schemas.AddSamples(action="add_samples", samples=[{"sample_free_issue_item_id": 1, "quantity": 1}]),
                    schemas.AdvanceToPrint(action="advance_to_print"),
                    schemas.PutOnHold(action="put_on_hold", hold_reason_id=1),
                    schemas.MarkReady(action="mark_ready"),
                    schemas.RevertHold(action="revert_hold"),
                    schemas.Dispatch(action="dispatch", rider_id=1),
                    schemas.MarkDelivered(action="mark_delivered"),
                    schemas.MarkInvoiceComplete(action="mark_invoice_complete"),
                    schemas.CompletePos(action="complete_pos"),
                ):
                    try:
                        t = _plan(state, action, References(hold_reason_found=True, rider_found=True))
                    except (InvalidStage, MissingParameter, ConflictingParameter, ReferenceNotFound):
                        continue
                    target = t.target_stage or stage
                    assert stage_graph.stage_index(target) >= stage_graph.stage_index(stage)


def test_every_action_has_a_permission_class():
    for action in ("add_samples", "advance_to_print", "put_on_hold", "mark_ready", "revert_hold",
                   "dispatch", "mark_delivered", "mark_invoice_complete", "complete_pos"):
        assert "orders.manage" in stage_graph.ACTION_PERMISSIONS[action]
