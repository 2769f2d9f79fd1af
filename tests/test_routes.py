import json

import models
from models import FulfillmentStage as S
from utils import sign_payload

from conftest import WEBHOOK_SECRET


def _post_webhook(client, payload, location_id="70001", secret=WEBHOOK_SECRET, topic="orders/create"):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        "/api/webhooks/shopify/orders",
        params={"location_id": location_id} if location_id is not None else None,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Shopify-Hmac-Sha256": sign_payload(secret, body),
            "X-Shopify-Topic": topic,
        },
    )


# ---------------- webhook boundary ----------------

def test_signed_webhook_is_ingested(client, db, dispatcher, order_payload):
    resp = _post_webhook(client, order_payload())
    assert resp.status_code == 200
    assert resp.json()["created"] is True
    assert db.query(models.Order).count() == 1
    assert dispatcher.triggers == ["order_received"]


def test_webhook_signature_and_location_checks(client, order_payload):
    assert _post_webhook(client, order_payload(), secret="wrong").status_code == 401
    assert _post_webhook(client, order_payload(), location_id=None).status_code == 400
    assert _post_webhook(client, order_payload(), location_id="99999").status_code == 404
    # The other company has no webhook secrets configured.
    assert _post_webhook(client, order_payload(), location_id="70002").status_code == 500


def test_webhook_rejects_non_json_body(client):
    body = b"not json"
    resp = client.post(
        "/api/webhooks/shopify/orders", params={"location_id": "70001"}, content=body,
        headers={"X-Shopify-Hmac-Sha256": sign_payload(WEBHOOK_SECRET, body)},
    )
    assert resp.status_code == 400


def test_invalid_webhook_payload_is_recorded_for_replay(client, db, order_payload):
    payload = order_payload()
    payload["line_items"] = [{"id": 1, "variant_id": 5, "price": "10.00", "quantity": 0}]

    resp = _post_webhook(client, payload)

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "validation_error"
    record = db.query(models.FailedOrderWebhook).one()
    assert body["failed_record_id"] == record.id
    assert record.shopify_topic == "orders/create"


# ---------------- orders ----------------

def test_order_requires_authentication(client, make_order):
    order_id = make_order(S.PRINT)
    assert client.get(f"/api/orders/{order_id}").status_code == 401
    assert client.get(f"/api/orders/{order_id}", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_get_order_snapshot(client, auth_headers, make_order):
    order_id = make_order(S.PRINT)
    resp = client.get(f"/api/orders/{order_id}", headers=auth_headers())
    assert resp.status_code == 200
    body = resp.json()
    assert body["fulfillment_stage"] == "print"
    assert body["version"] == 0
    assert body["line_items"] == []

    assert client.get(f"/api/orders/{order_id}", headers=auth_headers(permissions=["reports.read"])).status_code == 403


def test_fulfillment_action_endpoint(client, auth_headers, make_order):
    order_id = make_order(S.PRINT)
    resp = client.patch(f"/api/orders/{order_id}/fulfillment", headers=auth_headers(),
                        json={"action": "mark_ready", "expected_version": 0})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["order"]["fulfillment_stage"] == "ready_to_dispatch"
    assert body["order"]["version"] == 1

    # Same snapshot again: somebody else already moved the order.
    resp = client.patch(f"/api/orders/{order_id}/fulfillment", headers=auth_headers(),
                        json={"action": "mark_ready", "expected_version": 0})
    assert resp.status_code == 409
    assert resp.json()["code"] == "conflict"


def test_fulfillment_action_errors(client, auth_headers, make_order, seed):
    order_id = make_order(S.ORDER_RECEIVED)
    url = f"/api/orders/{order_id}/fulfillment"

    resp = client.patch(url, headers=auth_headers(), json={"action": "dispatch", "rider_id": seed.rider_id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Order must be at ready to dispatch stage", "code": "invalid_stage",
                           "current_stage": "order_received"}

    assert client.patch(url, headers=auth_headers(), json={"action": "revert_to_stage"}).status_code == 400
    assert client.patch(url, headers=auth_headers(),
                        json={"action": "mark_ready", "unexpected": 1}).status_code == 400
    assert client.patch("/api/orders/999999/fulfillment", headers=auth_headers(),
                        json={"action": "mark_ready"}).status_code == 404
    assert client.patch(url, headers=auth_headers(permissions=["orders.read"]),
                        json={"action": "advance_to_print"}).status_code == 403


def test_print_endpoint(client, auth_headers, make_order):
    order_id = make_order(S.PRINT)
    resp = client.post(f"/api/orders/{order_id}/print",
                       headers=auth_headers(permissions=["fulfillment.order_print.print"]))
    assert resp.status_code == 200
    assert resp.json()["print_count"] == 1


def test_remarks_crud(client, auth_headers, make_order):
    order_id = make_order(S.PRINT)
    resp = client.post(f"/api/orders/{order_id}/remarks", headers=auth_headers(),
                       json={"stage": "print", "type": "external", "content": "  Gift wrap please  ",
                             "show_on_invoice": True})
    assert resp.status_code == 201
    remark = resp.json()
    assert remark["content"] == "Gift wrap please"

    resp = client.patch(f"/api/orders/{order_id}/remarks/{remark['id']}", headers=auth_headers(),
                        json={"content": "No gift wrap", "show_on_invoice": False})
    assert resp.status_code == 200
    assert resp.json()["show_on_invoice"] is False

    snapshot = client.get(f"/api/orders/{order_id}", headers=auth_headers()).json()
    assert [r["content"] for r in snapshot["remarks"]] == ["No gift wrap"]

    assert client.delete(f"/api/orders/{order_id}/remarks/{remark['id']}", headers=auth_headers()).status_code == 200
    assert client.delete(f"/api/orders/{order_id}/remarks/{remark['id']}", headers=auth_headers()).status_code == 404
    assert client.post(f"/api/orders/{order_id}/remarks", headers=auth_headers(),
                       json={"stage": "print", "type": "internal", "content": "   "}).status_code == 400


# ---------------- failed webhooks ----------------

def test_failed_webhook_list_view_retry_delete(client, db, seed, auth_headers, order_payload):
    bad = order_payload()
    del bad["currency"]
    _post_webhook(client, bad)
    _post_webhook(client, order_payload(order_id=2002), topic="orders/updated")
    good_but_failed = order_payload(order_id=3003)
    record = models.FailedOrderWebhook(company_id=seed.company_id, company_location_id=seed.location.id,
                                       shopify_order_id="3003",
                                       shopify_topic="orders/create", error_message="db timeout",
                                       raw_payload=good_but_failed)
    db.add(record)
    db.commit()

    listing = client.get("/api/orders/failed-webhooks", headers=auth_headers()).json()
    assert sorted(r["shopify_order_id"] for r in listing) == ["1001", "3003"]

    detail = client.get(f"/api/orders/failed-webhooks/{record.id}", headers=auth_headers()).json()
    assert detail["raw_payload"]["id"] == 3003

    resp = client.post(f"/api/orders/failed-webhooks/{record.id}/retry", headers=auth_headers())
    assert resp.status_code == 200
    assert resp.json()["created"] is True

    listing = client.get("/api/orders/failed-webhooks", headers=auth_headers()).json()
    assert [r["shopify_order_id"] for r in listing] == ["1001"]

    bad_id = listing[0]["id"]
    assert client.post(f"/api/orders/failed-webhooks/{bad_id}/retry", headers=auth_headers()).status_code == 400
    assert client.delete(f"/api/orders/failed-webhooks/{bad_id}", headers=auth_headers()).status_code == 200
    assert client.get(f"/api/orders/failed-webhooks/{bad_id}", headers=auth_headers()).status_code == 404


def test_replay_all_runs_in_background(client, db, seed, session_factory, auth_headers, order_payload,
                                       monkeypatch):
    for order_id in (4001, 4002):
        db.add(models.FailedOrderWebhook(company_id=seed.company_id, company_location_id=seed.location.id,
                                         shopify_order_id=str(order_id),
                                         error_message="timeout", raw_payload=order_payload(order_id=order_id)))
    db.commit()
    monkeypatch.setattr("routes.failed_webhooks.SessionLocal", session_factory)

    resp = client.post("/api/orders/failed-webhooks/replay-all", headers=auth_headers())
    assert resp.status_code == 202
    task_id = resp.json()["task_id"]

    tasks = client.get("/api/orders/failed-webhooks/tasks", headers=auth_headers()).json()["tasks"]
    task = next(t for t in tasks if t["id"] == task_id)
    assert task["done"] is True
    assert task["total"] == 2
    assert task["succeeded"] == 2

    # Tasks are private to the company that started them.
    assert client.get("/api/orders/failed-webhooks/tasks").status_code == 401
    other = client.get("/api/orders/failed-webhooks/tasks",
                       headers=auth_headers(company_id=seed.other_company_id)).json()["tasks"]
    assert task_id not in [t["id"] for t in other]
    db.expire_all()
    assert db.query(models.Order).count() == 2


# ---------------- rider link ----------------

def test_rider_delivery_link(client, dispatcher, make_order):
    token = "e" * 32
    make_order(S.DISPATCHED, rider_delivery_token=token)

    assert client.get(f"/api/public/rider-delivery/{token}").json() == {"orderName": "#T1"}
    page = client.get(f"/r/d/{token}")
    assert page.status_code == 200
    assert "Confirm delivery" in page.text

    resp = client.post(f"/api/public/rider-delivery/{token}", json={"confirmed": True})
    assert resp.status_code == 200
    assert resp.json()["stage"] == "delivery_complete"
    assert dispatcher.triggers == ["delivery_complete"]

    assert client.get(f"/api/public/rider-delivery/{token}").status_code == 404
    assert client.get("/api/public/rider-delivery/short").status_code == 400
