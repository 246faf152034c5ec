import pytest
from fastapi.testclient import TestClient

from app.db.models.master import Machine
from app.db.models.stages import WeavingOrder


def _status_id(client, code):
    return next(s["id"] for s in client.get("/tracking/statuses").json() if s["code"] == code)


@pytest.fixture
def order_id(client):
    resp = client.post(
        "/orders",
        json={"order_number": "ORD-API-1", "customer_name": "Acme", "quantity": 500, "due_date": "2026-11-30"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["id"]


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_catalog_endpoints(client):
    statuses = client.get("/tracking/statuses").json()
    assert len(statuses) == 16
    assert statuses[0]["code"] == "ORDER_RECEIVED"

    rows = client.get(f"/tracking/statuses/{statuses[0]['id']}/transitions").json()
    assert {r["to_status_code"] for r in rows} == {"PLANNING_STARTED", "CANCELLED", "ON_HOLD"}
    assert all(r["allowed"] for r in rows)


def test_unknown_status_is_404(client):
    resp = client.get("/tracking/statuses/nope/transitions")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_order_creation_opens_the_ledger(client, order_id):
    view = client.get(f"/tracking/orders/{order_id}").json()
    assert view["current_status"]["status_code"] == "ORDER_RECEIVED"
    assert view["order"]["order_number"] == "ORD-API-1"


def test_order_creation_requires_sales_permission(client, plant, principal_for):
    client.act_as(principal_for(plant["users"]["weaver"], permissions=["weaving:manage_workorders"], roles=("WEAVING",)))
    resp = client.post("/orders", json={"order_number": "ORD-X", "quantity": 1})
    assert resp.status_code == 403
    assert resp.json()["missing"] == ["sales:manage_orders"]


def test_status_change_rules_over_http(client, plant, principal_for, order_id):
    planning = _status_id(client, "PLANNING_STARTED")
    shipped = _status_id(client, "SHIPPED")

    resp = client.post(f"/tracking/orders/{order_id}/status", json={"status_id": shipped})
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"

    client.act_as(principal_for(plant["users"]["weaver"], permissions=["weaving:manage_workorders"], roles=("WEAVING",)))
    resp = client.post(f"/tracking/orders/{order_id}/status", json={"status_id": planning})
    assert resp.status_code == 403

    client.act_as(principal_for(None))
    resp = client.post(f"/tracking/orders/{order_id}/status", json={"status_id": planning})
    assert resp.status_code == 401

    client.act_as(principal_for(plant["users"]["planner"]))
    resp = client.post(f"/tracking/orders/{order_id}/status", json={"status_id": planning, "note": "go"})
    assert resp.status_code == 200
    assert resp.json()["status_code"] == "PLANNING_STARTED"
    assert resp.json()["actor_name"] == "planner@mill.test"

    history = client.get(f"/tracking/orders/{order_id}/history").json()
    assert [h["status_code"] for h in history] == ["PLANNING_STARTED", "ORDER_RECEIVED"]


def test_steps_and_materials(client, plant, order_id):
    resp = client.post(
        f"/tracking/orders/{order_id}/steps",
        json={"production_plan_id": "PLAN-9", "department_id": plant["departments"]["WEAVING"].id, "step": "Weaving"},
    )
    assert resp.status_code == 200, resp.text
    step_id = resp.json()["id"]
    resp = client.post(f"/tracking/orders/{order_id}/steps", json={"id": step_id, "status": "completed"})
    assert resp.json()["completion_percentage"] == 100

    resp = client.post(f"/orders/{order_id}/materials", json={"material_type": "yarn", "quantity": 120})
    assert resp.status_code == 200
    req_id = resp.json()["id"]
    resp = client.patch(f"/orders/materials/{req_id}", json={"is_available": True})
    assert resp.json()["is_available"] is True

    view = client.get(f"/tracking/orders/{order_id}").json()
    assert view["production_steps"][0]["status"] == "completed"
    assert view["material_requirements"][0]["material_type"] == "yarn"


def test_delay_approval_over_http(client, order_id):
    resp = client.post(f"/tracking/orders/{order_id}/delays", json={"reason": "material shortage", "delay_days": 5})
    assert resp.status_code == 200
    delay = resp.json()
    assert delay["new_due_date"] == "2026-12-05"

    assert client.get(f"/tracking/orders/{order_id}").json()["order"]["due_date"] == "2026-11-30"
    assert client.post(f"/tracking/delays/{delay['id']}/approve").status_code == 200
    assert client.get(f"/tracking/orders/{order_id}").json()["order"]["due_date"] == "2026-12-05"
    assert client.post(f"/tracking/delays/{delay['id']}/approve").status_code == 409


def test_transfer_over_http(client, db, plant, order_id):
    w = WeavingOrder(code="DKM-API-1", order_id=order_id, quantity=80, unit="m")
    db.add(w)
    db.commit()

    resp = client.post(
        "/transfers",
        json={
            "source_process_id": w.id,
            "source_process_type": "weaving",
            "target_process_type": "finishing",
            "quantity": 80,
            "create_target": True,
        },
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["target"]["quantity"] == 80
    assert body["transfer"]["target_process_id"] == body["target"]["id"]

    resp = client.post(
        "/transfers",
        json={"source_process_id": w.id, "source_process_type": "weaving", "target_process_type": "finishing", "quantity": 1},
    )
    assert resp.status_code == 409

    listed = client.get("/transfers", params={"source_process_id": w.id, "source_process_type": "weaving"}).json()
    assert len(listed) == 1
    resp = client.patch(f"/transfers/{body['transfer']['id']}", json={"status": "completed"})
    assert resp.json()["transfer"]["status"] == "completed"


def test_card_flow_over_http(client, plant, notifier):
    card = client.post("/cards", json={"quantity": 50}).json()
    assert card["card_number"] == "KART-1000"

    weaving = plant["departments"]["WEAVING"].id
    resp = client.post("/cards/start", json={"card_number": "KART-1000", "department_id": weaving})
    assert resp.status_code == 200
    assert client.post("/cards/start", json={"card_number": "KART-1000", "department_id": weaving}).status_code == 409

    simple = client.post("/cards/start-simple", json={"card_number": "KART-1000", "department_id": weaving}).json()
    assert simple["is_active"] is True
    assert simple["record"]["id"] == resp.json()["record"]["id"]

    done = client.post("/cards/complete", json={"card_number": "KART-1000", "quantity_processed": 50}).json()
    assert done["next_step"] == 2
    assert done["is_completed"] is False
    assert [uid for uid, _ in notifier.sent] == [plant["users"]["finisher"].id]

    assert client.get("/cards/KART-1000").json()["current_step"] == 2
    assert [c["card_number"] for c in client.get("/cards/active").json()] == ["KART-1000"]
    assert client.get("/cards/KART-9").status_code == 404


def test_outbox_admin_view(client, plant, principal_for, order_id):
    rows = client.get("/admin/events/outbox", params={"aggregate_type": "order", "aggregate_id": order_id}).json()
    assert [r["topic"] for r in rows] == ["tracking.status.changed"]

    client.act_as(principal_for(plant["users"]["weaver"], roles=("WEAVING",)))
    assert client.get("/admin/events/outbox").status_code == 403


def test_register_login_and_me():
    from main import app

    with TestClient(app) as c:
        resp = c.post("/auth/register", json={"email": "boss@textilemill.com", "password": "s3cret-pass", "full_name": "Boss"})
        assert resp.status_code == 200, resp.text
        assert c.post("/auth/register", json={"email": "boss@textilemill.com", "password": "s3cret-pass"}).status_code == 409

        resp = c.post("/auth/login", json={"email": "boss@textilemill.com", "password": "wrong-pass"})
        assert resp.status_code == 401
        token = c.post("/auth/login", json={"email": "boss@textilemill.com", "password": "s3cret-pass"}).json()["access_token"]

        me = c.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
        assert me["roles"] == ["ADMIN"]
        assert "sales:manage_orders" in me["permissions"]
        assert c.get("/auth/me").status_code == 401


def test_shipment_records_join_the_order_view(client, plant, principal_for, order_id):
    resp = client.post(
        f"/orders/{order_id}/shipments",
        json={"shipment_id": "SHP-2026-014", "quantity": 300, "unit": "m", "package_count": 12, "pallet_count": 2,
              "gross_weight": 410.5, "net_weight": 395.0},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["is_complete"] is False

    assert client.post(f"/orders/{order_id}/shipments", json={"shipment_id": "", "quantity": 1, "unit": "m"}).status_code == 400
    assert client.post(f"/orders/{order_id}/shipments", json={"shipment_id": "S", "quantity": 0, "unit": "m"}).status_code == 400
    assert client.post("/orders/missing/shipments", json={"shipment_id": "S", "quantity": 1, "unit": "m"}).status_code == 404

    listed = client.get(f"/orders/{order_id}/shipments").json()
    assert [(s["shipment_id"], s["quantity"], s["package_count"]) for s in listed] == [("SHP-2026-014", 300, 12)]
    view = client.get(f"/tracking/orders/{order_id}").json()
    assert view["shipments"][0]["shipment_id"] == "SHP-2026-014"

    topics = [r["topic"] for r in client.get("/admin/events/outbox", params={"aggregate_id": order_id}).json()]
    assert "order.shipment.recorded" in topics

    client.act_as(principal_for(plant["users"]["weaver"], permissions=["weaving:manage_workorders"], roles=("WEAVING",)))
    resp = client.post(f"/orders/{order_id}/shipments", json={"shipment_id": "S", "quantity": 1, "unit": "m"})
    assert resp.status_code == 403


def test_directory_lookups(client, db, plant):
    weaving = plant["departments"]["WEAVING"]
    extra = Machine(code="LOOM-02", name="Loom 2", department_id=weaving.id, status="maintenance")
    db.add(extra)
    db.commit()

    codes = [d["code"] for d in client.get("/directory/departments").json()]
    assert codes == ["FINISHING", "PLANNING", "WEAVING"]

    machines = client.get(f"/directory/machines/{weaving.id}").json()
    assert [m["code"] for m in machines] == ["LOOM-01"]
    machines = client.get(f"/directory/machines/{weaving.id}", params={"include_inactive": True}).json()
    assert [m["code"] for m in machines] == ["LOOM-01", "LOOM-02"]
    assert client.get("/directory/machines/nope").status_code == 404

    assert [p["code"] for p in client.get("/directory/process-types").json()] == ["WEAVE", "DYE", "FINISH"]
    finishing = plant["departments"]["FINISHING"].id
    rows = client.get("/directory/process-types", params={"department_id": finishing}).json()
    assert [p["code"] for p in rows] == ["DYE", "FINISH"]
