from datetime import datetime, timezone

import pytest

from app.core.errors import Conflict, Forbidden, NotFound
from app.db.models.tracking import TrackingEvent
from app.events.models import OutboxEvent
from services.orders.service import create_order
from services.tracking import ledger
from services.tracking.service import change_status, get_order_tracking


def _walk(db, order, status, actor_id, *codes):
    for code in codes:
        change_status(
            db,
            order_id=order.id,
            status_id=status(code),
            actor_id=actor_id,
            permissions=["planning:manage_plans", "inventory:manage_materials", "weaving:manage_workorders", "sales:manage_orders"],
        )


def test_new_order_starts_at_order_received(db, order):
    cur = ledger.current_status(db, order.id)
    assert cur.status.code == "ORDER_RECEIVED"
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "tracking.status.changed").count() == 1


def test_order_can_be_registered_without_a_ledger(db, plant):
    o = create_order(db, order_number="ORD-QUIET", actor_id=None, quantity=10, initial_status_code=None)
    assert ledger.current_status(db, o.id) is None
    assert ledger.history(db, o.id) == []


def test_duplicate_order_number(db, order):
    with pytest.raises(Conflict):
        create_order(db, order_number="ORD-001", actor_id=None, quantity=5)


def test_status_changes_build_history_newest_first(db, order, plant, status):
    planner = plant["users"]["planner"]
    _walk(db, order, status, planner.id, "PLANNING_STARTED", "MATERIALS_PREPARATION")

    rows = ledger.history(db, order.id)

    assert [r["status_code"] for r in rows] == ["MATERIALS_PREPARATION", "PLANNING_STARTED", "ORDER_RECEIVED"]
    assert rows[0]["actor_name"] == "Planner"
    assert rows[0]["note"] == "Planning done, material preparation started"
    assert ledger.current_status(db, order.id).status_id == status("MATERIALS_PREPARATION")


def test_rejected_change_leaves_ledger_untouched(db, order, plant, status):
    before = db.query(TrackingEvent).count()
    with pytest.raises(Conflict):
        change_status(
            db,
            order_id=order.id,
            status_id=status("SHIPPED"),
            actor_id=plant["users"]["planner"].id,
            permissions=["shipping:manage_shipments"],
        )
    with pytest.raises(Forbidden):
        change_status(db, order_id=order.id, status_id=status("PLANNING_STARTED"), actor_id=None, permissions=[])
    db.rollback()
    assert db.query(TrackingEvent).count() == before


def test_events_with_equal_timestamps_order_by_insertion(db, order, plant, status, monkeypatch):
    frozen = datetime(2100, 1, 1, 8, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(ledger, "utcnow", lambda: frozen)
    _walk(db, order, status, plant["users"]["planner"].id, "ON_HOLD", "PLANNING_STARTED")

    assert ledger.current_status(db, order.id).status_id == status("PLANNING_STARTED")
    assert [r["status_code"] for r in ledger.history(db, order.id)][:2] == ["PLANNING_STARTED", "ON_HOLD"]


def test_record_event_needs_known_order_and_status(db, order, status):
    with pytest.raises(NotFound):
        ledger.record_event(db, order_id="missing", status_id=status("SHIPPED"), actor_id=None)
    with pytest.raises(NotFound):
        ledger.record_event(db, order_id=order.id, status_id="missing", actor_id=None)


def test_order_tracking_view(db, order, plant, status):
    _walk(db, order, status, plant["users"]["planner"].id, "PLANNING_STARTED")

    view = get_order_tracking(db, order.id)

    assert view["order"]["order_number"] == "ORD-001"
    assert view["order"]["due_date"] == "2026-11-30"
    assert view["current_status"]["status_code"] == "PLANNING_STARTED"
    assert len(view["history"]) == 2
    assert view["production_steps"] == []
    assert view["current_step"] is None
    assert view["transfers"] == []
    assert view["delays"] == []
    assert view["material_requirements"] == []
