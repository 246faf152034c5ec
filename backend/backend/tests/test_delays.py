from datetime import date

import pytest

from app.core.errors import Conflict, InvalidInput, NotFound
from app.db.models.security_audit import AuditLog
from app.db.models.tracking import TrackingEvent
from services.tracking import ledger
from services.tracking.delays import approve_delay, list_delays, report_delay
from services.tracking.service import change_status


def _report(db, order, plant, **kw):
    kw.setdefault("reason", "Yarn shortage")
    return report_delay(db, order_id=order.id, reporter_id=plant["users"]["weaver"].id, **kw)


def test_reporting_does_not_touch_the_order(db, order, plant):
    rec = _report(db, order, plant, new_due_date=date(2026, 12, 15))

    assert rec.approved_by is None
    assert ledger.get_order(db, order.id).due_date == date(2026, 11, 30)


def test_delay_days_become_a_new_due_date(db, order, plant):
    rec = _report(db, order, plant, delay_days=10)
    assert rec.new_due_date == date(2026, 12, 10)


def test_approval_moves_the_due_date(db, order, plant):
    rec = _report(db, order, plant, new_due_date=date(2026, 12, 15))

    approved = approve_delay(db, delay_id=rec.id, approver_id=plant["users"]["planner"].id)

    assert approved.approved_by == plant["users"]["planner"].id
    assert approved.approved_at is not None
    assert ledger.get_order(db, order.id).due_date == date(2026, 12, 15)
    audit = db.query(AuditLog).filter(AuditLog.entity_id == rec.id).one()
    assert audit.action == "delay.approve"
    assert audit.payload["new_due_date"] == "2026-12-15"


def test_delay_is_approved_once(db, order, plant):
    rec = _report(db, order, plant, new_due_date=date(2026, 12, 15))
    approve_delay(db, delay_id=rec.id, approver_id=plant["users"]["planner"].id)

    with pytest.raises(Conflict):
        approve_delay(db, delay_id=rec.id, approver_id=plant["users"]["planner2"].id)

    again = list_delays(db, order.id)[0]
    assert again["approved_by"] == plant["users"]["planner"].id
    assert again["approved_by_name"] == "Planner"


def test_approved_cancellation_cancels_the_order(db, order, plant, status):
    # Cancellation is honoured from any status, even one without a CANCELLED edge.
    change_status(
        db,
        order_id=order.id,
        status_id=status("PLANNING_STARTED"),
        actor_id=None,
        permissions=["planning:manage_plans"],
    )
    change_status(
        db,
        order_id=order.id,
        status_id=status("MATERIALS_PREPARATION"),
        actor_id=None,
        permissions=["inventory:manage_materials"],
    )
    rec = _report(db, order, plant, is_cancelled=True, delay_days=5)
    assert rec.new_due_date is None

    approve_delay(db, delay_id=rec.id, approver_id=plant["users"]["planner"].id)

    cur = ledger.current_status(db, order.id)
    assert cur.status_id == status("CANCELLED")
    assert cur.payload == {"delay_id": rec.id}
    assert ledger.get_order(db, order.id).due_date == date(2026, 11, 30)


def test_cancellation_of_cancelled_order_adds_no_event(db, order, plant):
    first = _report(db, order, plant, is_cancelled=True)
    second = _report(db, order, plant, is_cancelled=True, reason="Customer withdrew")
    approve_delay(db, delay_id=first.id, approver_id=plant["users"]["planner"].id)
    before = db.query(TrackingEvent).count()

    approve_delay(db, delay_id=second.id, approver_id=plant["users"]["planner"].id)

    assert db.query(TrackingEvent).count() == before


def test_invalid_reports(db, order, plant):
    with pytest.raises(InvalidInput):
        _report(db, order, plant, reason="  ")
    with pytest.raises(InvalidInput):
        _report(db, order, plant, delay_days=-1)
    with pytest.raises(NotFound):
        report_delay(db, order_id="missing", reason="x", reporter_id=None)
    with pytest.raises(NotFound):
        approve_delay(db, delay_id="missing", approver_id=plant["users"]["planner"].id)


def test_delays_listed_with_reporter_names(db, order, plant):
    _report(db, order, plant, delay_days=2)

    rows = list_delays(db, order.id)

    assert len(rows) == 1
    assert rows[0]["reported_by_name"] == "Weaver"
    assert rows[0]["approved_by"] is None
