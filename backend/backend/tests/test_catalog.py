import pytest

from app.core.errors import Conflict, Forbidden, InvalidInput, NotFound
from app.db.models.tracking import TrackingStatus, TrackingTransition
from services.tracking import catalog


def test_seed_is_idempotent(db):
    assert catalog.seed_catalog(db) == 0
    assert db.query(TrackingStatus).count() == len(catalog.DEFAULT_STATUSES)
    assert db.query(TrackingTransition).count() == len(catalog.DEFAULT_TRANSITIONS)


def test_active_statuses_follow_sequence(db):
    db.query(TrackingStatus).filter(TrackingStatus.code == "ON_HOLD").update({"is_active": False})
    db.commit()

    codes = [s.code for s in catalog.list_active_statuses(db)]

    assert codes[0] == "ORDER_RECEIVED"
    assert codes[-1] == "CANCELLED"
    assert "ON_HOLD" not in codes


def test_transitions_from_flag_what_the_caller_may_use(db, status):
    rows = catalog.list_transitions_from(db, status("ORDER_RECEIVED"), ["planning:manage_plans"])

    assert [r["to_status_code"] for r in rows] == ["PLANNING_STARTED", "CANCELLED", "ON_HOLD"]
    allowed = {r["to_status_code"]: r["allowed"] for r in rows}
    assert allowed == {"PLANNING_STARTED": True, "CANCELLED": False, "ON_HOLD": False}
    assert rows[0]["from_status_code"] == "ORDER_RECEIVED"


def test_transitions_from_unknown_status(db):
    with pytest.raises(NotFound):
        catalog.list_transitions_from(db, "missing")


def test_only_order_received_is_an_entry_status(db):
    assert [s.code for s in catalog.entry_statuses(db)] == ["ORDER_RECEIVED"]


def test_legal_edge_with_permission(db, status):
    edge = catalog.validate_transition(
        db, status("ORDER_RECEIVED"), status("PLANNING_STARTED"), ["planning:manage_plans"]
    )
    assert edge.required_permission == "planning:manage_plans"


def test_edge_outside_graph_is_a_conflict(db, status):
    with pytest.raises(Conflict) as exc:
        catalog.validate_transition(db, status("ORDER_RECEIVED"), status("SHIPPED"), ["shipping:manage_shipments"])
    assert exc.value.context["from_status"] == "ORDER_RECEIVED"
    assert exc.value.context["to_status"] == "SHIPPED"


def test_missing_permission_is_forbidden(db, status):
    with pytest.raises(Forbidden) as exc:
        catalog.validate_transition(db, status("ORDER_RECEIVED"), status("CANCELLED"), ["planning:manage_plans"])
    assert exc.value.context["missing"] == ["sales:manage_orders"]


def test_inactive_target_is_rejected(db, status):
    db.query(TrackingStatus).filter(TrackingStatus.code == "PLANNING_STARTED").update({"is_active": False})
    db.commit()
    with pytest.raises(InvalidInput):
        catalog.validate_transition(db, status("ORDER_RECEIVED"), status("PLANNING_STARTED"), ["planning:manage_plans"])


def test_automated_edge_cannot_be_taken_by_hand(db, status):
    db.add(
        TrackingTransition(
            from_status_id=status("ON_HOLD"),
            to_status_id=status("CANCELLED"),
            description="Hold expired",
            is_automated=True,
        )
    )
    db.commit()

    with pytest.raises(Forbidden):
        catalog.validate_transition(db, status("ON_HOLD"), status("CANCELLED"), ["sales:manage_orders"])
    assert catalog.validate_transition(db, status("ON_HOLD"), status("CANCELLED"), automated=True) is not None


def test_untracked_order_must_start_at_an_entry_status(db, status):
    assert catalog.validate_transition(db, None, status("ORDER_RECEIVED")) is None
    with pytest.raises(Conflict) as exc:
        catalog.validate_transition(db, None, status("WEAVING_STARTED"), ["weaving:manage_workorders"])
    assert exc.value.context["allowed"] == ["ORDER_RECEIVED"]
