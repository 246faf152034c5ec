import pytest
from sqlalchemy import event

from app.core.errors import Conflict, InvalidInput, NotFound
from app.db.models.cards import CardProcessRecord
from app.db.models.master import RouteTemplate, RouteTemplateStep
from services.cards import service as cards
from services.notify.notifier import RecordingNotifier


class BrokenNotifier:
    def notify(self, user_id, message):
        raise RuntimeError("mail server down")


@pytest.fixture
def card(db, plant):
    return cards.create_card(db, actor_id=plant["users"]["planner"].id, quantity=50, fabric_type="denim")


def _start(db, card, plant, dept="WEAVING", **kw):
    return cards.start_step(
        db,
        card_number=card.card_number,
        operator_id=plant["users"]["weaver"].id,
        department_id=plant["departments"][dept].id,
        **kw,
    )


def _active_count(db, card):
    return (
        db.query(CardProcessRecord)
        .filter(CardProcessRecord.card_id == card.id, CardProcessRecord.status == "inProgress")
        .count()
    )


def test_card_numbers_come_from_a_sequence(db, plant, card):
    second = cards.create_card(db, actor_id=None, quantity=10)
    assert (card.card_number, second.card_number) == ("KART-1000", "KART-1001")


def test_default_routing_follows_process_type_sequence(db, plant, card):
    pts = plant["process_types"]
    assert [(r.step_order, r.process_type_id) for r in card.route] == [(1, pts[1].id), (2, pts[2].id), (3, pts[3].id)]
    assert card.current_step == 1
    assert card.status == "created"
    assert cards.card_row(card)["total_steps"] == 3


def test_routing_copied_from_template(db, plant, route_template):
    c = cards.create_card(db, actor_id=None, quantity=20, route_template_id=route_template.id)
    assert [r.step_order for r in c.route] == [1, 2]
    assert c.route[1].department_id == plant["departments"]["FINISHING"].id


def test_card_creation_errors(db, plant, card):
    with pytest.raises(Conflict):
        cards.create_card(db, actor_id=None, quantity=5, card_number="KART-1000")
    with pytest.raises(InvalidInput):
        cards.create_card(db, actor_id=None, quantity=0)
    with pytest.raises(NotFound):
        cards.create_card(db, actor_id=None, quantity=5, route_template_id="missing")
    with pytest.raises(NotFound):
        cards.create_card(db, actor_id=None, quantity=5, order_id="missing")


def test_card_walks_all_three_steps(db, plant, card):
    notifier = RecordingNotifier()
    finisher = plant["users"]["finisher"]

    rec = _start(db, card, plant)
    assert rec.step_order == 1
    assert rec.machine_id == plant["machines"]["WEAVING"].id
    assert rec.process_type_id == plant["process_types"][1].id
    assert (card.current_step, card.status) == (1, "inProgress")

    result = cards.complete_step(
        db, actor_id=plant["users"]["weaver"].id, card_number="KART-1000", quantity_processed=50, notifier=notifier
    )
    assert result["next_step"] == 2
    assert (card.current_step, card.status) == (2, "inProgress")
    assert [uid for uid, _ in notifier.sent] == [finisher.id]

    for step in (2, 3):
        rec = _start(db, card, plant, dept="FINISHING")
        assert rec.step_order == step
        result = cards.complete_step(
            db, actor_id=finisher.id, card_number="KART-1000", quantity_processed=50, notifier=notifier
        )

    assert result["next_step"] is None
    assert result["is_completed"] is True
    assert card.status == "completed"
    planners = {plant["users"]["planner"].id, plant["users"]["planner2"].id}
    assert {uid for uid, _ in notifier.sent[-2:]} == planners
    assert notifier.sent[-1][1].title == "Process card completed"


def test_completion_notice_skips_the_actor(db, plant, route_template):
    c = cards.create_card(db, actor_id=None, quantity=5, route_template_id=route_template.id)
    planner = plant["users"]["planner"]
    notifier = RecordingNotifier()
    for dept in ("WEAVING", "FINISHING"):
        _start(db, c, plant, dept=dept)
        result = cards.complete_step(db, actor_id=planner.id, card_number=c.card_number, notifier=notifier)

    assert result["is_completed"]
    assert notifier.sent[-1][0] == plant["users"]["planner2"].id
    assert planner.id not in [uid for uid, m in notifier.sent if m.title == "Process card completed"]


def test_second_start_while_running_is_a_conflict(db, plant, card):
    _start(db, card, plant)

    with pytest.raises(Conflict) as exc:
        _start(db, card, plant)
    assert exc.value.message == "Step already running"
    with pytest.raises(Conflict):
        _start(db, card, plant, dept="FINISHING", step_order=2)
    assert _active_count(db, card) == 1


def test_lost_start_race_is_decided_by_the_index(db, plant, card, monkeypatch):
    _start(db, card, plant)
    # The second caller's pre-check saw no running record.
    monkeypatch.setattr(cards, "active_record", lambda *a, **kw: None)

    with pytest.raises(Conflict):
        _start(db, card, plant)

    monkeypatch.undo()
    assert _active_count(db, card) == 1


def test_simple_start_returns_the_running_record(db, plant, card):
    args = dict(card_number=card.card_number, operator_id=plant["users"]["weaver"].id,
                department_id=plant["departments"]["WEAVING"].id)

    first, was_active = cards.start_step_simple(db, **args)
    assert was_active is False
    again, was_active = cards.start_step_simple(db, **args)
    assert was_active is True
    assert again.id == first.id
    assert _active_count(db, card) == 1


def test_start_errors(db, plant, card):
    with pytest.raises(NotFound):
        cards.start_step(db, card_number="KART-9999", operator_id="u", department_id=plant["departments"]["WEAVING"].id)
    with pytest.raises(InvalidInput):
        _start(db, card, plant, step_order=7)
    plant["machines"]["WEAVING"].status = "maintenance"
    db.commit()
    with pytest.raises(NotFound):
        _start(db, card, plant)
    assert _active_count(db, card) == 0


def test_start_in_the_wrong_department_is_rejected(db, plant, card):
    with pytest.raises(InvalidInput) as exc:
        _start(db, card, plant, dept="FINISHING")
    assert exc.value.context["routed_department_id"] == plant["departments"]["WEAVING"].id
    assert _active_count(db, card) == 0
    assert card.status == "created"


def test_gapped_template_numbering_walks_to_completion(db, plant):
    depts, pts = plant["departments"], plant["process_types"]
    tpl = RouteTemplate(code="SPARSE", name="Sparse numbering")
    tpl.steps = [
        RouteTemplateStep(step_order=10, department_id=depts["WEAVING"].id, process_type_id=pts[1].id),
        RouteTemplateStep(step_order=20, department_id=depts["FINISHING"].id, process_type_id=pts[3].id),
    ]
    db.add(tpl)
    db.commit()
    c = cards.create_card(db, actor_id=None, quantity=5, route_template_id=tpl.id)
    assert c.current_step == 10
    assert cards.card_row(c)["total_steps"] == 2

    assert _start(db, c, plant).step_order == 10
    result = cards.complete_step(db, actor_id=None, card_number=c.card_number)
    assert result["next_step"] == 20
    assert c.current_step == 20

    assert _start(db, c, plant, dept="FINISHING").step_order == 20
    result = cards.complete_step(db, actor_id=None, card_number=c.card_number)
    assert result["is_completed"] is True
    assert (c.status, c.current_step) == ("completed", 20)


def test_completed_card_cannot_restart(db, plant, route_template):
    c = cards.create_card(db, actor_id=None, quantity=5, route_template_id=route_template.id)
    for dept in ("WEAVING", "FINISHING"):
        _start(db, c, plant, dept=dept)
        cards.complete_step(db, actor_id=None, card_number=c.card_number)
    with pytest.raises(Conflict):
        _start(db, c, plant)


def test_complete_twice_without_start_is_not_found(db, plant, card):
    _start(db, card, plant)
    cards.complete_step(db, actor_id=None, card_number=card.card_number)
    with pytest.raises(NotFound):
        cards.complete_step(db, actor_id=None, card_number=card.card_number)


def test_complete_by_record_id_defaults_processed_quantity(db, plant, card):
    rec = _start(db, card, plant)

    result = cards.complete_step(db, actor_id=None, tracking_id=rec.id, quantity_defect=2)

    assert result["record"].quantity_processed == 50
    assert result["record"].quantity_defect == 2
    assert result["record"].end_time is not None
    assert card.current_step == 2

    with pytest.raises(NotFound):
        cards.complete_step(db, actor_id=None, tracking_id=rec.id)


def test_notifier_failure_does_not_fail_completion(db, plant, card):
    _start(db, card, plant)

    result = cards.complete_step(db, actor_id=None, card_number=card.card_number, notifier=BrokenNotifier())

    assert result["next_step"] == 2
    assert result["notified"] == 0
    assert card.current_step == 2


def test_complete_needs_a_reference(db, plant, card):
    with pytest.raises(InvalidInput):
        cards.complete_step(db, actor_id=None)


def test_detail_and_active_listing(db, plant, card):
    _start(db, card, plant)
    cards.complete_step(db, actor_id=None, card_number=card.card_number)

    detail = cards.card_detail(db, card.card_number)
    assert len(detail["route"]) == 3
    assert detail["history"][0]["machine_name"] == "Loom 1"
    assert detail["history"][0]["operator_name"] == "Weaver"
    assert detail["history"][0]["department_name"] == "Weaving"
    assert detail["history"][0]["process_type_name"] == "Weaving"

    active = cards.list_active_cards(db)
    assert [c["card_number"] for c in active] == ["KART-1000"]
    assert active[0]["last_department_name"] == "Weaving"


@pytest.fixture
def locked_tables(db):
    seen = []

    def _record(state):
        if state.is_select and getattr(state.statement, "_for_update_arg", None) is not None:
            seen.append(state.bind_mapper.class_.__name__)

    event.listen(db, "do_orm_execute", _record)
    yield seen
    event.remove(db, "do_orm_execute", _record)


@pytest.mark.parametrize("by", ["card_number", "tracking_id"])
def test_completion_locks_card_before_record(db, plant, card, locked_tables, by):
    rec = _start(db, card, plant)
    locked_tables.clear()

    ref = {"card_number": card.card_number} if by == "card_number" else {"tracking_id": rec.id}
    cards.complete_step(db, actor_id=None, **ref)

    assert locked_tables == ["ProcessCard", "CardProcessRecord"]
