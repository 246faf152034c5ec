from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import CARD_NUMBER_PREFIX, CARD_NUMBER_START, DEFAULT_CARD_STEPS, PLANNING_DEPARTMENT_CODE
from app.core.errors import Conflict, InvalidInput, NotFound
from app.db.models.auth import User
from app.db.models.cards import CardProcessRecord, CardRouteStep, ProcessCard
from app.db.models.common import utcnow
from app.db.models.master import Department, Machine, ProcessType, RouteTemplate
from app.events import bus
from services.directory import service as directory
from services.notify.notifier import Message, Notifier, notify_all
from services.numbering import next_value
from services.tracking.ledger import get_order

logger = logging.getLogger(__name__)

ACTIVE_CARD_STATUSES = ("created", "inProgress")


def _route_from_template(db: Session, route_template_id: str) -> list[CardRouteStep]:
    tpl = db.query(RouteTemplate).filter(RouteTemplate.id == route_template_id).first()
    if not tpl:
        raise NotFound("Route template not found", route_template_id=route_template_id)
    if not tpl.is_active:
        raise InvalidInput("Route template is not active", route_template_id=route_template_id)
    if not tpl.steps:
        raise InvalidInput("Route template has no steps", route_template_id=route_template_id)
    return [
        CardRouteStep(step_order=s.step_order, department_id=s.department_id, process_type_id=s.process_type_id)
        for s in sorted(tpl.steps, key=lambda s: s.step_order)
    ]


def _default_route(db: Session) -> list[CardRouteStep]:
    # Step n is the active process type with sequence n, when one is configured.
    route = []
    for n in range(1, DEFAULT_CARD_STEPS + 1):
        pt = (
            db.query(ProcessType)
            .filter(ProcessType.sequence == n, ProcessType.is_active == True)  # noqa: E712
            .order_by(ProcessType.code.asc())
            .first()
        )
        route.append(
            CardRouteStep(
                step_order=n,
                department_id=pt.department_id if pt else None,
                process_type_id=pt.id if pt else None,
            )
        )
    return route


def create_card(
    db: Session,
    *,
    actor_id: str | None,
    quantity: float,
    unit: str = "m",
    card_number: str | None = None,
    order_id: str | None = None,
    production_plan_id: str | None = None,
    route_template_id: str | None = None,
    fabric_type: str | None = None,
    color: str | None = None,
    notes: str | None = None,
) -> ProcessCard:
    """Issue a process card and freeze its routing.

    The routing comes from the route template when one is given, otherwise the
    card gets DEFAULT_CARD_STEPS steps.
    """
    if quantity is None or quantity <= 0:
        raise InvalidInput("quantity must be positive", quantity=quantity)
    if order_id:
        get_order(db, order_id)
    route = _route_from_template(db, route_template_id) if route_template_id else _default_route(db)

    if not card_number:
        card_number = f"{CARD_NUMBER_PREFIX}{next_value(db, 'process_card', start=CARD_NUMBER_START)}"

    card = ProcessCard(
        card_number=card_number,
        order_id=order_id,
        production_plan_id=production_plan_id,
        route_template_id=route_template_id,
        fabric_type=fabric_type,
        color=color,
        quantity=quantity,
        unit=unit,
        current_step=route[0].step_order,
        status="created",
        notes=notes,
        updated_at=utcnow(),
        updated_by=actor_id,
    )
    card.route = route
    db.add(card)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise Conflict("Card number already exists", card_number=card_number)
    bus.publish(
        db,
        "card.created",
        {"card_id": card.id, "card_number": card.card_number, "steps": len(route)},
        aggregate_type="card",
        aggregate_id=card.id,
        commit=False,
    )
    db.commit()
    logger.info("card %s issued with %d steps", card.card_number, len(route))
    return card


def get_card(db: Session, card_number: str, *, lock: bool = False) -> ProcessCard:
    q = db.query(ProcessCard).filter(ProcessCard.card_number == card_number)
    if lock:
        q = q.with_for_update()
    card = q.first()
    if not card:
        raise NotFound("Card not found", card_number=card_number)
    return card


def active_record(db: Session, card_id: str, *, lock: bool = False) -> CardProcessRecord | None:
    q = db.query(CardProcessRecord).filter(
        CardProcessRecord.card_id == card_id,
        CardProcessRecord.status == "inProgress",
    )
    if lock:
        q = q.with_for_update()
    return q.first()


def _route_step(card: ProcessCard, step_order: int) -> CardRouteStep | None:
    for r in card.route:
        if r.step_order == step_order:
            return r
    return None


def _next_route_step(card: ProcessCard, step_order: int) -> int | None:
    """Smallest routed step after step_order; template numbering may have gaps."""
    later = [r.step_order for r in card.route if r.step_order > step_order]
    return min(later) if later else None


def start_step(
    db: Session,
    *,
    card_number: str,
    operator_id: str,
    department_id: str,
    machine_id: str | None = None,
    process_type_id: str | None = None,
    step_order: int | None = None,
    notes: str | None = None,
) -> CardProcessRecord:
    """Open a process record for the card's step and put the card in progress.

    At most one record per card is in progress; the partial unique index on
    card_process_record settles concurrent starts.
    """
    card = get_card(db, card_number, lock=True)
    if card.status == "completed":
        raise Conflict("Card is already completed", card_number=card_number)

    step = step_order if step_order is not None else (card.current_step or 1)
    running = active_record(db, card.id)
    if running is not None:
        if running.step_order == step:
            raise Conflict("Step already running", card_number=card_number, step_order=step, record_id=running.id)
        raise Conflict(
            "Another step is running on this card",
            card_number=card_number,
            running_step=running.step_order,
            record_id=running.id,
        )

    route_step = _route_step(card, step)
    if route_step is None:
        raise InvalidInput(
            "Step is not part of the card's routing",
            card_number=card_number,
            step_order=step,
            steps=[r.step_order for r in card.route],
        )
    if route_step.department_id and route_step.department_id != department_id:
        raise InvalidInput(
            "Step is routed to another department",
            card_number=card_number,
            step_order=step,
            department_id=department_id,
            routed_department_id=route_step.department_id,
        )

    directory.get_department(db, department_id)
    if machine_id:
        machine = directory.get_machine(db, machine_id)
    else:
        machine = directory.first_active_machine(db, department_id)
        if machine is None:
            raise NotFound("No active machine in department", department_id=department_id)
    if process_type_id:
        process_type = directory.get_process_type(db, process_type_id)
    elif route_step.process_type_id and route_step.department_id == department_id:
        process_type = directory.get_process_type(db, route_step.process_type_id)
    else:
        process_type = directory.first_process_type(db, department_id)
        if process_type is None:
            raise NotFound("No process type in department", department_id=department_id)

    now = utcnow()
    rec = CardProcessRecord(
        card_id=card.id,
        machine_id=machine.id,
        operator_id=operator_id,
        process_type_id=process_type.id,
        department_id=department_id,
        step_order=step,
        start_time=now,
        status="inProgress",
        quantity_processed=0,
        quantity_defect=0,
        notes=notes,
    )
    db.add(rec)
    card.status = "inProgress"
    card.current_step = step
    card.updated_at = now
    card.updated_by = operator_id
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.warning("concurrent start on card %s step %s lost", card_number, step)
        raise Conflict("Step already running", card_number=card_number, step_order=step)

    bus.publish(
        db,
        "card.step.started",
        {"card_id": card.id, "card_number": card.card_number, "step_order": step, "record_id": rec.id},
        aggregate_type="card",
        aggregate_id=card.id,
        commit=False,
    )
    db.commit()
    logger.info("card %s step %s started on machine %s", card.card_number, step, machine.code)
    return rec


def start_step_simple(db: Session, *, card_number: str, operator_id: str, department_id: str) -> tuple[CardProcessRecord, bool]:
    """Start the card's current step, or hand back the record already running.

    Returns (record, was_already_active).
    """
    card = get_card(db, card_number)
    running = active_record(db, card.id)
    if running is not None:
        return running, True
    try:
        rec = start_step(
            db,
            card_number=card_number,
            operator_id=operator_id,
            department_id=department_id,
            step_order=card.current_step or 1,
        )
    except Conflict:
        # Lost a race with another start: report the winner's record.
        running = active_record(db, card.id)
        if running is None:
            raise
        return running, True
    return rec, False


def _hand_off_recipients(db: Session, card: ProcessCard, next_step: int | None, actor_id: str | None) -> list[str]:
    if next_step is None:
        planning = directory.get_department_by_code(db, PLANNING_DEPARTMENT_CODE)
        if planning is None:
            logger.warning("no %s department; completion of %s not announced", PLANNING_DEPARTMENT_CODE, card.card_number)
            return []
        return [u for u in directory.users_in_department(db, planning.id) if u != actor_id]
    route_step = _route_step(card, next_step)
    dept_id = route_step.department_id if route_step else None
    if dept_id is None:
        dept_id = directory.department_for_sequence(db, next_step)
    if dept_id is None:
        return []
    return directory.users_in_department(db, dept_id)


def complete_step(
    db: Session,
    *,
    actor_id: str | None,
    card_number: str | None = None,
    tracking_id: str | None = None,
    quantity_processed: float | None = None,
    quantity_defect: float = 0,
    notes: str | None = None,
    notifier: Notifier | None = None,
) -> dict:
    """Close the running record and move the card to its next step.

    Past the last step of its routing the card is completed. The next
    department (or planning, on completion) is notified after the commit.
    """
    if not card_number and not tracking_id:
        raise InvalidInput("card_number or tracking_id is required")
    if quantity_processed is not None and quantity_processed < 0:
        raise InvalidInput("quantity_processed must not be negative", quantity_processed=quantity_processed)
    if quantity_defect is not None and quantity_defect < 0:
        raise InvalidInput("quantity_defect must not be negative", quantity_defect=quantity_defect)

    # Card row first, then the record: the same order start_step locks in.
    if tracking_id:
        card_id = (
            db.query(CardProcessRecord.card_id)
            .filter(CardProcessRecord.id == tracking_id, CardProcessRecord.status == "inProgress")
            .scalar()
        )
        if card_id is None:
            raise NotFound("No step in progress for this record", tracking_id=tracking_id)
        card = db.query(ProcessCard).filter(ProcessCard.id == card_id).with_for_update().one()
        rec = active_record(db, card.id, lock=True)
        if rec is None or rec.id != tracking_id:
            raise NotFound("No step in progress for this record", tracking_id=tracking_id)
    else:
        card = get_card(db, card_number, lock=True)
        rec = active_record(db, card.id, lock=True)
        if rec is None:
            raise NotFound("No step in progress on this card", card_number=card_number)

    now = utcnow()
    rec.end_time = now
    rec.status = "completed"
    rec.quantity_processed = card.quantity if quantity_processed is None else quantity_processed
    rec.quantity_defect = quantity_defect or 0
    if notes:
        rec.notes = notes

    total = len(card.route)
    next_step = _next_route_step(card, rec.step_order)
    if next_step is None:
        card.status = "completed"
        card.current_step = rec.step_order
    else:
        card.status = "inProgress"
        card.current_step = next_step
    card.updated_at = now
    card.updated_by = actor_id

    bus.publish(
        db,
        "card.step.completed",
        {
            "card_id": card.id,
            "card_number": card.card_number,
            "step_order": rec.step_order,
            "next_step": next_step,
            "quantity_processed": rec.quantity_processed,
            "quantity_defect": rec.quantity_defect,
        },
        aggregate_type="card",
        aggregate_id=card.id,
        commit=False,
    )
    db.commit()
    logger.info("card %s step %s completed, next=%s", card.card_number, rec.step_order, next_step)

    notified = 0
    try:
        recipients = _hand_off_recipients(db, card, next_step, actor_id)
    except SQLAlchemyError:
        logger.exception("could not resolve hand-off recipients for card %s", card.card_number)
        recipients = []
    if recipients:
        if next_step is None:
            message = Message(
                title="Process card completed",
                content=f"Card {card.card_number} finished all {total} steps.",
                type="process_card",
                entity_id=card.id,
                entity_type="process_card",
            )
        else:
            message = Message(
                title="Process card ready",
                content=f"Card {card.card_number} finished step {rec.step_order} and is ready for step {next_step}.",
                type="process_card",
                entity_id=card.id,
                entity_type="process_card",
            )
        notified = notify_all(notifier, recipients, message)

    return {
        "record": rec,
        "card": card,
        "next_step": next_step,
        "is_completed": next_step is None,
        "notified": notified,
    }


def record_row(rec: CardProcessRecord, names: dict | None = None) -> dict:
    names = names or {}
    return {
        "id": rec.id,
        "card_id": rec.card_id,
        "step_order": rec.step_order,
        "machine_id": rec.machine_id,
        "machine_name": names.get("machine"),
        "operator_id": rec.operator_id,
        "operator_name": names.get("operator"),
        "department_id": rec.department_id,
        "department_name": names.get("department"),
        "process_type_id": rec.process_type_id,
        "process_type_name": names.get("process_type"),
        "start_time": rec.start_time.isoformat() if rec.start_time else None,
        "end_time": rec.end_time.isoformat() if rec.end_time else None,
        "status": rec.status,
        "quantity_processed": rec.quantity_processed,
        "quantity_defect": rec.quantity_defect,
        "notes": rec.notes,
    }


def card_row(card: ProcessCard) -> dict:
    return {
        "id": card.id,
        "card_number": card.card_number,
        "order_id": card.order_id,
        "production_plan_id": card.production_plan_id,
        "route_template_id": card.route_template_id,
        "fabric_type": card.fabric_type,
        "color": card.color,
        "quantity": card.quantity,
        "unit": card.unit,
        "current_step": card.current_step,
        "status": card.status,
        "notes": card.notes,
        "total_steps": len(card.route),
    }


def card_detail(db: Session, card_number: str) -> dict:
    card = get_card(db, card_number)
    rows = (
        db.query(CardProcessRecord, Machine, User, Department, ProcessType)
        .outerjoin(Machine, CardProcessRecord.machine_id == Machine.id)
        .outerjoin(User, CardProcessRecord.operator_id == User.id)
        .outerjoin(Department, CardProcessRecord.department_id == Department.id)
        .outerjoin(ProcessType, CardProcessRecord.process_type_id == ProcessType.id)
        .filter(CardProcessRecord.card_id == card.id)
        .order_by(CardProcessRecord.step_order.asc(), CardProcessRecord.start_time.asc())
        .all()
    )
    history = [
        record_row(
            rec,
            {
                "machine": m.name if m else None,
                "operator": (u.full_name or u.email) if u else None,
                "department": d.name if d else None,
                "process_type": pt.name if pt else None,
            },
        )
        for rec, m, u, d, pt in rows
    ]
    return {
        **card_row(card),
        "route": [
            {"step_order": r.step_order, "department_id": r.department_id, "process_type_id": r.process_type_id}
            for r in card.route
        ],
        "history": history,
    }


def list_active_cards(db: Session) -> list[dict]:
    cards = (
        db.query(ProcessCard)
        .filter(ProcessCard.status.in_(ACTIVE_CARD_STATUSES))
        .order_by(ProcessCard.created_at.desc())
        .all()
    )
    out = []
    for card in cards:
        last = (
            db.query(CardProcessRecord, Department)
            .outerjoin(Department, CardProcessRecord.department_id == Department.id)
            .filter(CardProcessRecord.card_id == card.id)
            .order_by(CardProcessRecord.start_time.desc())
            .first()
        )
        out.append(
            {
                **card_row(card),
                "last_department_id": last[0].department_id if last else None,
                "last_department_name": last[1].name if last and last[1] else None,
            }
        )
    return out
