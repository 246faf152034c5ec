from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import Conflict, InvalidInput, NotFound
from app.db.models.common import utcnow
from app.db.models.tracking import ProductionStep
from app.events import bus
from services.directory.service import get_department
from services.tracking.ledger import get_order

logger = logging.getLogger(__name__)

STEP_STATUSES = ("pending", "in-progress", "completed", "on-hold", "cancelled")

_MUTABLE_FIELDS = (
    "production_plan_id",
    "step",
    "step_order",
    "department_id",
    "planned_start_date",
    "planned_end_date",
    "actual_start_date",
    "actual_end_date",
    "status",
    "completion_percentage",
    "notes",
)


def _validate(fields: dict) -> None:
    status = fields.get("status")
    if status is not None and status not in STEP_STATUSES:
        raise InvalidInput(f"Unknown step status {status!r}", allowed=list(STEP_STATUSES))
    pct = fields.get("completion_percentage")
    if pct is not None and not (0 <= int(pct) <= 100):
        raise InvalidInput("completion_percentage must be between 0 and 100", completion_percentage=pct)
    for key in ("planned_start_date", "planned_end_date", "actual_start_date", "actual_end_date"):
        value = fields.get(key)
        if value is not None and not isinstance(value, datetime):
            raise InvalidInput(f"{key} must be a datetime", field=key)


def upsert_step(
    db: Session,
    *,
    order_id: str,
    actor_id: str | None,
    step_id: str | None = None,
    **fields,
) -> ProductionStep:
    """Create a production step, or update it in place when `step_id` is given.

    New steps start as `pending` at 0%. Moving a step to in-progress or completed
    stamps its actual start/end unless the caller supplied them.
    """
    unknown = set(fields) - set(_MUTABLE_FIELDS)
    if unknown:
        raise InvalidInput("Unknown production step fields", fields=sorted(unknown))
    fields = {k: v for k, v in fields.items() if v is not None}
    _validate(fields)
    get_order(db, order_id)
    if fields.get("department_id"):
        get_department(db, fields["department_id"])

    if step_id:
        ps = (
            db.query(ProductionStep)
            .filter(ProductionStep.id == step_id, ProductionStep.order_id == order_id)
            .with_for_update()
            .first()
        )
        if not ps:
            raise NotFound("Production step not found", step_id=step_id, order_id=order_id)
    else:
        missing = [k for k in ("production_plan_id", "department_id", "step") if not fields.get(k)]
        if missing:
            raise InvalidInput("Missing required fields", missing=missing)
        ps = ProductionStep(order_id=order_id, status="pending", completion_percentage=0, step_order=0)
        db.add(ps)

    for key, value in fields.items():
        setattr(ps, key, int(value) if key in ("step_order", "completion_percentage") else value)

    now = utcnow()
    if ps.status == "in-progress" and ps.actual_start_date is None:
        ps.actual_start_date = now
    if ps.status == "completed":
        if ps.actual_end_date is None:
            ps.actual_end_date = now
        ps.completion_percentage = 100
    ps.updated_at = now
    ps.updated_by = actor_id

    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise Conflict("A step with this department and label already exists for the order", order_id=order_id)

    bus.publish(
        db,
        "tracking.step.updated",
        {"order_id": order_id, "step_id": ps.id, "status": ps.status, "completion_percentage": ps.completion_percentage},
        aggregate_type="order",
        aggregate_id=order_id,
        commit=False,
    )
    db.commit()
    logger.info("production step %s of order %s is %s (%d%%)", ps.id, order_id, ps.status, ps.completion_percentage)
    return ps


def list_steps(db: Session, order_id: str) -> list[ProductionStep]:
    return (
        db.query(ProductionStep)
        .filter(ProductionStep.order_id == order_id)
        .order_by(ProductionStep.step_order.asc(), ProductionStep.created_at.asc())
        .all()
    )


def current_step(db: Session, order_id: str) -> ProductionStep | None:
    """Where the order sits: the first running step, else the first pending one."""
    steps = list_steps(db, order_id)
    for wanted in ("in-progress", "pending"):
        for ps in steps:
            if ps.status == wanted:
                return ps
    return None


def step_row(ps: ProductionStep) -> dict:
    def _iso(v):
        return v.isoformat() if v else None

    return {
        "id": ps.id,
        "order_id": ps.order_id,
        "production_plan_id": ps.production_plan_id,
        "step": ps.step,
        "step_order": ps.step_order,
        "department_id": ps.department_id,
        "planned_start_date": _iso(ps.planned_start_date),
        "planned_end_date": _iso(ps.planned_end_date),
        "actual_start_date": _iso(ps.actual_start_date),
        "actual_end_date": _iso(ps.actual_end_date),
        "status": ps.status,
        "completion_percentage": ps.completion_percentage,
        "notes": ps.notes,
        "updated_at": _iso(ps.updated_at),
        "updated_by": ps.updated_by,
    }
