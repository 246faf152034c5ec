from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import CANCELLED_STATUS_CODE
from app.core.errors import Conflict, InvalidInput, NotFound
from app.db.models.common import utcnow
from app.db.models.tracking import DelayRecord
from app.events import bus
from services.directory.service import display_names
from services.tracking.catalog import get_status_by_code
from services.tracking.ledger import current_status, get_order, record_event

logger = logging.getLogger(__name__)


def report_delay(
    db: Session,
    *,
    order_id: str,
    reason: str,
    reporter_id: str | None,
    description: str | None = None,
    delay_days: int | None = None,
    new_due_date: date | None = None,
    is_cancelled: bool = False,
) -> DelayRecord:
    """Record a delay or cancellation request. The order is left untouched."""
    if not (reason or "").strip():
        raise InvalidInput("reason is required")
    if delay_days is not None and delay_days < 0:
        raise InvalidInput("delay_days must not be negative", delay_days=delay_days)
    order = get_order(db, order_id)

    # A day count alone is turned into a date now, against the due date the reporter saw.
    if new_due_date is None and delay_days and not is_cancelled and order.due_date is not None:
        new_due_date = order.due_date + timedelta(days=delay_days)

    rec = DelayRecord(
        order_id=order.id,
        reason=reason.strip(),
        description=description,
        delay_days=delay_days,
        new_due_date=new_due_date,
        is_cancelled=bool(is_cancelled),
        reported_by=reporter_id,
        reported_at=utcnow(),
        approved_by=None,
        approved_at=None,
    )
    db.add(rec)
    db.flush()
    bus.publish(
        db,
        "delay.reported",
        {"order_id": order.id, "delay_id": rec.id, "is_cancelled": rec.is_cancelled},
        aggregate_type="order",
        aggregate_id=order.id,
        commit=False,
    )
    db.commit()
    logger.info("delay %s reported for order %s (cancel=%s)", rec.id, order.id, rec.is_cancelled)
    return rec


def approve_delay(db: Session, *, delay_id: str, approver_id: str) -> DelayRecord:
    """Approve a delay record exactly once and apply its effect on the order.

    Not cancelled with a new due date: the order's due date is overwritten.
    Cancelled: the order is moved to the cancelled status through the ledger.
    """
    rec = db.query(DelayRecord).filter(DelayRecord.id == delay_id).first()
    if not rec:
        raise NotFound("Delay record not found", delay_id=delay_id)

    now = utcnow()
    claimed = (
        db.query(DelayRecord)
        .filter(DelayRecord.id == delay_id, DelayRecord.approved_by.is_(None))
        .update({"approved_by": approver_id, "approved_at": now}, synchronize_session=False)
    )
    if claimed == 0:
        db.rollback()
        logger.warning("delay %s approval rejected: already approved", delay_id)
        raise Conflict("Delay record was already approved", delay_id=delay_id)

    db.refresh(rec)
    order = get_order(db, rec.order_id, lock=True)
    effect: dict = {}
    if rec.is_cancelled:
        cancelled = get_status_by_code(db, CANCELLED_STATUS_CODE)
        current = current_status(db, order.id)
        # Approval is the authority here, so the transition graph is not consulted.
        if current is None or current.status_id != cancelled.id:
            evt = record_event(
                db,
                order_id=order.id,
                status_id=cancelled.id,
                actor_id=approver_id,
                note=f"Cancelled on approval: {rec.reason}",
                payload={"delay_id": rec.id},
            )
            effect = {"cancelled": True, "event_id": evt.id}
        else:
            effect = {"cancelled": True, "event_id": None}
    elif rec.new_due_date is not None:
        effect = {
            "previous_due_date": order.due_date.isoformat() if order.due_date else None,
            "new_due_date": rec.new_due_date.isoformat(),
        }
        order.due_date = rec.new_due_date
        order.updated_at = now
        order.updated_by = approver_id

    audit(
        db,
        actor=approver_id,
        action="delay.approve",
        entity_type="delay_record",
        entity_id=rec.id,
        payload={"order_id": order.id, **effect},
        commit=False,
    )
    bus.publish(
        db,
        "delay.approved",
        {"order_id": order.id, "delay_id": rec.id, **effect},
        aggregate_type="order",
        aggregate_id=order.id,
        commit=False,
    )
    db.commit()
    logger.info("delay %s approved by %s: %s", rec.id, approver_id, effect)
    return rec


def list_delays(db: Session, order_id: str) -> list[dict]:
    recs = (
        db.query(DelayRecord)
        .filter(DelayRecord.order_id == order_id)
        .order_by(DelayRecord.reported_at.desc())
        .all()
    )
    names = display_names(db, [r.reported_by for r in recs] + [r.approved_by for r in recs])
    return [delay_row(r, names) for r in recs]


def delay_row(rec: DelayRecord, names: dict[str, str] | None = None) -> dict:
    names = names or {}
    return {
        "id": rec.id,
        "order_id": rec.order_id,
        "reason": rec.reason,
        "description": rec.description,
        "delay_days": rec.delay_days,
        "new_due_date": rec.new_due_date.isoformat() if rec.new_due_date else None,
        "is_cancelled": bool(rec.is_cancelled),
        "reported_by": rec.reported_by,
        "reported_by_name": names.get(rec.reported_by),
        "reported_at": rec.reported_at.isoformat() if rec.reported_at else None,
        "approved_by": rec.approved_by,
        "approved_by_name": names.get(rec.approved_by),
        "approved_at": rec.approved_at.isoformat() if rec.approved_at else None,
    }
