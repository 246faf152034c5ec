from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.db.models.auth import User
from app.db.models.common import utcnow
from app.db.models.orders import Order
from app.db.models.tracking import TrackingEvent, TrackingStatus
from app.events import bus

logger = logging.getLogger(__name__)


def get_order(db: Session, order_id: str, *, lock: bool = False) -> Order:
    q = db.query(Order).filter(Order.id == order_id)
    if lock:
        q = q.with_for_update()
    order = q.first()
    if not order:
        raise NotFound("Order not found", order_id=order_id)
    return order


def record_event(
    db: Session,
    *,
    order_id: str,
    status_id: str,
    actor_id: str | None,
    note: str | None = None,
    production_plan_id: str | None = None,
    shipment_id: str | None = None,
    payload: dict | None = None,
) -> TrackingEvent:
    """Append a status event to the order's ledger.

    Legality of the move is the caller's business (see catalog.validate_transition).
    Joins the caller's transaction; nothing is committed here.
    """
    get_order(db, order_id)
    status = db.query(TrackingStatus).filter(TrackingStatus.id == status_id).first()
    if not status:
        raise NotFound("Tracking status not found", status_id=status_id)

    evt = TrackingEvent(
        order_id=order_id,
        status_id=status.id,
        note=note,
        timestamp=utcnow(),
        actor_id=actor_id,
        production_plan_id=production_plan_id,
        shipment_id=shipment_id,
        payload=payload or {},
    )
    db.add(evt)
    db.flush()
    bus.publish(
        db,
        "tracking.status.changed",
        {"order_id": order_id, "status_id": status.id, "status_code": status.code, "event_id": evt.id},
        aggregate_type="order",
        aggregate_id=order_id,
        commit=False,
    )
    logger.info("order %s -> %s (event %s)", order_id, status.code, evt.id)
    return evt


def current_status(db: Session, order_id: str) -> TrackingEvent | None:
    return (
        db.query(TrackingEvent)
        .filter(TrackingEvent.order_id == order_id)
        .order_by(TrackingEvent.timestamp.desc(), TrackingEvent.id.desc())
        .first()
    )


def event_row(evt: TrackingEvent, status: TrackingStatus | None = None, actor_name: str | None = None) -> dict:
    status = status or evt.status
    return {
        "id": evt.id,
        "order_id": evt.order_id,
        "status_id": evt.status_id,
        "status_name": status.name if status else None,
        "status_code": status.code if status else None,
        "status_color": status.color if status else None,
        "note": evt.note,
        "timestamp": evt.timestamp.isoformat() if evt.timestamp else None,
        "actor_id": evt.actor_id,
        "actor_name": actor_name,
        "production_plan_id": evt.production_plan_id,
        "shipment_id": evt.shipment_id,
        "payload": evt.payload or {},
    }


def history(db: Session, order_id: str) -> list[dict]:
    """All events for the order, newest first, with status and actor names."""
    get_order(db, order_id)
    rows = (
        db.query(TrackingEvent, TrackingStatus, User)
        .join(TrackingStatus, TrackingEvent.status_id == TrackingStatus.id)
        .outerjoin(User, TrackingEvent.actor_id == User.id)
        .filter(TrackingEvent.order_id == order_id)
        .order_by(TrackingEvent.timestamp.desc(), TrackingEvent.id.desc())
        .all()
    )
    return [event_row(evt, st, (u.full_name or u.email) if u else None) for evt, st, u in rows]
