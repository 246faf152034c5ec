from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import Forbidden, NotFound
from app.core.security import Principal, current_user
from app.db.session import get_db
from app.events.models import EventSubscription, OutboxEvent


router = APIRouter(prefix="/admin/events", tags=["admin_events"])


def _require_admin(principal: Principal) -> None:
    if "ADMIN" not in set(principal.roles or []):
        raise Forbidden("ADMIN role required")


class SubscriptionIn(BaseModel):
    topic_pattern: str
    target_url: str
    name: str = "subscription"
    headers: dict = Field(default_factory=dict)
    is_active: bool = True


def _sub_row(s: EventSubscription) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "topic_pattern": s.topic_pattern,
        "target_url": s.target_url,
        "headers": s.headers or {},
        "is_active": bool(s.is_active),
        "failure_count": int(s.failure_count or 0),
        "last_error": s.last_error,
        "last_delivered_at": s.last_delivered_at.isoformat() if s.last_delivered_at else None,
    }


@router.get("/subscriptions")
def list_subscriptions(db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    _require_admin(principal)
    subs = db.query(EventSubscription).order_by(EventSubscription.created_at.desc()).all()
    return [_sub_row(s) for s in subs]


@router.post("/subscriptions")
def create_subscription(payload: SubscriptionIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    _require_admin(principal)
    s = EventSubscription(
        name=payload.name,
        topic_pattern=payload.topic_pattern,
        target_url=payload.target_url,
        headers=payload.headers,
        is_active=payload.is_active,
        failure_count=0,
    )
    db.add(s)
    db.commit()
    return _sub_row(s)


@router.post("/subscriptions/{sub_id}/toggle")
def toggle_subscription(sub_id: str, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    _require_admin(principal)
    s = db.query(EventSubscription).filter(EventSubscription.id == sub_id).first()
    if not s:
        raise NotFound("Unknown subscription", subscription_id=sub_id)
    s.is_active = not bool(s.is_active)
    db.commit()
    return _sub_row(s)


@router.get("/outbox")
def list_outbox(
    aggregate_type: str | None = None,
    aggregate_id: str | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_user),
):
    """Recent events, optionally for one order, card or transfer."""
    _require_admin(principal)
    q = db.query(OutboxEvent)
    if aggregate_type:
        q = q.filter(OutboxEvent.aggregate_type == aggregate_type)
    if aggregate_id:
        q = q.filter(OutboxEvent.aggregate_id == aggregate_id)
    rows = q.order_by(OutboxEvent.created_at.desc()).limit(min(limit, 500)).all()
    return [
        {
            "id": e.id,
            "topic": e.topic,
            "aggregate_type": e.aggregate_type,
            "aggregate_id": e.aggregate_id,
            "payload": e.payload or {},
            "delivered": bool(e.delivered),
            "attempt_count": e.attempt_count,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in rows
    ]
