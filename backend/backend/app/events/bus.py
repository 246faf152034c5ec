from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models.common import utcnow
from app.events.models import OutboxEvent


def publish(
    db: Session,
    topic: str,
    payload: dict,
    *,
    aggregate_type: str | None = None,
    aggregate_id: str | None = None,
    available_at: datetime | None = None,
    commit: bool = True,
) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    Services that change routing state pass commit=False so the event is only
    visible once their own transaction commits.
    """
    evt = OutboxEvent(
        topic=topic,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id) if aggregate_id is not None else None,
        payload=payload or {},
        available_at=available_at or utcnow(),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    if commit:
        db.commit()
        db.refresh(evt)
    else:
        db.flush()
    return evt
