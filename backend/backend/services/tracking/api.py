from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Principal, current_user, get_principal
from app.db.session import get_db
from services.tracking import catalog, ledger
from services.tracking.delays import approve_delay, delay_row, report_delay
from services.tracking.service import change_status, get_order_tracking
from services.tracking.steps import step_row, upsert_step

router = APIRouter(prefix="/tracking", tags=["tracking"])


class StatusChangeIn(BaseModel):
    status_id: str
    note: str | None = None
    production_plan_id: str | None = None
    shipment_id: str | None = None
    payload: dict = Field(default_factory=dict)


class StepIn(BaseModel):
    id: str | None = None
    production_plan_id: str | None = None
    department_id: str | None = None
    step: str | None = None
    step_order: int | None = None
    planned_start_date: datetime | None = None
    planned_end_date: datetime | None = None
    actual_start_date: datetime | None = None
    actual_end_date: datetime | None = None
    status: str | None = None
    completion_percentage: int | None = None
    notes: str | None = None


class DelayIn(BaseModel):
    reason: str
    description: str | None = None
    delay_days: int | None = None
    new_due_date: date | None = None
    is_cancelled: bool = False


@router.get("/statuses")
def list_statuses(db: Session = Depends(get_db)):
    return [
        {
            "id": s.id,
            "code": s.code,
            "name": s.name,
            "description": s.description,
            "color": s.color,
            "sequence": s.sequence,
        }
        for s in catalog.list_active_statuses(db)
    ]


@router.get("/statuses/{status_id}/transitions")
def list_transitions(status_id: str, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return catalog.list_transitions_from(db, status_id, principal.permissions)


@router.get("/orders/{order_id}")
def order_tracking(order_id: str, db: Session = Depends(get_db)):
    return get_order_tracking(db, order_id)


@router.get("/orders/{order_id}/history")
def order_history(order_id: str, db: Session = Depends(get_db)):
    return ledger.history(db, order_id)


@router.post("/orders/{order_id}/status")
def record_status_change(
    order_id: str,
    payload: StatusChangeIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_user),
):
    evt = change_status(
        db,
        order_id=order_id,
        status_id=payload.status_id,
        actor_id=principal.user_id,
        permissions=principal.permissions,
        note=payload.note,
        production_plan_id=payload.production_plan_id,
        shipment_id=payload.shipment_id,
        payload=payload.payload,
    )
    return ledger.event_row(evt, actor_name=principal.username)


@router.post("/orders/{order_id}/steps")
def save_step(order_id: str, payload: StepIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    fields = payload.model_dump(exclude={"id"}, exclude_none=True)
    ps = upsert_step(db, order_id=order_id, actor_id=principal.user_id, step_id=payload.id, **fields)
    return step_row(ps)


@router.post("/orders/{order_id}/delays")
def create_delay(order_id: str, payload: DelayIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    rec = report_delay(
        db,
        order_id=order_id,
        reason=payload.reason,
        reporter_id=principal.user_id,
        description=payload.description,
        delay_days=payload.delay_days,
        new_due_date=payload.new_due_date,
        is_cancelled=payload.is_cancelled,
    )
    return delay_row(rec)


@router.post("/delays/{delay_id}/approve")
def approve(delay_id: str, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    rec = approve_delay(db, delay_id=delay_id, approver_id=principal.user_id)
    return delay_row(rec)
