from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.security import Principal, current_user
from app.db.session import get_db
from services.cards import service as cards
from services.notify.notifier import Notifier, get_notifier

router = APIRouter(prefix="/cards", tags=["process_cards"])


class CardIn(BaseModel):
    quantity: float
    unit: str = "m"
    card_number: str | None = None
    order_id: str | None = None
    production_plan_id: str | None = None
    route_template_id: str | None = None
    fabric_type: str | None = None
    color: str | None = None
    notes: str | None = None


class StartIn(BaseModel):
    card_number: str
    department_id: str
    machine_id: str | None = None
    process_type_id: str | None = None
    step_order: int | None = None
    notes: str | None = None


class SimpleStartIn(BaseModel):
    card_number: str
    department_id: str


class CompleteIn(BaseModel):
    card_number: str | None = None
    tracking_id: str | None = None
    quantity_processed: float | None = None
    quantity_defect: float = 0
    notes: str | None = None


@router.post("")
def create(payload: CardIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    card = cards.create_card(db, actor_id=principal.user_id, **payload.model_dump())
    return cards.card_row(card)


@router.get("/active")
def active_cards(db: Session = Depends(get_db)):
    return cards.list_active_cards(db)


@router.get("/{card_number}")
def detail(card_number: str, db: Session = Depends(get_db)):
    return cards.card_detail(db, card_number)


@router.post("/start")
def start(payload: StartIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    rec = cards.start_step(db, operator_id=principal.user_id, **payload.model_dump())
    return {"success": True, "record": cards.record_row(rec)}


@router.post("/start-simple")
def start_simple(payload: SimpleStartIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    rec, already = cards.start_step_simple(
        db,
        card_number=payload.card_number,
        operator_id=principal.user_id,
        department_id=payload.department_id,
    )
    return {"success": True, "is_active": already, "record": cards.record_row(rec)}


@router.post("/complete")
def complete(
    payload: CompleteIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_user),
    notifier: Notifier = Depends(get_notifier),
):
    result = cards.complete_step(db, actor_id=principal.user_id, notifier=notifier, **payload.model_dump())
    return {
        "success": True,
        "record": cards.record_row(result["record"]),
        "next_step": result["next_step"],
        "is_completed": result["is_completed"],
    }
