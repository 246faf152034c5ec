from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Principal, current_user
from app.db.session import get_db
from services.transfers.service import (
    create_transfer,
    get_transfer,
    list_transfers_by_department,
    list_transfers_for,
    transfer_row,
    update_transfer,
)
from services.transfers.stages import stage_row

router = APIRouter(prefix="/transfers", tags=["transfers"])


class TransferIn(BaseModel):
    source_process_id: str
    source_process_type: str
    target_process_type: str
    quantity: float
    source_department_id: str | None = None
    target_department_id: str | None = None
    unit: str | None = None
    create_target: bool = False
    target_fields: dict = Field(default_factory=dict)
    notes: str | None = None


class TransferPatch(BaseModel):
    status: str | None = None
    notes: str | None = None
    quantity: float | None = None
    unit: str | None = None


@router.post("")
def create(payload: TransferIn, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    transfer, target = create_transfer(db, actor_id=principal.user_id, **payload.model_dump())
    return {"transfer": transfer_row(transfer), "target": stage_row(target, transfer.target_process_type)}


@router.get("")
def list_for_source(source_process_id: str, source_process_type: str, db: Session = Depends(get_db)):
    return list_transfers_for(db, source_process_id, source_process_type)


@router.get("/by-department/{department_id}")
def list_for_department(department_id: str, direction: str = "both", db: Session = Depends(get_db)):
    return list_transfers_by_department(db, department_id, direction)


@router.get("/{transfer_id}")
def get_one(transfer_id: str, db: Session = Depends(get_db)):
    return get_transfer(db, transfer_id)


@router.patch("/{transfer_id}")
def patch(transfer_id: str, payload: TransferPatch, db: Session = Depends(get_db), principal: Principal = Depends(current_user)):
    transfer, target = update_transfer(
        db,
        transfer_id=transfer_id,
        actor_id=principal.user_id,
        fields=payload.model_dump(exclude_unset=True),
    )
    return {"transfer": transfer_row(transfer), "target": stage_row(target, transfer.target_process_type)}
