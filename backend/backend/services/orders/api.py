from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.security import Principal, require_permissions
from app.db.session import get_db
from services.orders.service import (
    add_material_requirement,
    add_shipment_record,
    create_order,
    list_shipment_records,
    update_material_requirement,
)
from services.tracking.ledger import get_order
from services.tracking.service import material_row, shipment_row

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderIn(BaseModel):
    order_number: str
    customer_name: str = ""
    fabric_type: str | None = None
    color: str | None = None
    quantity: float = 0
    unit: str = "m"
    order_date: date | None = None
    due_date: date | None = None
    notes: str | None = None


class MaterialIn(BaseModel):
    material_type: str
    quantity: float
    unit: str = "kg"
    material_ref: str | None = None
    description: str | None = None
    is_available: bool = False
    estimated_arrival_date: date | None = None
    notes: str | None = None


class MaterialPatch(BaseModel):
    quantity: float | None = None
    unit: str | None = None
    material_ref: str | None = None
    description: str | None = None
    is_available: bool | None = None
    estimated_arrival_date: date | None = None
    notes: str | None = None


@router.post("")
def create(
    payload: OrderIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permissions(["sales:manage_orders"])),
):
    order = create_order(db, actor_id=principal.user_id, **payload.model_dump())
    return {
        "id": order.id,
        "order_number": order.order_number,
        "due_date": order.due_date.isoformat() if order.due_date else None,
    }


@router.post("/{order_id}/materials")
def add_material(
    order_id: str,
    payload: MaterialIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permissions(["inventory:manage_materials"])),
):
    m = add_material_requirement(db, order_id=order_id, actor_id=principal.user_id, **payload.model_dump())
    return material_row(m)


@router.patch("/materials/{requirement_id}")
def patch_material(
    requirement_id: str,
    payload: MaterialPatch,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permissions(["inventory:manage_materials"])),
):
    m = update_material_requirement(
        db,
        requirement_id=requirement_id,
        actor_id=principal.user_id,
        fields=payload.model_dump(exclude_unset=True),
    )
    return material_row(m)


class ShipmentIn(BaseModel):
    shipment_id: str
    quantity: float
    unit: str
    package_count: int | None = None
    pallet_count: int | None = None
    gross_weight: float | None = None
    net_weight: float | None = None
    volume_m3: float | None = None
    is_complete: bool = False
    notes: str | None = None


@router.post("/{order_id}/shipments")
def add_shipment(
    order_id: str,
    payload: ShipmentIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_permissions(["shipping:manage_shipments"])),
):
    rec = add_shipment_record(db, order_id=order_id, actor_id=principal.user_id, **payload.model_dump())
    return shipment_row(rec)


@router.get("/{order_id}/shipments")
def list_shipments(order_id: str, db: Session = Depends(get_db)):
    get_order(db, order_id)
    return [shipment_row(s) for s in list_shipment_records(db, order_id)]
