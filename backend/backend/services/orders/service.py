from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import Conflict, InvalidInput, NotFound
from app.core.tenant import get_tenant_id
from app.db.models.common import utcnow
from app.db.models.orders import MaterialRequirement, Order, ShipmentRecord
from app.events import bus
from services.tracking import catalog, ledger

logger = logging.getLogger(__name__)

MATERIAL_TYPES = ("yarn", "chemical", "dye", "other")


def create_order(
    db: Session,
    *,
    order_number: str,
    actor_id: str | None,
    customer_name: str = "",
    fabric_type: str | None = None,
    color: str | None = None,
    quantity: float = 0,
    unit: str = "m",
    order_date: date | None = None,
    due_date: date | None = None,
    notes: str | None = None,
    initial_status_code: str | None = "ORDER_RECEIVED",
) -> Order:
    """Register an order and, unless told otherwise, open its ledger."""
    if not (order_number or "").strip():
        raise InvalidInput("order_number is required")
    if quantity < 0:
        raise InvalidInput("quantity must not be negative", quantity=quantity)
    initial = catalog.get_status_by_code(db, initial_status_code) if initial_status_code else None
    if initial is not None:
        catalog.validate_transition(db, None, initial.id, automated=True)

    order = Order(
        tenant_id=get_tenant_id(),
        order_number=order_number.strip(),
        customer_name=customer_name or "",
        fabric_type=fabric_type,
        color=color,
        quantity=quantity,
        unit=unit,
        order_date=order_date or date.today(),
        due_date=due_date,
        notes=notes,
    )
    db.add(order)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise Conflict("Order number already exists", order_number=order_number)

    if initial is not None:
        ledger.record_event(db, order_id=order.id, status_id=initial.id, actor_id=actor_id, note="Order registered")
    db.commit()
    logger.info("order %s created (%s)", order.order_number, order.id)
    return order


def add_material_requirement(
    db: Session,
    *,
    order_id: str,
    actor_id: str | None,
    material_type: str,
    quantity: float,
    unit: str = "kg",
    material_ref: str | None = None,
    description: str | None = None,
    is_available: bool = False,
    estimated_arrival_date: date | None = None,
    notes: str | None = None,
) -> MaterialRequirement:
    if material_type not in MATERIAL_TYPES:
        raise InvalidInput(f"Unknown material type {material_type!r}", allowed=list(MATERIAL_TYPES))
    if quantity <= 0:
        raise InvalidInput("quantity must be positive", quantity=quantity)
    ledger.get_order(db, order_id)
    m = MaterialRequirement(
        order_id=order_id,
        material_type=material_type,
        material_ref=material_ref,
        description=description,
        quantity=quantity,
        unit=unit,
        is_available=is_available,
        estimated_arrival_date=estimated_arrival_date,
        notes=notes,
        updated_at=utcnow(),
        updated_by=actor_id,
    )
    db.add(m)
    db.commit()
    return m


def update_material_requirement(db: Session, *, requirement_id: str, actor_id: str | None, fields: dict) -> MaterialRequirement:
    allowed = {"quantity", "unit", "material_ref", "description", "is_available", "estimated_arrival_date", "notes"}
    unknown = set(fields) - allowed
    if unknown:
        raise InvalidInput("Unknown material requirement fields", fields=sorted(unknown))
    if "quantity" in fields and (fields["quantity"] is None or fields["quantity"] <= 0):
        raise InvalidInput("quantity must be positive", quantity=fields["quantity"])
    m = db.query(MaterialRequirement).filter(MaterialRequirement.id == requirement_id).first()
    if not m:
        raise NotFound("Material requirement not found", requirement_id=requirement_id)
    for key, value in fields.items():
        setattr(m, key, value)
    m.updated_at = utcnow()
    m.updated_by = actor_id
    db.commit()
    return m


def add_shipment_record(
    db: Session,
    *,
    order_id: str,
    actor_id: str | None,
    shipment_id: str,
    quantity: float,
    unit: str,
    package_count: int | None = None,
    pallet_count: int | None = None,
    gross_weight: float | None = None,
    net_weight: float | None = None,
    volume_m3: float | None = None,
    is_complete: bool = False,
    notes: str | None = None,
) -> ShipmentRecord:
    """Record how much of an order left with a shipment."""
    if not (shipment_id or "").strip():
        raise InvalidInput("shipment_id is required")
    if not (unit or "").strip():
        raise InvalidInput("unit is required")
    if quantity is None or quantity <= 0:
        raise InvalidInput("quantity must be positive", quantity=quantity)
    for name, value in (("package_count", package_count), ("pallet_count", pallet_count)):
        if value is not None and value < 0:
            raise InvalidInput(f"{name} must not be negative", **{name: value})
    ledger.get_order(db, order_id)

    rec = ShipmentRecord(
        order_id=order_id,
        shipment_id=shipment_id.strip(),
        quantity=quantity,
        unit=unit,
        package_count=package_count,
        pallet_count=pallet_count,
        gross_weight=gross_weight,
        net_weight=net_weight,
        volume_m3=volume_m3,
        is_complete=is_complete,
        notes=notes,
        created_by=actor_id,
    )
    db.add(rec)
    db.flush()
    bus.publish(
        db,
        "order.shipment.recorded",
        {"order_id": order_id, "shipment_id": rec.shipment_id, "quantity": quantity, "unit": unit, "is_complete": is_complete},
        aggregate_type="order",
        aggregate_id=order_id,
        commit=False,
    )
    db.commit()
    logger.info("order %s: %s %s recorded on shipment %s", order_id, quantity, unit, rec.shipment_id)
    return rec


def list_shipment_records(db: Session, order_id: str) -> list[ShipmentRecord]:
    return (
        db.query(ShipmentRecord)
        .filter(ShipmentRecord.order_id == order_id)
        .order_by(ShipmentRecord.created_at.asc())
        .all()
    )
