from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy.orm import Session

from app.db.models.orders import MaterialRequirement, ShipmentRecord
from app.db.models.stages import ProcessTransfer
from app.db.models.tracking import TrackingEvent
from services.tracking import catalog, ledger
from services.tracking.delays import list_delays
from services.tracking.steps import current_step, list_steps, step_row

logger = logging.getLogger(__name__)


def change_status(
    db: Session,
    *,
    order_id: str,
    status_id: str,
    actor_id: str | None,
    permissions: Iterable[str] = (),
    note: str | None = None,
    production_plan_id: str | None = None,
    shipment_id: str | None = None,
    payload: dict | None = None,
    automated: bool = False,
) -> TrackingEvent:
    """Validate a status change against the transition graph and record it.

    The order row is locked for the read-validate-append sequence, so two
    concurrent changes on one order are applied one after the other.
    """
    ledger.get_order(db, order_id, lock=True)
    current = ledger.current_status(db, order_id)
    edge = catalog.validate_transition(
        db,
        current.status_id if current else None,
        status_id,
        permissions,
        automated=automated,
    )
    evt = ledger.record_event(
        db,
        order_id=order_id,
        status_id=status_id,
        actor_id=actor_id,
        note=note or (edge.description if edge else None),
        production_plan_id=production_plan_id,
        shipment_id=shipment_id,
        payload=payload,
    )
    db.commit()
    return evt


def _transfer_brief(t: ProcessTransfer) -> dict:
    return {
        "id": t.id,
        "source_process_type": t.source_process_type,
        "source_process_id": t.source_process_id,
        "target_process_type": t.target_process_type,
        "target_process_id": t.target_process_id,
        "quantity": t.quantity,
        "unit": t.unit,
        "status": t.status,
        "transfer_date": t.transfer_date.isoformat() if t.transfer_date else None,
    }


def material_row(m: MaterialRequirement) -> dict:
    return {
        "id": m.id,
        "order_id": m.order_id,
        "material_type": m.material_type,
        "material_ref": m.material_ref,
        "description": m.description,
        "quantity": m.quantity,
        "unit": m.unit,
        "is_available": bool(m.is_available),
        "estimated_arrival_date": m.estimated_arrival_date.isoformat() if m.estimated_arrival_date else None,
        "notes": m.notes,
    }


def shipment_row(s: ShipmentRecord) -> dict:
    return {
        "id": s.id,
        "order_id": s.order_id,
        "shipment_id": s.shipment_id,
        "quantity": s.quantity,
        "unit": s.unit,
        "package_count": s.package_count,
        "pallet_count": s.pallet_count,
        "gross_weight": s.gross_weight,
        "net_weight": s.net_weight,
        "volume_m3": s.volume_m3,
        "is_complete": bool(s.is_complete),
        "notes": s.notes,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


def get_order_tracking(db: Session, order_id: str) -> dict:
    order = ledger.get_order(db, order_id)
    events = ledger.history(db, order_id)
    steps = list_steps(db, order_id)
    cur_step = current_step(db, order_id)
    transfers = (
        db.query(ProcessTransfer)
        .filter(ProcessTransfer.order_id == order_id)
        .order_by(ProcessTransfer.transfer_date.desc())
        .all()
    )
    materials = (
        db.query(MaterialRequirement)
        .filter(MaterialRequirement.order_id == order_id)
        .order_by(MaterialRequirement.created_at.asc())
        .all()
    )
    shipments = (
        db.query(ShipmentRecord)
        .filter(ShipmentRecord.order_id == order_id)
        .order_by(ShipmentRecord.created_at.asc())
        .all()
    )
    return {
        "order": {
            "id": order.id,
            "order_number": order.order_number,
            "customer_name": order.customer_name,
            "quantity": order.quantity,
            "unit": order.unit,
            "due_date": order.due_date.isoformat() if order.due_date else None,
        },
        "current_status": events[0] if events else None,
        "history": events,
        "production_steps": [step_row(s) for s in steps],
        "current_step": step_row(cur_step) if cur_step else None,
        "transfers": [_transfer_brief(t) for t in transfers],
        "delays": list_delays(db, order_id),
        "material_requirements": [material_row(m) for m in materials],
        "shipments": [shipment_row(s) for s in shipments],
    }
