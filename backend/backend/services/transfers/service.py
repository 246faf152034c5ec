from __future__ import annotations

import logging

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import CODE_SEQUENCE_RETRIES
from app.core.errors import Conflict, InvalidInput, NotFound
from app.db.models.common import utcnow
from app.db.models.stages import ProcessTransfer, StageRecord
from app.events import bus
from services.directory.service import get_department
from services.numbering import dated_code
from services.transfers.stages import get_stage, stage_row

logger = logging.getLogger(__name__)

TRANSFER_STATUSES = ("pending", "completed")

# Floating point slack when comparing transferred totals with the source quantity.
_EPS = 1e-9

# Target columns a caller may set when a downstream row is materialized.
_TARGET_FIELDS = {"notes", "properties", "quality_requirements", "machine_id", "process_type_id", "pattern"}


def _load_stage_row(db: Session, process_type: str, process_id: str, *, lock: bool = False) -> StageRecord:
    stage = get_stage(process_type)
    q = db.query(stage.model).filter(stage.model.id == process_id)
    if lock:
        q = q.with_for_update()
    rec = q.first()
    if not rec:
        raise NotFound("Source process not found", process_type=process_type, process_id=process_id)
    return rec


def _transferred_total(db: Session, source_process_id: str, source_process_type: str, *, exclude_id: str | None = None) -> float:
    q = db.query(func.coalesce(func.sum(ProcessTransfer.quantity), 0.0)).filter(
        ProcessTransfer.source_process_id == source_process_id,
        ProcessTransfer.source_process_type == source_process_type,
    )
    if exclude_id:
        q = q.filter(ProcessTransfer.id != exclude_id)
    return float(q.scalar() or 0.0)


def _check_available(db: Session, source: StageRecord, source_type: str, quantity: float, *, exclude_id: str | None = None) -> None:
    already = _transferred_total(db, source.id, source_type, exclude_id=exclude_id)
    available = float(source.quantity or 0) - already
    if quantity > available + _EPS:
        logger.warning("transfer of %s from %s %s rejected: %s available", quantity, source_type, source.id, available)
        raise Conflict(
            "Transfer exceeds the quantity left on the source",
            requested=quantity,
            available=max(available, 0.0),
            source_quantity=source.quantity,
        )


def _materialize_target(
    db: Session,
    *,
    transfer: ProcessTransfer,
    source: StageRecord,
    target_type: str,
    target_department_id: str | None,
    quantity: float,
    unit: str,
    target_fields: dict,
) -> StageRecord:
    stage = get_stage(target_type)
    properties = dict(source.properties or {})
    properties.update(target_fields.get("properties") or {})
    extra = {k: v for k, v in target_fields.items() if k != "properties" and hasattr(stage.model, k)}
    if hasattr(stage.model, "quality_requirements"):
        extra.setdefault("quality_requirements", dict(properties.get("quality_requirements") or {}))

    for _ in range(CODE_SEQUENCE_RETRIES):
        code = dated_code(db, stage.prefix)
        target = stage.model(
            code=code,
            order_id=source.order_id,
            department_id=target_department_id,
            fabric_type=source.fabric_type,
            color=source.color,
            quantity=quantity,
            unit=unit,
            properties=properties,
            source_process_id=source.id,
            source_process_type=transfer.source_process_type,
            transfer_id=transfer.id,
            **{"notes": f"Transferred from {source.code}", **extra, "status": "planned"},
        )
        try:
            with db.begin_nested():
                db.add(target)
        except IntegrityError:
            # A hand-entered row already holds this code; take the next number.
            logger.warning("generated code %s already in use, retrying", code)
            continue
        return target
    raise Conflict("Could not allocate a unique code for the target record", process_type=target_type)


def create_transfer(
    db: Session,
    *,
    source_process_id: str,
    source_process_type: str,
    target_process_type: str,
    quantity: float,
    actor_id: str | None,
    source_department_id: str | None = None,
    target_department_id: str | None = None,
    unit: str | None = None,
    create_target: bool = False,
    target_fields: dict | None = None,
    notes: str | None = None,
) -> tuple[ProcessTransfer, StageRecord | None]:
    """Hand a quantity from one production stage to the next.

    With create_target the downstream row is created and linked in the same
    transaction, so a transfer is never visible with a half-built target.
    """
    if quantity is None or quantity <= 0:
        raise InvalidInput("quantity must be positive", quantity=quantity)
    get_stage(source_process_type)
    get_stage(target_process_type)
    target_fields = dict(target_fields or {})
    unknown = set(target_fields) - _TARGET_FIELDS
    if unknown:
        raise InvalidInput("Unknown target fields", fields=sorted(unknown))
    for dept_id in (source_department_id, target_department_id):
        if dept_id:
            get_department(db, dept_id)

    source = _load_stage_row(db, source_process_type, source_process_id, lock=True)
    _check_available(db, source, source_process_type, quantity)

    transfer = ProcessTransfer(
        order_id=source.order_id,
        source_department_id=source_department_id or source.department_id,
        source_process_id=source.id,
        source_process_type=source_process_type,
        target_department_id=target_department_id,
        target_process_id=None,
        target_process_type=target_process_type,
        quantity=quantity,
        unit=unit or source.unit,
        transfer_date=utcnow(),
        status="pending" if create_target else "completed",
        notes=notes,
        created_by=actor_id,
    )
    db.add(transfer)
    db.flush()

    target = None
    if create_target:
        target = _materialize_target(
            db,
            transfer=transfer,
            source=source,
            target_type=target_process_type,
            target_department_id=target_department_id,
            quantity=quantity,
            unit=transfer.unit,
            target_fields=target_fields,
        )
        transfer.target_process_id = target.id
        transfer.updated_at = utcnow()
        transfer.updated_by = actor_id

    bus.publish(
        db,
        "transfer.created",
        {
            "transfer_id": transfer.id,
            "source_process_type": source_process_type,
            "source_process_id": source.id,
            "target_process_type": target_process_type,
            "target_process_id": transfer.target_process_id,
            "quantity": quantity,
        },
        aggregate_type="transfer",
        aggregate_id=transfer.id,
        commit=False,
    )
    db.commit()
    logger.info(
        "transfer %s: %s %s -> %s %s (%s %s)",
        transfer.id, source_process_type, source.code, target_process_type,
        target.code if target else "-", quantity, transfer.unit,
    )
    return transfer, target


def _target_of(db: Session, transfer: ProcessTransfer, *, lock: bool = False) -> StageRecord | None:
    if not transfer.target_process_id:
        return None
    stage = get_stage(transfer.target_process_type)
    q = db.query(stage.model).filter(stage.model.id == transfer.target_process_id)
    if lock:
        q = q.with_for_update()
    return q.first()


def get_transfer(db: Session, transfer_id: str) -> dict:
    t = db.query(ProcessTransfer).filter(ProcessTransfer.id == transfer_id).first()
    if not t:
        raise NotFound("Transfer not found", transfer_id=transfer_id)
    source = _load_stage_row(db, t.source_process_type, t.source_process_id)
    return {
        **transfer_row(t),
        "source": stage_row(source, t.source_process_type),
        "target": stage_row(_target_of(db, t), t.target_process_type),
    }


def list_transfers_for(db: Session, source_process_id: str, source_process_type: str) -> list[dict]:
    get_stage(source_process_type)
    rows = (
        db.query(ProcessTransfer)
        .filter(
            ProcessTransfer.source_process_id == source_process_id,
            ProcessTransfer.source_process_type == source_process_type,
        )
        .order_by(ProcessTransfer.transfer_date.desc(), ProcessTransfer.created_at.desc())
        .all()
    )
    return [{**transfer_row(t), "target": stage_row(_target_of(db, t), t.target_process_type)} for t in rows]


def list_transfers_by_department(db: Session, department_id: str, direction: str = "both") -> list[dict]:
    if direction not in ("in", "out", "both"):
        raise InvalidInput("direction must be in, out or both", direction=direction)
    get_department(db, department_id)
    q = db.query(ProcessTransfer)
    if direction == "in":
        q = q.filter(ProcessTransfer.target_department_id == department_id)
    elif direction == "out":
        q = q.filter(ProcessTransfer.source_department_id == department_id)
    else:
        q = q.filter(
            or_(
                ProcessTransfer.source_department_id == department_id,
                ProcessTransfer.target_department_id == department_id,
            )
        )
    return [transfer_row(t) for t in q.order_by(ProcessTransfer.transfer_date.desc()).all()]


def update_transfer(db: Session, *, transfer_id: str, actor_id: str | None, fields: dict) -> tuple[ProcessTransfer, StageRecord | None]:
    """Patch status, notes, unit or quantity. Quantity and unit follow onto the target."""
    allowed = {"status", "notes", "quantity", "unit"}
    unknown = set(fields) - allowed
    if unknown:
        raise InvalidInput("Unknown transfer fields", fields=sorted(unknown))
    if "status" in fields and fields["status"] not in TRANSFER_STATUSES:
        raise InvalidInput(f"Unknown transfer status {fields['status']!r}", allowed=list(TRANSFER_STATUSES))
    if "quantity" in fields and (fields["quantity"] is None or fields["quantity"] <= 0):
        raise InvalidInput("quantity must be positive", quantity=fields["quantity"])

    t = db.query(ProcessTransfer).filter(ProcessTransfer.id == transfer_id).with_for_update().first()
    if not t:
        raise NotFound("Transfer not found", transfer_id=transfer_id)

    if "quantity" in fields and fields["quantity"] != t.quantity:
        source = _load_stage_row(db, t.source_process_type, t.source_process_id, lock=True)
        _check_available(db, source, t.source_process_type, fields["quantity"], exclude_id=t.id)

    target = _target_of(db, t, lock=True)
    for key, value in fields.items():
        setattr(t, key, value)
    if target is not None:
        if "quantity" in fields:
            target.quantity = fields["quantity"]
        if "unit" in fields:
            target.unit = fields["unit"]
        target.updated_at = utcnow()
        target.updated_by = actor_id
    t.updated_at = utcnow()
    t.updated_by = actor_id

    bus.publish(
        db,
        "transfer.updated",
        {"transfer_id": t.id, "changes": dict(fields)},
        aggregate_type="transfer",
        aggregate_id=t.id,
        commit=False,
    )
    db.commit()
    return t, target


def transfer_row(t: ProcessTransfer) -> dict:
    return {
        "id": t.id,
        "order_id": t.order_id,
        "source_department_id": t.source_department_id,
        "source_process_id": t.source_process_id,
        "source_process_type": t.source_process_type,
        "target_department_id": t.target_department_id,
        "target_process_id": t.target_process_id,
        "target_process_type": t.target_process_type,
        "quantity": t.quantity,
        "unit": t.unit,
        "transfer_date": t.transfer_date.isoformat() if t.transfer_date else None,
        "status": t.status,
        "notes": t.notes,
        "created_by": t.created_by,
    }
