from __future__ import annotations

from dataclasses import dataclass

from app.core.errors import InvalidInput
from app.db.models.stages import FinishingProcess, StageRecord, WeavingOrder


@dataclass(frozen=True)
class Stage:
    key: str
    model: type[StageRecord]
    prefix: str


# Production-stage tables a transfer may point at, keyed by process type tag.
STAGES: dict[str, Stage] = {
    "weaving": Stage("weaving", WeavingOrder, "DKM-"),
    "finishing": Stage("finishing", FinishingProcess, "TRB-"),
}


def get_stage(process_type: str) -> Stage:
    stage = STAGES.get(process_type)
    if not stage:
        raise InvalidInput(f"Unknown process type {process_type!r}", allowed=sorted(STAGES))
    return stage


def stage_row(rec: StageRecord | None, process_type: str | None = None) -> dict | None:
    if rec is None:
        return None
    return {
        "id": rec.id,
        "process_type": process_type,
        "code": rec.code,
        "order_id": rec.order_id,
        "department_id": rec.department_id,
        "fabric_type": rec.fabric_type,
        "color": rec.color,
        "quantity": rec.quantity,
        "unit": rec.unit,
        "status": rec.status,
        "notes": rec.notes,
        "properties": rec.properties or {},
        "source_process_id": rec.source_process_id,
        "source_process_type": rec.source_process_type,
        "transfer_id": rec.transfer_id,
    }
