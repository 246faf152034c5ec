from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from services.directory import service as directory

router = APIRouter(prefix="/directory", tags=["directory"])


@router.get("/departments")
def departments(db: Session = Depends(get_db)):
    return [{"id": d.id, "code": d.code, "name": d.name, "color": d.color} for d in directory.list_departments(db)]


@router.get("/machines/{department_id}")
def machines(department_id: str, include_inactive: bool = False, db: Session = Depends(get_db)):
    """Machines an operator can pick when starting a card step in this department."""
    return [
        {"id": m.id, "code": m.code, "name": m.name, "department_id": m.department_id, "status": m.status}
        for m in directory.list_machines(db, department_id, active_only=not include_inactive)
    ]


@router.get("/process-types")
def process_types(department_id: str | None = None, db: Session = Depends(get_db)):
    return [
        {"id": p.id, "code": p.code, "name": p.name, "department_id": p.department_id, "sequence": p.sequence}
        for p in directory.list_process_types(db, department_id)
    ]
