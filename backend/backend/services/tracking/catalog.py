from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from app.core.errors import Conflict, Forbidden, InvalidInput, NotFound
from app.db.models.tracking import TrackingStatus, TrackingTransition

logger = logging.getLogger(__name__)

# code, name, description, color, sequence
DEFAULT_STATUSES = [
    ("ORDER_RECEIVED", "Order Received", "Order registered in the system", "#3b82f6", 1),
    ("PLANNING_STARTED", "Planning Started", "Production planning started", "#10b981", 2),
    ("MATERIALS_PREPARATION", "Materials Preparation", "Raw materials are being prepared", "#f59e0b", 3),
    ("WEAVING_STARTED", "Weaving Started", "Weaving started", "#6366f1", 4),
    ("WEAVING_COMPLETED", "Weaving Completed", "Weaving completed", "#8b5cf6", 5),
    ("RAW_QUALITY_CHECK", "Raw Quality Check", "Greige fabric in quality control", "#ec4899", 6),
    ("PRE_STORAGE", "Pre-Storage", "Fabric waiting in storage before finishing", "#d946ef", 7),
    ("FINISHING_STARTED", "Finishing Started", "Finishing started", "#14b8a6", 8),
    ("FINISHING_COMPLETED", "Finishing Completed", "Finishing completed", "#0ea5e9", 9),
    ("FINAL_QUALITY_CHECK", "Final Quality Check", "Final quality control in progress", "#ef4444", 10),
    ("IN_STORAGE", "In Storage", "Product in storage, ready for shipping", "#84cc16", 11),
    ("SHIPPING_PREPARATION", "Shipping Preparation", "Packing and preparing the shipment", "#f97316", 12),
    ("SHIPPED", "Shipped", "Shipped to the customer", "#06b6d4", 13),
    ("DELIVERED", "Delivered", "Delivered to the customer", "#22c55e", 14),
    ("CANCELLED", "Cancelled", "Order cancelled", "#dc2626", 15),
    ("ON_HOLD", "On Hold", "Order put on hold", "#eab308", 16),
]

# from, to, description, is_automated, required_permission
DEFAULT_TRANSITIONS = [
    ("ORDER_RECEIVED", "PLANNING_STARTED", "Order taken into planning", False, "planning:manage_plans"),
    ("PLANNING_STARTED", "MATERIALS_PREPARATION", "Planning done, material preparation started", False, "inventory:manage_materials"),
    ("MATERIALS_PREPARATION", "WEAVING_STARTED", "Materials ready, weaving started", False, "weaving:manage_workorders"),
    ("WEAVING_STARTED", "WEAVING_COMPLETED", "Weaving completed", False, "weaving:manage_workorders"),
    ("WEAVING_COMPLETED", "RAW_QUALITY_CHECK", "Greige fabric sent to quality control", False, "quality:manage_checks"),
    ("RAW_QUALITY_CHECK", "PRE_STORAGE", "Quality control passed, taken into pre-storage", False, "inventory:manage_storage"),
    ("PRE_STORAGE", "FINISHING_STARTED", "Finishing started", False, "finishing:manage_processes"),
    ("FINISHING_STARTED", "FINISHING_COMPLETED", "Finishing completed", False, "finishing:manage_processes"),
    ("FINISHING_COMPLETED", "FINAL_QUALITY_CHECK", "Sent to final quality control", False, "quality:manage_checks"),
    ("FINAL_QUALITY_CHECK", "IN_STORAGE", "Quality control passed, taken into storage", False, "inventory:manage_storage"),
    ("IN_STORAGE", "SHIPPING_PREPARATION", "Shipping preparation started", False, "shipping:manage_shipments"),
    ("SHIPPING_PREPARATION", "SHIPPED", "Shipped", False, "shipping:manage_shipments"),
    ("SHIPPED", "DELIVERED", "Delivered to the customer", False, "shipping:manage_shipments"),
    ("ORDER_RECEIVED", "CANCELLED", "Order cancelled", False, "sales:manage_orders"),
    ("ORDER_RECEIVED", "ON_HOLD", "Order put on hold", False, "sales:manage_orders"),
    ("PLANNING_STARTED", "CANCELLED", "Order cancelled", False, "sales:manage_orders"),
    ("PLANNING_STARTED", "ON_HOLD", "Order put on hold", False, "sales:manage_orders"),
    ("MATERIALS_PREPARATION", "ON_HOLD", "Waiting for raw material supply", False, "inventory:manage_materials"),
    ("ON_HOLD", "PLANNING_STARTED", "Held order reactivated", False, "planning:manage_plans"),
]


def seed_catalog(db: Session) -> int:
    """Insert the default statuses and edges that are missing. Returns rows added."""
    added = 0
    by_code = {s.code: s for s in db.query(TrackingStatus).all()}
    for code, name, description, color, sequence in DEFAULT_STATUSES:
        if code in by_code:
            continue
        st = TrackingStatus(code=code, name=name, description=description, color=color, sequence=sequence, is_active=True)
        db.add(st)
        by_code[code] = st
        added += 1
    db.flush()

    existing = {(t.from_status_id, t.to_status_id) for t in db.query(TrackingTransition).all()}
    for from_code, to_code, description, automated, permission in DEFAULT_TRANSITIONS:
        edge = (by_code[from_code].id, by_code[to_code].id)
        if edge in existing:
            continue
        db.add(
            TrackingTransition(
                from_status_id=edge[0],
                to_status_id=edge[1],
                description=description,
                is_automated=automated,
                required_permission=permission,
            )
        )
        existing.add(edge)
        added += 1
    db.commit()
    if added:
        logger.info("seeded %d tracking catalog rows", added)
    return added


def get_status(db: Session, status_id: str) -> TrackingStatus:
    st = db.query(TrackingStatus).filter(TrackingStatus.id == status_id).first()
    if not st:
        raise NotFound("Tracking status not found", status_id=status_id)
    return st


def get_status_by_code(db: Session, code: str) -> TrackingStatus:
    st = db.query(TrackingStatus).filter(TrackingStatus.code == code).first()
    if not st:
        raise NotFound("Tracking status not found", code=code)
    return st


def list_active_statuses(db: Session) -> list[TrackingStatus]:
    return (
        db.query(TrackingStatus)
        .filter(TrackingStatus.is_active == True)  # noqa: E712
        .order_by(TrackingStatus.sequence.asc())
        .all()
    )


def list_transitions_from(db: Session, status_id: str, permissions: Iterable[str] = ()) -> list[dict]:
    get_status(db, status_id)
    held = set(permissions)
    src = aliased(TrackingStatus)
    dst = aliased(TrackingStatus)
    rows = (
        db.query(TrackingTransition, src, dst)
        .join(src, TrackingTransition.from_status_id == src.id)
        .join(dst, TrackingTransition.to_status_id == dst.id)
        .filter(TrackingTransition.from_status_id == status_id)
        .order_by(dst.sequence.asc())
        .all()
    )
    return [
        {
            "id": t.id,
            "from_status_id": t.from_status_id,
            "from_status_name": s.name,
            "from_status_code": s.code,
            "to_status_id": t.to_status_id,
            "to_status_name": d.name,
            "to_status_code": d.code,
            "to_status_color": d.color,
            "description": t.description,
            "is_automated": bool(t.is_automated),
            "required_permission": t.required_permission,
            "allowed": t.required_permission is None or t.required_permission in held,
        }
        for t, s, d in rows
    ]


def entry_statuses(db: Session) -> list[TrackingStatus]:
    """Active statuses no edge leads into: where an untracked order may start."""
    targets = select(TrackingTransition.to_status_id)
    return (
        db.query(TrackingStatus)
        .filter(TrackingStatus.is_active == True)  # noqa: E712
        .filter(~TrackingStatus.id.in_(targets))
        .order_by(TrackingStatus.sequence.asc())
        .all()
    )


def validate_transition(
    db: Session,
    current_status_id: str | None,
    target_status_id: str,
    permissions: Iterable[str] = (),
    *,
    automated: bool = False,
) -> TrackingTransition | None:
    """Check that moving an order from its current status to the target is legal.

    Returns the edge used, or None when an untracked order enters the catalog.
    Raises Conflict for a move the graph does not allow, Forbidden when the
    caller lacks the edge's permission or invokes an automated edge by hand.
    """
    target = get_status(db, target_status_id)
    if not target.is_active:
        raise InvalidInput("Target status is not active", status_id=target.id, code=target.code)

    if current_status_id is None:
        entries = entry_statuses(db)
        if target.id not in {s.id for s in entries}:
            raise Conflict(
                f"Order is not tracked yet and cannot start at {target.code}",
                to_status=target.code,
                allowed=[s.code for s in entries],
            )
        return None

    edge = (
        db.query(TrackingTransition)
        .filter(
            TrackingTransition.from_status_id == current_status_id,
            TrackingTransition.to_status_id == target.id,
        )
        .first()
    )
    if not edge:
        current = get_status(db, current_status_id)
        raise Conflict(
            f"Transition {current.code} -> {target.code} is not allowed",
            from_status=current.code,
            to_status=target.code,
        )
    if edge.is_automated and not automated:
        raise Forbidden("Transition is applied automatically by the system", transition_id=edge.id)
    if edge.required_permission and not automated and edge.required_permission not in set(permissions):
        raise Forbidden(
            "Missing permission for transition",
            missing=[edge.required_permission],
            transition_id=edge.id,
        )
    return edge
