from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt

__all__ = ["StageRecord", "WeavingOrder", "FinishingProcess", "ProcessTransfer", "DocumentSequence"]


class StageRecord(HasId, HasCreatedAt, HasUpdatedAt):
    """Columns shared by every production-stage table a transfer can point at.

    Rows materialized by a transfer keep a back-reference to the transfer and to
    the source stage row they were split from.
    """

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=True)
    department_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("department.id"), nullable=True)
    fabric_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="m", nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="planned", nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    properties: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    source_process_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    source_process_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WeavingOrder(Base, StageRecord):
    __tablename__ = "weaving_order"

    machine_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("machine.id"), nullable=True)
    pattern: Mapped[str | None] = mapped_column(String(128), nullable=True)


class FinishingProcess(Base, StageRecord):
    __tablename__ = "finishing_process"

    process_type_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("process_type.id"), nullable=True)
    quality_requirements: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class ProcessTransfer(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Quantity hand-off between two production stages.

    `target_process_id` stays null until the downstream row exists.
    """

    __tablename__ = "process_transfer"

    order_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=True)
    source_department_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("department.id"), nullable=True)
    source_process_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    source_process_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_department_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("department.id"), nullable=True)
    target_process_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    target_process_type: Mapped[str] = mapped_column(String(32), nullable=False)

    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="m", nullable=False)
    transfer_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="pending", nullable=False)  # pending|completed
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("auth_user.id"), nullable=True)


class DocumentSequence(Base):
    """Atomic counters behind generated business codes (TRB-20261019-001, KART-1000)."""

    __tablename__ = "document_sequence"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    next_value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
