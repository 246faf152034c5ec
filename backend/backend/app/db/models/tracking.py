from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt, utcnow

__all__ = ["TrackingStatus", "TrackingTransition", "TrackingEvent", "ProductionStep", "DelayRecord"]


class TrackingStatus(Base, HasId, HasCreatedAt):
    """A named stage in an order's lifecycle.

    `sequence` is display order only; legality comes from TrackingTransition.
    """

    __tablename__ = "tracking_status"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    color: Mapped[str] = mapped_column(String(16), default="#3b82f6", nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class TrackingTransition(Base, HasId, HasCreatedAt):
    __tablename__ = "tracking_transition"
    __table_args__ = (
        UniqueConstraint("from_status_id", "to_status_id", name="uq_tracking_transition_edge"),
    )

    from_status_id: Mapped[str] = mapped_column(String(36), ForeignKey("tracking_status.id"), index=True, nullable=False)
    to_status_id: Mapped[str] = mapped_column(String(36), ForeignKey("tracking_status.id"), index=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # Automated edges are applied by the system, never by a user request.
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    required_permission: Mapped[str | None] = mapped_column(String(128), nullable=True)

    from_status: Mapped[TrackingStatus] = relationship("TrackingStatus", foreign_keys=[from_status_id])
    to_status: Mapped[TrackingStatus] = relationship("TrackingStatus", foreign_keys=[to_status_id])


class TrackingEvent(Base):
    """Append-only ledger of order status changes.

    The integer key gives a total insertion order, used to break timestamp ties.
    Rows are never updated or deleted.
    """

    __tablename__ = "tracking_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("prod_order.id"), nullable=False)
    status_id: Mapped[str] = mapped_column(String(36), ForeignKey("tracking_status.id"), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("auth_user.id"), nullable=True)
    production_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shipment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    status: Mapped[TrackingStatus] = relationship("TrackingStatus")


Index("ix_tracking_event_order_time", TrackingEvent.order_id, TrackingEvent.timestamp, TrackingEvent.id)


class ProductionStep(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Department-scoped working state of an order's production plan."""

    __tablename__ = "production_step"
    __table_args__ = (
        UniqueConstraint("order_id", "department_id", "step", name="uq_production_step_order_dept_step"),
    )

    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=False)
    production_plan_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    step: Mapped[str] = mapped_column(String(128), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    department_id: Mapped[str] = mapped_column(String(36), ForeignKey("department.id"), nullable=False)

    planned_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    planned_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[str] = mapped_column(String(24), default="pending", nullable=False)
    completion_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class DelayRecord(Base, HasId, HasCreatedAt):
    """Reported delay or cancellation; inert until approved exactly once."""

    __tablename__ = "delay_record"

    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=False)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    delay_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    reported_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("auth_user.id"), nullable=True)
    reported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("auth_user.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
