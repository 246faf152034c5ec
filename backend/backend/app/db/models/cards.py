from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt, utcnow

__all__ = ["ProcessCard", "CardRouteStep", "CardProcessRecord"]


class ProcessCard(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Shop-floor card (refakat karti) that travels with a batch of fabric.

    created -> inProgress -> completed
    """

    __tablename__ = "process_card"

    card_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=True)
    production_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    route_template_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("route_template.id"), nullable=True)

    fabric_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="m", nullable=False)

    current_step: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="created", nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    route: Mapped[list["CardRouteStep"]] = relationship(
        "CardRouteStep",
        order_by="CardRouteStep.step_order",
        cascade="all, delete-orphan",
    )


class CardRouteStep(Base, HasId):
    """Routing snapshot resolved onto a card when it is created."""

    __tablename__ = "card_route_step"
    __table_args__ = (
        UniqueConstraint("card_id", "step_order", name="uq_card_route_step_order"),
    )

    card_id: Mapped[str] = mapped_column(String(36), ForeignKey("process_card.id"), index=True, nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    department_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("department.id"), nullable=True)
    process_type_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("process_type.id"), nullable=True)


class CardProcessRecord(Base, HasId, HasCreatedAt):
    __tablename__ = "card_process_record"
    __table_args__ = (
        # At most one running process per card.
        Index(
            "uq_card_process_active",
            "card_id",
            unique=True,
            postgresql_where=text("status = 'inProgress'"),
            sqlite_where=text("status = 'inProgress'"),
        ),
    )

    card_id: Mapped[str] = mapped_column(String(36), ForeignKey("process_card.id"), index=True, nullable=False)
    machine_id: Mapped[str] = mapped_column(String(36), ForeignKey("machine.id"), nullable=False)
    operator_id: Mapped[str] = mapped_column(String(36), ForeignKey("auth_user.id"), nullable=False)
    process_type_id: Mapped[str] = mapped_column(String(36), ForeignKey("process_type.id"), nullable=False)
    department_id: Mapped[str] = mapped_column(String(36), ForeignKey("department.id"), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(24), default="inProgress", nullable=False)
    quantity_processed: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    quantity_defect: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    card: Mapped[ProcessCard] = relationship("ProcessCard")
