from __future__ import annotations

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

__all__ = ["Department", "Machine", "ProcessType", "RouteTemplate", "RouteTemplateStep"]


class Department(Base, HasId, HasCreatedAt):
    """Production or office department (WEAVING, FINISHING, QUALITY, PLANNING, ...).

    Maintained elsewhere; the routing engine only reads it.
    """

    __tablename__ = "department"

    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Machine(Base, HasId, HasCreatedAt):
    __tablename__ = "machine"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    department_id: Mapped[str] = mapped_column(String(36), ForeignKey("department.id"), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="active", nullable=False)  # active|maintenance|inactive

    department: Mapped[Department] = relationship("Department")


class ProcessType(Base, HasId, HasCreatedAt):
    __tablename__ = "process_type"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    department_id: Mapped[str] = mapped_column(String(36), ForeignKey("department.id"), index=True, nullable=False)
    # Position of this process in the shop-floor card sequence.
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    department: Mapped[Department] = relationship("Department")


class RouteTemplate(Base, HasId, HasCreatedAt):
    """Per-product ordered routing a process card follows."""

    __tablename__ = "route_template"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    fabric_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    steps: Mapped[list["RouteTemplateStep"]] = relationship(
        "RouteTemplateStep",
        back_populates="template",
        order_by="RouteTemplateStep.step_order",
        cascade="all, delete-orphan",
    )


class RouteTemplateStep(Base, HasId, HasCreatedAt):
    __tablename__ = "route_template_step"
    __table_args__ = (
        UniqueConstraint("route_template_id", "step_order", name="uq_route_template_step_order"),
    )

    route_template_id: Mapped[str] = mapped_column(String(36), ForeignKey("route_template.id"), index=True, nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    department_id: Mapped[str] = mapped_column(String(36), ForeignKey("department.id"), nullable=False)
    process_type_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("process_type.id"), nullable=True)
    estimated_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    requires_quality_check: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    template: Mapped[RouteTemplate] = relationship("RouteTemplate", back_populates="steps")
