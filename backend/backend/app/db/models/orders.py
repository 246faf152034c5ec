from __future__ import annotations

from datetime import date

from sqlalchemy import Boolean, Date, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt

__all__ = ["Order", "MaterialRequirement", "ShipmentRecord"]


class Order(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Customer manufacturing order.

    Status is not stored here: the order's current status is the latest
    tracking event in the ledger.
    """

    __tablename__ = "prod_order"

    tenant_id: Mapped[str] = mapped_column(String(64), default="default", index=True, nullable=False)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    fabric_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="m", nullable=False)
    order_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class MaterialRequirement(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "order_material_requirement"

    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=False)
    material_type: Mapped[str] = mapped_column(String(32), nullable=False)  # yarn|chemical|dye|other
    material_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="kg", nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    estimated_arrival_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class ShipmentRecord(Base, HasId, HasCreatedAt):
    """Quantity of an order handed to one shipment.

    shipment_id refers to the shipping system's document; tracking events
    carry the same reference.
    """

    __tablename__ = "order_shipment"

    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("prod_order.id"), index=True, nullable=False)
    shipment_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)
    package_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pallet_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gross_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    net_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    volume_m3: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
