from __future__ import annotations
from sqlalchemy import String, JSON, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

__all__ = ["AuditLog"]


class AuditLog(Base, HasId, HasCreatedAt):
    """Governance trail for approvals and other privileged decisions."""

    __tablename__ = "sys_audit_log"
    tenant_id: Mapped[str] = mapped_column(String(64), default="default", index=True, nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)  # e.g. delay.approve
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


Index("ix_audit_tenant_time", AuditLog.tenant_id, AuditLog.created_at)
