"""Append-only audit trail for entitlement-changing operations."""
from __future__ import annotations

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from ..extensions import db
from .base import TenantMixin, TimestampMixin


class AuditLog(TenantMixin, TimestampMixin, db.Model):
    """Write-once record; system actions carry no actor."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_tenant_event", "tenant_id", "event_type"),
        Index("ix_audit_logs_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    event_type: Mapped[str] = mapped_column(db.String(64), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", db.JSON, nullable=False, default=dict)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<AuditLog {self.tenant_id} {self.event_type}>"
