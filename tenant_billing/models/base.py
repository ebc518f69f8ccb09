"""Shared model mixins for multi-tenant enforcement and auditing."""
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from ..extensions import db


class TimestampMixin:
    """Adds immutable creation and managed update timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        db.DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        db.DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class TenantMixin:
    """Enforces tenant ownership on every tenant-scoped record."""

    @declared_attr.directive
    def tenant_id(cls) -> Mapped[int]:  # noqa: D401 - SQLAlchemy pattern
        return mapped_column(
            db.Integer,
            db.ForeignKey("tenants.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        )

    @classmethod
    def scoped_to_tenant(cls, tenant_id: int):
        """Restrict queries to a specific tenant to avoid cross-tenant leaks."""
        return cls.query.filter_by(tenant_id=tenant_id)
