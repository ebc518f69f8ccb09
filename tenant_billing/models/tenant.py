"""Tenant model owning the AI entitlement snapshot consumed by the dispatcher."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import uuid4

from sqlalchemy import CheckConstraint, Index, UniqueConstraint, event, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from .base import TimestampMixin
from .plan import AiPlan, AiTier

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .subscription import Subscription


class Tenant(TimestampMixin, db.Model):
    """A tenant with its current AI plan, tier, limits and usage counters.

    Only one entitlement snapshot exists per tenant; every (re)application
    overwrites it and zeroes the usage counters.
    """

    __tablename__ = "tenants"
    __table_args__ = (
        UniqueConstraint("public_id", name="uq_tenants_public_id"),
        Index("ix_tenants_ai_plan", "ai_plan"),
        CheckConstraint("ai_daily_limit >= 0", name="ck_tenants_daily_limit_non_negative"),
        CheckConstraint("ai_monthly_limit >= 0", name="ck_tenants_monthly_limit_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    public_id: Mapped[str] = mapped_column(
        db.String(36), nullable=False, default=lambda: str(uuid4())
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, server_default=text("1"))

    ai_plan: Mapped[AiPlan] = mapped_column(
        db.Enum(AiPlan, native_enum=False, validate_strings=True, name="tenant_ai_plan"),
        nullable=False,
        default=AiPlan.FREE,
        server_default=text("'FREE'"),
    )
    ai_tier: Mapped[AiTier] = mapped_column(
        db.Enum(AiTier, native_enum=False, validate_strings=True, name="tenant_ai_tier"),
        nullable=False,
        default=AiTier.FREE,
        server_default=text("'FREE'"),
    )
    ai_daily_limit: Mapped[int] = mapped_column(db.Integer, nullable=False, default=50, server_default=text("50"))
    ai_monthly_limit: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1000, server_default=text("1000"))
    ai_daily_usage: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0, server_default=text("0"))
    ai_monthly_usage: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0, server_default=text("0"))
    ai_usage_reset_at: Mapped[datetime | None] = mapped_column(db.DateTime, nullable=True)

    subscription: Mapped["Subscription | None"] = relationship(
        "Subscription", back_populates="tenant", uselist=False, passive_deletes=True
    )

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<Tenant {self.id} {self.ai_plan.value}/{self.ai_tier.value}>"


@event.listens_for(Tenant, "before_delete")
def _block_hard_delete(mapper, connection, target):  # pragma: no cover - safety hook
    """Disallow destructive tenant deletes; billing history hangs off the row."""
    raise ValueError("Tenants cannot be hard-deleted; deactivate instead.")
