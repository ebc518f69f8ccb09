"""Subscribable plan catalog with AI governance shape and provider price mapping."""
from __future__ import annotations

import enum

from sqlalchemy import CheckConstraint, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from ..extensions import db
from .base import TimestampMixin


class AiPlan(str, enum.Enum):
    """Billing tier category granted to a tenant."""

    FREE = "FREE"
    PAID_BASIC = "PAID_BASIC"
    PAID_PRO = "PAID_PRO"
    ENTERPRISE = "ENTERPRISE"


class AiTier(str, enum.Enum):
    """AI model-access tier."""

    FREE = "FREE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SubscriptionPlan(TimestampMixin, db.Model):
    """Commercial plan definition; read-only from the entitlement core."""

    __tablename__ = "subscription_plans"
    __table_args__ = (
        UniqueConstraint("name", name="uq_subscription_plans_name"),
        UniqueConstraint("stripe_price_id", name="uq_subscription_plans_stripe_price"),
        CheckConstraint("ai_daily_limit >= 0", name="ck_plans_daily_limit_non_negative"),
        CheckConstraint("ai_monthly_limit >= 0", name="ck_plans_monthly_limit_non_negative"),
        CheckConstraint("price_amount >= 0", name="ck_plans_price_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    stripe_product_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    ai_plan: Mapped[AiPlan] = mapped_column(
        db.Enum(AiPlan, native_enum=False, validate_strings=True, name="plan_ai_plan"),
        nullable=False,
    )
    ai_tier: Mapped[AiTier] = mapped_column(
        db.Enum(AiTier, native_enum=False, validate_strings=True, name="plan_ai_tier"),
        nullable=False,
    )
    ai_daily_limit: Mapped[int] = mapped_column(db.Integer, nullable=False)
    ai_monthly_limit: Mapped[int] = mapped_column(db.Integer, nullable=False)
    # minor currency units
    price_amount: Mapped[int] = mapped_column(db.Integer, nullable=False)
    price_currency: Mapped[str] = mapped_column(db.String(8), nullable=False, server_default=text("'usd'"))
    price_interval: Mapped[str] = mapped_column(db.String(16), nullable=False, server_default=text("'month'"))
    display_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0, server_default=text("0"))
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, server_default=text("1"))

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SubscriptionPlan {self.name} {self.ai_plan.value}/{self.ai_tier.value}>"
