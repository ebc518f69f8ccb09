"""Authoritative per-tenant subscription ledger rows."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from .base import TimestampMixin
from .plan import SubscriptionPlan

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .tenant import Tenant


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle states reported by the billing provider."""

    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"

    @property
    def is_entitled(self) -> bool:
        """Statuses backed by a payment; only these carry the plan's AI limits."""
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)

    @property
    def is_lapsed(self) -> bool:
        """Terminal statuses that force the tenant back to FREE."""
        return self in (
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.INCOMPLETE_EXPIRED,
        )


class PaymentProvider(str, enum.Enum):
    """Who manages the subscription object."""

    STRIPE = "stripe"
    MANUAL = "manual"


class Subscription(TimestampMixin, db.Model):
    """One row per tenant; (provider, external subscription id) is the idempotency key."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_subscriptions_tenant"),
        UniqueConstraint("provider", "external_subscription_id", name="uq_subscriptions_external"),
        Index("ix_subscriptions_status", "status"),
        Index("ix_subscriptions_period_end", "provider", "current_period_end"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    plan_id: Mapped[int] = mapped_column(
        db.Integer,
        db.ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    provider: Mapped[PaymentProvider] = mapped_column(
        db.Enum(PaymentProvider, native_enum=False, validate_strings=True, name="subscription_provider"),
        nullable=False,
        default=PaymentProvider.STRIPE,
        server_default=text("'STRIPE'"),
    )
    external_customer_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    external_subscription_id: Mapped[str] = mapped_column(db.String(128), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        db.Enum(SubscriptionStatus, native_enum=False, validate_strings=True, name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        server_default=text("'ACTIVE'"),
    )
    current_period_start: Mapped[datetime] = mapped_column(db.DateTime, nullable=False, default=datetime.utcnow)
    current_period_end: Mapped[datetime | None] = mapped_column(db.DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        db.Boolean, nullable=False, default=False, server_default=text("0")
    )
    canceled_at: Mapped[datetime | None] = mapped_column(db.DateTime, nullable=True)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="subscription")
    plan: Mapped[SubscriptionPlan] = relationship("SubscriptionPlan", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "provider": self.provider.value,
            "status": self.status.value,
            "external_subscription_id": self.external_subscription_id,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Subscription tenant={self.tenant_id} {self.provider.value}:{self.external_subscription_id} {self.status.value}>"


class RetiredSubscription(TimestampMixin, db.Model):
    """A subscription row displaced by a newer one for the same tenant.

    Late provider events for a retired id are acknowledged and ignored
    instead of waiting for a record that will never come back.
    """

    __tablename__ = "retired_subscriptions"

    provider: Mapped[PaymentProvider] = mapped_column(
        db.Enum(PaymentProvider, native_enum=False, validate_strings=True, name="retired_subscription_provider"),
        primary_key=True,
    )
    external_subscription_id: Mapped[str] = mapped_column(db.String(128), primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    last_status: Mapped[SubscriptionStatus] = mapped_column(
        db.Enum(SubscriptionStatus, native_enum=False, validate_strings=True, name="retired_subscription_status"),
        nullable=False,
    )
    replaced_by: Mapped[str] = mapped_column(db.String(128), nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<RetiredSubscription {self.provider.value}:{self.external_subscription_id} -> {self.replaced_by}>"
