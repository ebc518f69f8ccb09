"""Offline payments awaiting an operator decision."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from .base import TenantMixin, TimestampMixin
from .plan import SubscriptionPlan

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .tenant import Tenant


class ManualPaymentMethod(str, enum.Enum):
    """Offline channels accepted for manual review."""

    EASYPAISA = "EASYPAISA"
    JAZZCASH = "JAZZCASH"
    BANK_TRANSFER = "BANK_TRANSFER"


class ManualPaymentStatus(str, enum.Enum):
    """PENDING moves to exactly one terminal state."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ManualPayment(TenantMixin, TimestampMixin, db.Model):
    """A submitted proof of offline payment and its review outcome."""

    __tablename__ = "manual_payments"
    __table_args__ = (
        Index("ix_manual_payments_status", "status", "created_at"),
        Index("ix_manual_payments_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        db.Integer,
        db.ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    method: Mapped[ManualPaymentMethod] = mapped_column(
        db.Enum(ManualPaymentMethod, native_enum=False, validate_strings=True, name="manual_payment_method"),
        nullable=False,
    )
    sender_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    sender_number: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    reference: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    screenshot_url: Mapped[str] = mapped_column(db.String(512), nullable=False)
    coupon_code: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    original_price: Mapped[int] = mapped_column(db.Integer, nullable=False)
    final_price: Mapped[int] = mapped_column(db.Integer, nullable=False)
    status: Mapped[ManualPaymentStatus] = mapped_column(
        db.Enum(ManualPaymentStatus, native_enum=False, validate_strings=True, name="manual_payment_status"),
        nullable=False,
        default=ManualPaymentStatus.PENDING,
        server_default=text("'PENDING'"),
    )
    reviewed_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    reviewer_note: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(db.DateTime, nullable=True)

    tenant: Mapped["Tenant"] = relationship("Tenant")
    plan: Mapped[SubscriptionPlan] = relationship("SubscriptionPlan", lazy="joined")

    @property
    def is_pending(self) -> bool:
        return self.status == ManualPaymentStatus.PENDING

    def to_dict(self) -> dict:
        """Projection returned to operators and submitters."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plan": {"id": self.plan_id, "name": self.plan.name if self.plan else None},
            "method": self.method.value,
            "sender_name": self.sender_name,
            "sender_number": self.sender_number,
            "reference": self.reference,
            "screenshot_url": self.screenshot_url,
            "coupon_code": self.coupon_code,
            "original_price": self.original_price,
            "final_price": self.final_price,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewer_note": self.reviewer_note,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ManualPayment {self.id} {self.method.value} {self.status.value} {self.final_price}>"
