"""Entitlement applier: writes a plan's AI shape onto a tenant and resets usage."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import AiPlan, AiTier, SubscriptionPlan, Tenant
from . import audit_service
from .errors import EntitlementInvariantError

DOWNGRADE_REASON = "Subscription canceled or unpaid"


@dataclass(frozen=True)
class Entitlement:
    """Snapshot written onto a tenant row."""

    ai_plan: AiPlan
    ai_tier: AiTier
    ai_daily_limit: int
    ai_monthly_limit: int
    reset_at: datetime

    def __post_init__(self):
        if self.ai_daily_limit < 0 or self.ai_monthly_limit < 0:
            raise ValueError("AI limits must be non-negative")

    def as_values(self) -> dict:
        """Column values for the tenant update, counters zeroed."""
        return {
            "ai_plan": self.ai_plan,
            "ai_tier": self.ai_tier,
            "ai_daily_limit": self.ai_daily_limit,
            "ai_monthly_limit": self.ai_monthly_limit,
            "ai_daily_usage": 0,
            "ai_monthly_usage": 0,
            "ai_usage_reset_at": self.reset_at,
        }


def entitlement_for(plan: SubscriptionPlan, now: Optional[datetime] = None) -> Entitlement:
    """Pure mapping from a plan to the entitlement it grants."""
    return Entitlement(
        ai_plan=plan.ai_plan,
        ai_tier=plan.ai_tier,
        ai_daily_limit=plan.ai_daily_limit,
        ai_monthly_limit=plan.ai_monthly_limit,
        reset_at=now or datetime.utcnow(),
    )


def free_entitlement(now: Optional[datetime] = None) -> Entitlement:
    cfg = current_app.config
    return Entitlement(
        ai_plan=AiPlan.FREE,
        ai_tier=AiTier.FREE,
        ai_daily_limit=int(cfg.get("FREE_AI_DAILY_LIMIT", 50)),
        ai_monthly_limit=int(cfg.get("FREE_AI_MONTHLY_LIMIT", 1000)),
        reset_at=now or datetime.utcnow(),
    )


def _write(tenant_id: int, entitlement: Entitlement) -> None:
    # Single UPDATE statement: a reset always wins over in-flight usage increments.
    result = db.session.execute(
        update(Tenant).where(Tenant.id == tenant_id).values(**entitlement.as_values())
    )
    if result.rowcount != 1:
        raise EntitlementInvariantError(f"Tenant {tenant_id} disappeared while applying entitlement")


def apply_entitlement(tenant_id: int, plan: SubscriptionPlan) -> Entitlement:
    """Overwrite the tenant's AI plan, tier and limits from ``plan``.

    Idempotent: applying the same plan twice leaves the same limits with
    counters re-zeroed. Does not commit.
    """
    entitlement = entitlement_for(plan)
    _write(tenant_id, entitlement)
    current_app.logger.info(
        "AI entitlement applied to tenant %s: plan=%s tier=%s daily=%s monthly=%s",
        tenant_id,
        entitlement.ai_plan.value,
        entitlement.ai_tier.value,
        entitlement.ai_daily_limit,
        entitlement.ai_monthly_limit,
    )
    return entitlement


def downgrade_to_free(tenant_id: int, reason: str = DOWNGRADE_REASON, **metadata) -> Entitlement:
    """Force the tenant back to the FREE shape and audit the involuntary downgrade."""
    entitlement = free_entitlement()
    _write(tenant_id, entitlement)
    audit_service.record(
        tenant_id,
        audit_service.SUBSCRIPTION_DOWNGRADED_TO_FREE,
        {"reason": reason, **metadata},
    )
    current_app.logger.warning("Tenant %s downgraded to FREE plan: %s", tenant_id, reason)
    return entitlement
