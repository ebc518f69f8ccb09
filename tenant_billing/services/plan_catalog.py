"""Read-only plan lookups; a missing plan is never replaced by a default."""
from __future__ import annotations

from typing import List

from ..extensions import db
from ..models import SubscriptionPlan
from .errors import PlanNotFoundError


def get_plan(plan_id: int) -> SubscriptionPlan:
    plan = db.session.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise PlanNotFoundError(f"Subscription plan {plan_id} not found")
    return plan


def get_plan_by_price_id(stripe_price_id: str) -> SubscriptionPlan:
    """Resolve the plan a provider price belongs to."""
    plan = SubscriptionPlan.query.filter_by(stripe_price_id=stripe_price_id).first()
    if plan is None:
        raise PlanNotFoundError(f"No plan mapped to price {stripe_price_id}")
    return plan


def list_active_plans() -> List[SubscriptionPlan]:
    return (
        SubscriptionPlan.query.filter_by(is_active=True)
        .order_by(SubscriptionPlan.display_order.asc(), SubscriptionPlan.id.asc())
        .all()
    )
