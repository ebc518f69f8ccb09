"""Service liveness and plan listing."""
from __future__ import annotations

from flask import Blueprint
from sqlalchemy import text

from ..extensions import db
from ..services.plan_catalog import list_active_plans

main_bp = Blueprint("main", __name__)


@main_bp.route("/health")
def health_check():
    db.session.execute(text("SELECT 1"))
    return {"status": "ok"}


@main_bp.route("/plans")
def plans():
    return {
        "plans": [
            {
                "id": plan.id,
                "name": plan.name,
                "ai_plan": plan.ai_plan.value,
                "ai_tier": plan.ai_tier.value,
                "ai_daily_limit": plan.ai_daily_limit,
                "ai_monthly_limit": plan.ai_monthly_limit,
                "price_amount": plan.price_amount,
                "price_currency": plan.price_currency,
                "price_interval": plan.price_interval,
            }
            for plan in list_active_plans()
        ]
    }
