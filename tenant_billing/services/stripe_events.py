"""Translate verified Stripe event payloads into ``BillingEvent`` values."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import current_app

from . import plan_catalog
from .errors import PlanNotFoundError
from .webhook_service import BillingEvent, EventType, map_provider_status


def _ts(value: Any) -> Optional[datetime]:
    """Unix seconds to naive UTC, matching the naive UTC columns."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _resolve_plan_id(obj: Dict[str, Any]) -> Optional[int]:
    meta = _metadata(obj)
    plan_id = _as_int(meta.get("planId") or meta.get("plan_id"))
    if plan_id is not None:
        return plan_id

    price_id = (_first_item(obj).get("price") or {}).get("id")
    if not price_id:
        return None
    try:
        return plan_catalog.get_plan_by_price_id(price_id).id
    except PlanNotFoundError:
        current_app.logger.warning("Stripe price %s is not mapped to a plan; keeping current plan", price_id)
        return None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _from_subscription(event_id: str, event_type: str, sub: Dict[str, Any]) -> BillingEvent:
    meta = _metadata(sub)
    item = _first_item(sub)
    # newer API versions report the period on the subscription item
    period_start = sub.get("current_period_start") or item.get("current_period_start")
    period_end = sub.get("current_period_end") or item.get("current_period_end")
    return BillingEvent(
        event_id=event_id,
        type=event_type,
        external_subscription_id=sub.get("id"),
        external_customer_id=sub.get("customer"),
        tenant_id=_as_int(meta.get("tenantId") or meta.get("tenant_id")),
        plan_id=_resolve_plan_id(sub),
        status=map_provider_status(sub.get("status")),
        current_period_start=_ts(period_start),
        current_period_end=_ts(period_end),
        cancel_at_period_end=sub.get("cancel_at_period_end"),
        canceled_at=_ts(sub.get("canceled_at")),
    )


def to_billing_event(payload: Dict[str, Any]) -> BillingEvent:
    """Map a Stripe event (already signature-verified) to the core's event shape."""
    event_id = payload["id"]
    event_type = payload.get("type", "")
    obj = (payload.get("data") or {}).get("object") or {}

    if event_type == EventType.CHECKOUT_COMPLETED.value:
        meta = _metadata(obj)
        return BillingEvent(
            event_id=event_id,
            type=event_type,
            external_subscription_id=obj.get("subscription"),
            external_customer_id=obj.get("customer"),
            tenant_id=_as_int(meta.get("tenantId") or meta.get("tenant_id")),
            plan_id=_resolve_plan_id(obj),
            current_period_start=_ts(obj.get("created")),
        )

    if event_type in (
        EventType.SUBSCRIPTION_CREATED.value,
        EventType.SUBSCRIPTION_UPDATED.value,
        EventType.SUBSCRIPTION_DELETED.value,
    ):
        return _from_subscription(event_id, event_type, obj)

    if event_type in (EventType.PAYMENT_FAILED.value, EventType.PAYMENT_SUCCEEDED.value):
        return BillingEvent(
            event_id=event_id,
            type=event_type,
            external_subscription_id=_invoice_subscription_id(obj),
            external_customer_id=obj.get("customer"),
            invoice_id=obj.get("id"),
        )

    return BillingEvent(event_id=event_id, type=event_type)
