"""Webhook reconciler: turns verified billing events into ledger mutations.

Delivery is at-least-once and unordered. Each event id is recorded in
``processed_webhook_events`` inside the same transaction as its effects, so
a redelivery after commit is a no-op and a redelivery after a failed commit
simply runs again.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from ..extensions import db, unit_of_work
from ..models import (
    ProcessedWebhookEvent,
    SubscriptionPlan,
    SubscriptionStatus,
    Tenant,
)
from . import audit_service, email_service
from . import subscription_service as ledger
from .errors import SubscriptionNotFoundError


class EventType(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class Outcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class BillingEvent:
    """A verified provider event, already resolved to local ids."""

    event_id: str
    type: str
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    tenant_id: Optional[int] = None
    plan_id: Optional[int] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[datetime] = None
    invoice_id: Optional[str] = None


@dataclass
class ReconcileResult:
    event_id: str
    outcome: Outcome
    message: str

    def to_dict(self) -> dict:
        return {"event_id": self.event_id, "outcome": self.outcome.value, "message": self.message}


@dataclass
class _Notice:
    kind: str
    tenant_id: int
    plan_id: Optional[int]
    reason: Optional[str] = None


@dataclass
class _Handled:
    outcome: Outcome
    message: str
    notices: List[_Notice] = field(default_factory=list)


def is_processed(event_id: str) -> bool:
    return db.session.get(ProcessedWebhookEvent, event_id) is not None


def _apply_deadline() -> None:
    """Bound how long one delivery may hold row locks.

    Only PostgreSQL honours a per-transaction statement timeout; on SQLite
    this is a no-op and the busy timeout set at connect time applies.
    """
    seconds = int(current_app.config.get("WEBHOOK_DEADLINE_SECONDS", 10) or 0)
    if seconds > 0 and db.session.get_bind().dialect.name == "postgresql":
        db.session.execute(text(f"SET LOCAL statement_timeout = {seconds * 1000}"))


def _changes_from(event: BillingEvent) -> ledger.SubscriptionChanges:
    changes = ledger.SubscriptionChanges(
        status=event.status,
        plan_id=event.plan_id,
        current_period_start=event.current_period_start,
        current_period_end=event.current_period_end,
        cancel_at_period_end=event.cancel_at_period_end,
    )
    if event.type != EventType.CHECKOUT_COMPLETED.value:
        changes.canceled_at = event.canceled_at
    return changes


def _retired(event: BillingEvent) -> _Handled:
    current_app.logger.warning(
        "Event %s targets replaced subscription %s; ignoring", event.event_id, event.external_subscription_id
    )
    return _Handled(Outcome.IGNORED, f"Subscription {event.external_subscription_id} was replaced")


def _handle_created(event: BillingEvent) -> _Handled:
    if not event.external_subscription_id:
        current_app.logger.error("Event %s carries no subscription id", event.event_id)
        return _Handled(Outcome.IGNORED, "Missing subscription id")
    if ledger.is_retired(event.external_subscription_id):
        return _retired(event)

    if ledger.get_by_external_id(event.external_subscription_id) is not None:
        subscription = ledger.update_from_payment(
            event.external_subscription_id, _changes_from(event), commit=False
        )
        return _Handled(Outcome.PROCESSED, f"Subscription {subscription.external_subscription_id} refreshed")

    if event.tenant_id is None or event.plan_id is None:
        current_app.logger.error(
            "Event %s lacks tenant or plan metadata for %s", event.event_id, event.external_subscription_id
        )
        return _Handled(Outcome.IGNORED, "Missing tenant or plan metadata")

    descriptor = ledger.ProviderManaged(
        external_subscription_id=event.external_subscription_id,
        external_customer_id=event.external_customer_id,
        status=event.status or SubscriptionStatus.ACTIVE,
        current_period_start=event.current_period_start or datetime.utcnow(),
        current_period_end=event.current_period_end,
        cancel_at_period_end=bool(event.cancel_at_period_end),
    )
    subscription = ledger.create_from_payment(event.tenant_id, event.plan_id, descriptor, commit=False)
    notices = []
    if subscription.status.is_entitled:
        notices.append(_Notice("success", subscription.tenant_id, subscription.plan_id))
    return _Handled(Outcome.PROCESSED, f"Subscription {subscription.external_subscription_id} created", notices)


def _handle_updated(event: BillingEvent) -> _Handled:
    if not event.external_subscription_id:
        return _Handled(Outcome.IGNORED, "Missing subscription id")
    if ledger.is_retired(event.external_subscription_id):
        return _retired(event)

    existing = ledger.get_by_external_id(event.external_subscription_id)
    was_entitled = existing is not None and existing.status.is_entitled
    subscription = ledger.update_from_payment(event.external_subscription_id, _changes_from(event), commit=False)
    notices = []
    if subscription.status.is_entitled and not was_entitled:
        notices.append(_Notice("success", subscription.tenant_id, subscription.plan_id))
    return _Handled(Outcome.PROCESSED, f"Subscription {subscription.external_subscription_id} updated", notices)


def _handle_deleted(event: BillingEvent) -> _Handled:
    if not event.external_subscription_id:
        return _Handled(Outcome.IGNORED, "Missing subscription id")
    subscription = ledger.delete_from_payment(event.external_subscription_id, commit=False)
    if subscription is None:
        return _Handled(Outcome.PROCESSED, "Subscription already gone")
    return _Handled(Outcome.PROCESSED, f"Subscription {event.external_subscription_id} deleted")


def _handle_payment_failed(event: BillingEvent) -> _Handled:
    existing = ledger.get_by_external_id(event.external_subscription_id) if event.external_subscription_id else None
    if existing is None:
        return _Handled(Outcome.IGNORED, "Invoice is not linked to a known subscription")

    subscription = existing
    # only a paid-up subscription can fall past due
    if existing.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        subscription = ledger.update_from_payment(
            event.external_subscription_id,
            ledger.SubscriptionChanges(status=SubscriptionStatus.PAST_DUE),
            commit=False,
        )
    audit_service.record(
        subscription.tenant_id,
        audit_service.PAYMENT_FAILED,
        {
            "invoice_id": event.invoice_id,
            "external_subscription_id": event.external_subscription_id,
            "status": subscription.status.value,
        },
    )
    current_app.logger.warning(
        "Payment failed for subscription %s (tenant %s, invoice %s)",
        event.external_subscription_id,
        subscription.tenant_id,
        event.invoice_id,
    )
    notice = _Notice("failed", subscription.tenant_id, subscription.plan_id, "Card payment failed")
    return _Handled(Outcome.PROCESSED, f"Payment failure recorded; subscription is {subscription.status.value}", [notice])


def _handle_payment_succeeded(event: BillingEvent) -> _Handled:
    existing = ledger.get_by_external_id(event.external_subscription_id) if event.external_subscription_id else None
    if existing is None:
        return _Handled(Outcome.IGNORED, "Invoice is not linked to a known subscription")
    if existing.status not in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.INCOMPLETE):
        return _Handled(Outcome.PROCESSED, "Subscription already in good standing")

    first_payment = existing.status == SubscriptionStatus.INCOMPLETE
    subscription = ledger.update_from_payment(
        event.external_subscription_id,
        ledger.SubscriptionChanges(status=SubscriptionStatus.ACTIVE),
        commit=False,
    )
    if first_payment:
        current_app.logger.info("Subscription %s activated by its first payment", event.external_subscription_id)
        notice = _Notice("success", subscription.tenant_id, subscription.plan_id)
        return _Handled(Outcome.PROCESSED, "Subscription activated", [notice])
    current_app.logger.info("Subscription %s reactivated after payment", event.external_subscription_id)
    return _Handled(Outcome.PROCESSED, "Subscription reactivated")


_HANDLERS: Dict[str, Callable[[BillingEvent], _Handled]] = {
    EventType.CHECKOUT_COMPLETED.value: _handle_created,
    EventType.SUBSCRIPTION_CREATED.value: _handle_created,
    EventType.SUBSCRIPTION_UPDATED.value: _handle_updated,
    EventType.SUBSCRIPTION_DELETED.value: _handle_deleted,
    EventType.PAYMENT_FAILED.value: _handle_payment_failed,
    EventType.PAYMENT_SUCCEEDED.value: _handle_payment_succeeded,
}


def _send_notices(notices: List[_Notice]) -> None:
    for notice in notices:
        tenant = db.session.get(Tenant, notice.tenant_id)
        plan = db.session.get(SubscriptionPlan, notice.plan_id) if notice.plan_id else None
        if tenant is None:
            continue
        if notice.kind == "success" and plan is not None:
            email_service.notify_payment_success(tenant, plan)
        elif notice.kind == "failed":
            email_service.notify_payment_failed(tenant, plan, notice.reason)


def reconcile(event: BillingEvent) -> ReconcileResult:
    """Apply one provider event exactly once.

    Returns ``DEFERRED`` (nothing written, event not marked) when the event
    refers to a subscription this ledger has not seen yet; the provider's
    redelivery resolves it once the creation event lands.
    """
    if is_processed(event.event_id):
        current_app.logger.info("Webhook event %s already processed, skipping", event.event_id)
        return ReconcileResult(event.event_id, Outcome.DUPLICATE, "Event already processed")

    handler = _HANDLERS.get(event.type)
    current_app.logger.info("Processing webhook event %s (%s)", event.event_id, event.type)
    try:
        with unit_of_work():
            _apply_deadline()
            if handler is None:
                handled = _Handled(Outcome.IGNORED, f"Unhandled event type {event.type}")
            else:
                handled = handler(event)
            db.session.add(ProcessedWebhookEvent(id=event.event_id, event_type=event.type))
    except SubscriptionNotFoundError as exc:
        current_app.logger.warning("Deferring webhook event %s: %s", event.event_id, exc.message)
        return ReconcileResult(event.event_id, Outcome.DEFERRED, exc.message)
    except IntegrityError:
        if is_processed(event.event_id):
            current_app.logger.info("Webhook event %s processed concurrently", event.event_id)
            return ReconcileResult(event.event_id, Outcome.DUPLICATE, "Event already processed")
        raise

    _send_notices(handled.notices)
    return ReconcileResult(event.event_id, handled.outcome, handled.message)


_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    # paused subscriptions keep AI access
    "paused": SubscriptionStatus.ACTIVE,
}


def map_provider_status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    if value is None:
        return None
    return _STATUS_MAP.get(str(value).lower(), SubscriptionStatus.INCOMPLETE)

