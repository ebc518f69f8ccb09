"""Subscription ledger: the authoritative per-tenant subscription record.

Every mutation locks the owning tenant row first (and then the subscription
row) so the ledger write and the entitlement write form one atomic unit per
tenant. Unrelated tenants never contend.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, unit_of_work
from ..models import (
    PaymentProvider,
    RetiredSubscription,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    Tenant,
)
from . import audit_service, plan_catalog
from .entitlements import apply_entitlement, downgrade_to_free
from .errors import SubscriptionNotFoundError, TenantNotFoundError


class _Unset(enum.Enum):
    """Marks a change field the provider did not report."""

    TOKEN = 0


_UNSET = _Unset.TOKEN


@dataclass(frozen=True)
class ProviderManaged:
    """Subscription object owned by the billing provider."""

    external_subscription_id: str
    external_customer_id: Optional[str]
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    provider: PaymentProvider = PaymentProvider.STRIPE

    def subscription_fields(self, now: datetime) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "external_subscription_id": self.external_subscription_id,
            "external_customer_id": self.external_customer_id,
            "status": self.status,
            "current_period_start": self.current_period_start or now,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
        }


@dataclass(frozen=True)
class ManuallyManaged:
    """Synthetic subscription backing an approved offline payment."""

    payment_id: int
    period_days: int = 30

    def subscription_fields(self, now: datetime) -> Dict[str, Any]:
        return {
            "provider": PaymentProvider.MANUAL,
            "external_subscription_id": f"manual_{self.payment_id}",
            "external_customer_id": None,
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": now,
            "current_period_end": now + timedelta(days=self.period_days),
            "cancel_at_period_end": False,
        }


SubscriptionDescriptor = Union[ProviderManaged, ManuallyManaged]


@dataclass
class SubscriptionChanges:
    """Fields reported by the provider; ``None`` leaves a field untouched.

    ``canceled_at`` is the exception: an explicit ``None`` clears it.
    """

    status: Optional[SubscriptionStatus] = None
    plan_id: Optional[int] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Union[datetime, None, _Unset] = _UNSET

    def as_dict(self) -> Dict[str, Any]:
        values = {
            "status": self.status,
            "plan_id": self.plan_id,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
        }
        changes = {key: value for key, value in values.items() if value is not None}
        if self.canceled_at is not _UNSET:
            changes["canceled_at"] = self.canceled_at
        return changes


def get_by_tenant(tenant_id: int) -> Optional[Subscription]:
    return Subscription.query.filter_by(tenant_id=tenant_id).first()


def get_by_external_id(
    external_subscription_id: str, provider: PaymentProvider = PaymentProvider.STRIPE
) -> Optional[Subscription]:
    return Subscription.query.filter_by(
        provider=provider, external_subscription_id=external_subscription_id
    ).first()


def _lock_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.execute(
        select(Tenant).where(Tenant.id == tenant_id).with_for_update()
    ).scalar_one_or_none()
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


def _lock_subscription(
    external_subscription_id: str, provider: PaymentProvider
) -> Optional[Subscription]:
    """Lock tenant then subscription, in that order, for the given external id."""
    found = get_by_external_id(external_subscription_id, provider)
    if found is None:
        return None
    _lock_tenant(found.tenant_id)
    return db.session.execute(
        select(Subscription)
        .where(
            Subscription.provider == provider,
            Subscription.external_subscription_id == external_subscription_id,
        )
        .with_for_update(of=Subscription)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def is_retired(
    external_subscription_id: str, provider: PaymentProvider = PaymentProvider.STRIPE
) -> bool:
    """True when the id belonged to a subscription since replaced by a newer one."""
    return db.session.get(RetiredSubscription, (provider, external_subscription_id)) is not None


def _retire(existing: Subscription, provider: PaymentProvider, replaced_by: str, actor_id: Optional[str]) -> None:
    """Drop the tenant's previous row, keeping its id so late events can be ignored."""
    current_app.logger.warning(
        "Replacing %s subscription %s (status %s) for tenant %s with %s; "
        "the provider may still bill the old subscription",
        existing.provider.value,
        existing.external_subscription_id,
        existing.status.value,
        existing.tenant_id,
        replaced_by,
    )
    if (existing.provider, existing.external_subscription_id) != (provider, replaced_by):
        db.session.merge(
            RetiredSubscription(
                provider=existing.provider,
                external_subscription_id=existing.external_subscription_id,
                tenant_id=existing.tenant_id,
                last_status=existing.status,
                replaced_by=replaced_by,
            )
        )
    audit_service.record(
        existing.tenant_id,
        audit_service.SUBSCRIPTION_REPLACED,
        {
            "provider": existing.provider.value,
            "external_subscription_id": existing.external_subscription_id,
            "status": existing.status.value,
            "plan_id": existing.plan_id,
            "replaced_by": replaced_by,
        },
        actor_id=actor_id,
    )
    db.session.delete(existing)
    db.session.flush()


def grant_entitlement(
    tenant_id: int,
    plan_id: int,
    descriptor: SubscriptionDescriptor,
    *,
    actor_id: Optional[str] = None,
    commit: bool = True,
) -> Subscription:
    """Insert the tenant's subscription row and, if it is paid for, apply the plan.

    Shared by webhook creation and manual approval. A row that is not yet
    entitled (INCOMPLETE) is recorded without granting anything; the plan is
    applied once an update moves it into an entitled status. Not idempotent
    on its own: callers guard it with the event id or the payment's PENDING
    status.
    """
    with unit_of_work(commit):
        plan = plan_catalog.get_plan(plan_id)
        _lock_tenant(tenant_id)
        fields = descriptor.subscription_fields(datetime.utcnow())

        previously_entitled = False
        existing = db.session.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id).with_for_update(of=Subscription)
        ).scalar_one_or_none()
        if existing is not None:
            previously_entitled = existing.status.is_entitled
            _retire(existing, fields["provider"], fields["external_subscription_id"], actor_id)

        subscription = Subscription(tenant_id=tenant_id, plan=plan, **fields)
        db.session.add(subscription)
        db.session.flush()

        status = subscription.status
        if status.is_entitled:
            apply_entitlement(tenant_id, plan)
        elif status.is_lapsed or previously_entitled:
            downgrade_to_free(
                tenant_id,
                reason=f"Subscription created with status {status.value}",
                external_subscription_id=subscription.external_subscription_id,
            )
        else:
            current_app.logger.info(
                "Subscription %s recorded as %s; entitlement waits for payment",
                subscription.external_subscription_id,
                status.value,
            )
        audit_service.record(
            tenant_id,
            audit_service.SUBSCRIPTION_CREATED,
            {
                "plan_id": plan.id,
                "plan_name": plan.name,
                "provider": subscription.provider.value,
                "external_subscription_id": subscription.external_subscription_id,
                "status": status.value,
                "entitled": status.is_entitled,
            },
            actor_id=actor_id,
        )

    current_app.logger.info(
        "Subscription %s created for tenant %s on plan %s",
        subscription.external_subscription_id,
        tenant_id,
        plan.name,
    )
    return subscription


def create_from_payment(
    tenant_id: int, plan_id: int, descriptor: ProviderManaged, *, commit: bool = True
) -> Subscription:
    """Create the provider-managed subscription; the plan applies once it is paid for."""
    return grant_entitlement(tenant_id, plan_id, descriptor, commit=commit)


def update_from_payment(
    external_subscription_id: str,
    changes: SubscriptionChanges,
    *,
    provider: PaymentProvider = PaymentProvider.STRIPE,
    actor_id: Optional[str] = None,
    commit: bool = True,
) -> Subscription:
    """Apply provider-reported changes to an existing subscription.

    Raises ``SubscriptionNotFoundError`` without touching anything when the
    record does not exist yet (an update delivered before its creation).

    The plan is (re)applied on a plan change while entitled and on any move
    into ACTIVE, TRIALING or PAST_DUE. Leaving an entitled status, or
    entering CANCELED, UNPAID or INCOMPLETE_EXPIRED, downgrades to FREE once.
    """
    with unit_of_work(commit):
        subscription = _lock_subscription(external_subscription_id, provider)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {external_subscription_id} not found; retry after creation"
            )

        previous_status = subscription.status
        new_plan: Optional[SubscriptionPlan] = None
        if changes.plan_id is not None and changes.plan_id != subscription.plan_id:
            new_plan = plan_catalog.get_plan(changes.plan_id)

        applied = changes.as_dict()
        for field, value in applied.items():
            if field == "plan_id":
                continue
            setattr(subscription, field, value)
        if new_plan is not None:
            subscription.plan = new_plan
        db.session.flush()

        tenant_id = subscription.tenant_id
        status = subscription.status
        if status.is_entitled:
            if new_plan is not None or not previous_status.is_entitled:
                apply_entitlement(tenant_id, subscription.plan)
        elif previous_status.is_entitled or (status.is_lapsed and not previous_status.is_lapsed):
            downgrade_to_free(
                tenant_id,
                external_subscription_id=external_subscription_id,
                status=status.value,
            )

        audit_service.record(
            tenant_id,
            audit_service.SUBSCRIPTION_UPDATED,
            {
                "external_subscription_id": external_subscription_id,
                "previous_status": previous_status.value,
                "status": subscription.status.value,
                "plan_id": subscription.plan_id,
                "plan_changed": new_plan is not None,
            },
            actor_id=actor_id,
        )

    current_app.logger.info(
        "Subscription %s updated: status %s -> %s",
        external_subscription_id,
        previous_status.value,
        subscription.status.value,
    )
    return subscription


def delete_from_payment(
    external_subscription_id: str,
    *,
    provider: PaymentProvider = PaymentProvider.STRIPE,
    commit: bool = True,
) -> Optional[Subscription]:
    """Downgrade the tenant, then remove the subscription row.

    Deleting an already-gone subscription is a logged no-op.
    """
    with unit_of_work(commit):
        subscription = _lock_subscription(external_subscription_id, provider)
        if subscription is None:
            current_app.logger.warning(
                "Subscription %s not found for deletion; nothing to do", external_subscription_id
            )
            return None

        tenant_id = subscription.tenant_id
        downgrade_to_free(
            tenant_id,
            reason="Subscription deleted by provider",
            external_subscription_id=external_subscription_id,
        )
        db.session.delete(subscription)

    current_app.logger.info("Subscription %s deleted for tenant %s", external_subscription_id, tenant_id)
    return subscription


def sweep_lapsed_manual_subscriptions(now: Optional[datetime] = None) -> Dict[str, int]:
    """Cancel manually managed subscriptions whose period has ended.

    Each subscription is its own per-tenant transaction; a datastore failure
    on one row is logged and the sweep moves on.
    """
    now = now or datetime.utcnow()
    due = (
        Subscription.query.filter(
            Subscription.provider == PaymentProvider.MANUAL,
            Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING]),
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end <= now,
        )
        .order_by(Subscription.current_period_end.asc())
        .all()
    )
    external_ids = [sub.external_subscription_id for sub in due]

    stats = {"due": len(external_ids), "canceled": 0, "failed": 0}
    for external_id in external_ids:
        try:
            update_from_payment(
                external_id,
                SubscriptionChanges(status=SubscriptionStatus.CANCELED, canceled_at=now),
                provider=PaymentProvider.MANUAL,
            )
            stats["canceled"] += 1
        except SubscriptionNotFoundError:
            current_app.logger.info("Manual subscription %s vanished before sweep", external_id)
        except SQLAlchemyError:
            stats["failed"] += 1
            current_app.logger.exception("Failed to lapse manual subscription %s", external_id)

    current_app.logger.info("Manual subscription sweep finished: %s", stats)
    return stats
