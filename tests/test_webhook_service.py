from datetime import datetime
from types import SimpleNamespace

import pytest

from helpers import audit_events, reload, use_up
from tenant_billing.extensions import db
from tenant_billing.models import (
    AiPlan,
    ProcessedWebhookEvent,
    Subscription,
    SubscriptionStatus,
)
from tenant_billing.services import audit_service, email_service, webhook_service
from tenant_billing.services import manual_payment_service as payments
from tenant_billing.services import subscription_service as ledger
from tenant_billing.services.stripe_events import to_billing_event
from tenant_billing.services.webhook_service import BillingEvent, EventType, Outcome, reconcile


def _created(tenant, plan, event_id="evt_created", external_id="sub_123", status=SubscriptionStatus.ACTIVE):
    return BillingEvent(
        event_id=event_id,
        type=EventType.SUBSCRIPTION_CREATED.value,
        external_subscription_id=external_id,
        external_customer_id="cus_123",
        tenant_id=tenant.id,
        plan_id=plan.id,
        status=status,
        current_period_start=datetime(2026, 3, 1),
        current_period_end=datetime(2026, 3, 31),
    )


def _updated(event_id, external_id="sub_123", **fields):
    return BillingEvent(
        event_id=event_id,
        type=EventType.SUBSCRIPTION_UPDATED.value,
        external_subscription_id=external_id,
        **fields,
    )


def test_created_event_grants_plan(tenant, pro_plan):
    result = reconcile(_created(tenant, pro_plan))

    assert result.outcome == Outcome.PROCESSED
    assert reload(tenant).ai_plan == AiPlan.PAID_PRO
    assert webhook_service.is_processed("evt_created")


def test_redelivered_event_is_a_noop(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan))
    use_up(tenant)

    result = reconcile(_created(tenant, pro_plan))

    tenant = reload(tenant)
    assert result.outcome == Outcome.DUPLICATE
    assert tenant.ai_daily_usage == 37
    assert Subscription.query.count() == 1
    assert len(audit_events(tenant.id, audit_service.SUBSCRIPTION_CREATED)) == 1


def test_update_before_create_is_deferred_then_applied(tenant, pro_plan, basic_plan):
    early = _updated("evt_update", plan_id=basic_plan.id, status=SubscriptionStatus.ACTIVE)

    deferred = reconcile(early)

    assert deferred.outcome == Outcome.DEFERRED
    assert not webhook_service.is_processed("evt_update")
    assert Subscription.query.count() == 0
    assert reload(tenant).ai_plan == AiPlan.FREE

    reconcile(_created(tenant, pro_plan))
    retried = reconcile(early)

    assert retried.outcome == Outcome.PROCESSED
    assert reload(tenant).ai_plan == AiPlan.PAID_BASIC


def test_created_event_for_known_subscription_is_applied_as_update(tenant, pro_plan, basic_plan):
    reconcile(_created(tenant, pro_plan))

    result = reconcile(_created(tenant, basic_plan, event_id="evt_created_again"))

    assert result.outcome == Outcome.PROCESSED
    assert Subscription.query.count() == 1
    assert ledger.get_by_external_id("sub_123").plan_id == basic_plan.id
    assert len(audit_events(tenant.id, audit_service.SUBSCRIPTION_CREATED)) == 1


def test_created_event_without_metadata_is_ignored(tenant, pro_plan):
    event = BillingEvent(
        event_id="evt_orphan",
        type=EventType.SUBSCRIPTION_CREATED.value,
        external_subscription_id="sub_orphan",
        status=SubscriptionStatus.ACTIVE,
    )

    result = reconcile(event)

    assert result.outcome == Outcome.IGNORED
    assert webhook_service.is_processed("evt_orphan")
    assert Subscription.query.count() == 0


def test_canceled_update_downgrades(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan))

    reconcile(_updated("evt_cancel", status=SubscriptionStatus.CANCELED, canceled_at=datetime(2026, 3, 20)))

    assert reload(tenant).ai_plan == AiPlan.FREE
    assert len(audit_events(tenant.id, audit_service.SUBSCRIPTION_DOWNGRADED_TO_FREE)) == 1


def test_deleted_event_downgrades_and_removes_row(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan))
    deleted = BillingEvent(
        event_id="evt_deleted", type=EventType.SUBSCRIPTION_DELETED.value, external_subscription_id="sub_123"
    )

    result = reconcile(deleted)

    assert result.outcome == Outcome.PROCESSED
    assert Subscription.query.count() == 0
    assert reload(tenant).ai_plan == AiPlan.FREE


def test_unknown_event_type_is_ignored_but_recorded(app):
    result = reconcile(BillingEvent(event_id="evt_misc", type="customer.created"))

    assert result.outcome == Outcome.IGNORED
    assert db.session.get(ProcessedWebhookEvent, "evt_misc").event_type == "customer.created"


def test_payment_failed_marks_past_due_and_keeps_access(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan))
    failed = BillingEvent(
        event_id="evt_invoice_failed",
        type=EventType.PAYMENT_FAILED.value,
        external_subscription_id="sub_123",
        invoice_id="in_1",
    )

    result = reconcile(failed)

    assert result.outcome == Outcome.PROCESSED
    assert ledger.get_by_external_id("sub_123").status == SubscriptionStatus.PAST_DUE
    assert reload(tenant).ai_plan == AiPlan.PAID_PRO
    [entry] = audit_events(tenant.id, audit_service.PAYMENT_FAILED)
    assert entry.metadata_json["invoice_id"] == "in_1"


def test_payment_succeeded_reactivates_past_due(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan))
    reconcile(_updated("evt_past_due", status=SubscriptionStatus.PAST_DUE))
    succeeded = BillingEvent(
        event_id="evt_invoice_paid", type=EventType.PAYMENT_SUCCEEDED.value, external_subscription_id="sub_123"
    )

    result = reconcile(succeeded)

    assert result.message == "Subscription reactivated"
    assert ledger.get_by_external_id("sub_123").status == SubscriptionStatus.ACTIVE


def test_invoice_for_unknown_subscription_is_ignored(app):
    event = BillingEvent(
        event_id="evt_invoice_other", type=EventType.PAYMENT_FAILED.value, external_subscription_id="sub_elsewhere"
    )

    assert reconcile(event).outcome == Outcome.IGNORED


def test_notification_failure_does_not_fail_event(app, tenant, pro_plan, monkeypatch):
    app.config["PAYMENT_EMAILS_ENABLED"] = True

    def broken_deliver(notice):
        raise OSError("smtp down")

    monkeypatch.setattr(email_service, "deliver", broken_deliver)

    result = reconcile(_created(tenant, pro_plan))

    assert result.outcome == Outcome.PROCESSED
    assert reload(tenant).ai_plan == AiPlan.PAID_PRO


def test_handler_failure_leaves_event_unprocessed(tenant, pro_plan, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("entitlement store unavailable")

    monkeypatch.setattr(ledger, "apply_entitlement", boom)

    with pytest.raises(RuntimeError):
        reconcile(_created(tenant, pro_plan))

    assert not webhook_service.is_processed("evt_created")
    assert Subscription.query.count() == 0


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("unpaid", SubscriptionStatus.UNPAID),
        ("paused", SubscriptionStatus.ACTIVE),
        ("something_new", SubscriptionStatus.INCOMPLETE),
        (None, None),
    ],
)
def test_map_provider_status(raw, expected):
    assert webhook_service.map_provider_status(raw) == expected


def test_stripe_subscription_payload_translation(tenant, pro_plan):
    payload = {
        "id": "evt_stripe_1",
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": "sub_abc",
                "customer": "cus_abc",
                "status": "canceled",
                "cancel_at_period_end": False,
                "canceled_at": 1772323200,
                "metadata": {"tenantId": str(tenant.id)},
                "items": {
                    "data": [
                        {
                            "price": {"id": "price_pro"},
                            "current_period_start": 1772323200,
                            "current_period_end": 1774915200,
                        }
                    ]
                },
            }
        },
    }

    event = to_billing_event(payload)

    assert event.event_id == "evt_stripe_1"
    assert event.external_subscription_id == "sub_abc"
    assert event.tenant_id == tenant.id
    assert event.plan_id == pro_plan.id
    assert event.status == SubscriptionStatus.CANCELED
    assert event.current_period_start == datetime(2026, 3, 1)
    assert event.canceled_at == datetime(2026, 3, 1)


def test_stripe_unmapped_price_keeps_plan_unset(app):
    payload = {
        "id": "evt_stripe_2",
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_abc", "status": "active", "items": {"data": [{"price": {"id": "price_x"}}]}}},
    }

    assert to_billing_event(payload).plan_id is None


def test_stripe_invoice_payload_reads_nested_subscription(app):
    payload = {
        "id": "evt_stripe_3",
        "type": "invoice.payment_failed",
        "data": {
            "object": {
                "id": "in_9",
                "customer": "cus_abc",
                "parent": {"subscription_details": {"subscription": "sub_abc"}},
            }
        },
    }

    event = to_billing_event(payload)

    assert event.external_subscription_id == "sub_abc"
    assert event.invoice_id == "in_9"


@pytest.fixture
def success_notices(monkeypatch):
    sent = []
    monkeypatch.setattr(
        email_service, "notify_payment_success", lambda tenant, plan, amount=None: sent.append(tenant.id) or (True, None)
    )
    return sent


def test_incomplete_subscription_waits_for_payment(tenant, pro_plan, success_notices):
    result = reconcile(_created(tenant, pro_plan, status=SubscriptionStatus.INCOMPLETE))

    assert result.outcome == Outcome.PROCESSED
    assert ledger.get_by_external_id("sub_123").status == SubscriptionStatus.INCOMPLETE
    assert reload(tenant).ai_plan == AiPlan.FREE
    assert success_notices == []


def test_incomplete_subscription_activated_by_update(tenant, pro_plan, success_notices):
    reconcile(_created(tenant, pro_plan, status=SubscriptionStatus.INCOMPLETE))

    reconcile(_updated("evt_active", status=SubscriptionStatus.ACTIVE))

    assert reload(tenant).ai_plan == AiPlan.PAID_PRO
    assert success_notices == [tenant.id]


def test_incomplete_subscription_expiring_stays_free(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan, status=SubscriptionStatus.INCOMPLETE))

    result = reconcile(_updated("evt_expired", status=SubscriptionStatus.INCOMPLETE_EXPIRED))

    assert result.outcome == Outcome.PROCESSED
    assert reload(tenant).ai_plan == AiPlan.FREE
    assert len(audit_events(tenant.id, audit_service.SUBSCRIPTION_DOWNGRADED_TO_FREE)) == 1


def test_active_subscription_expiring_incomplete_downgrades(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan))

    reconcile(_updated("evt_expired", status=SubscriptionStatus.INCOMPLETE_EXPIRED))

    tenant = reload(tenant)
    assert tenant.ai_plan == AiPlan.FREE
    assert tenant.ai_daily_limit == 50


def test_stripe_subscription_with_unknown_status_grants_nothing(tenant, pro_plan):
    payload = {
        "id": "evt_stripe_new",
        "type": "customer.subscription.created",
        "data": {
            "object": {
                "id": "sub_new",
                "customer": "cus_abc",
                "status": "something_new",
                "metadata": {"tenantId": str(tenant.id)},
                "items": {"data": [{"price": {"id": "price_pro"}, "current_period_start": 1772323200}]},
            }
        },
    }

    result = reconcile(to_billing_event(payload))

    assert result.outcome == Outcome.PROCESSED
    assert ledger.get_by_external_id("sub_new").status == SubscriptionStatus.INCOMPLETE
    assert reload(tenant).ai_plan == AiPlan.FREE


def test_payment_failed_on_incomplete_subscription_grants_nothing(tenant, pro_plan):
    reconcile(_created(tenant, pro_plan, status=SubscriptionStatus.INCOMPLETE))
    failed = BillingEvent(
        event_id="evt_invoice_failed", type=EventType.PAYMENT_FAILED.value, external_subscription_id="sub_123"
    )

    result = reconcile(failed)

    assert result.message == "Payment failure recorded; subscription is INCOMPLETE"
    assert ledger.get_by_external_id("sub_123").status == SubscriptionStatus.INCOMPLETE
    assert reload(tenant).ai_plan == AiPlan.FREE


def test_first_invoice_paid_activates_incomplete_subscription(tenant, pro_plan, success_notices):
    reconcile(_created(tenant, pro_plan, status=SubscriptionStatus.INCOMPLETE))
    succeeded = BillingEvent(
        event_id="evt_invoice_paid", type=EventType.PAYMENT_SUCCEEDED.value, external_subscription_id="sub_123"
    )

    result = reconcile(succeeded)

    assert result.message == "Subscription activated"
    assert ledger.get_by_external_id("sub_123").status == SubscriptionStatus.ACTIVE
    assert reload(tenant).ai_plan == AiPlan.PAID_PRO
    assert success_notices == [tenant.id]


def test_events_for_replaced_subscription_are_ignored(tenant, pro_plan, basic_plan):
    payment = payments.submit_payment(
        tenant_id=tenant.id,
        plan_id=basic_plan.id,
        method="bank_transfer",
        sender_name="Ayesha Khan",
        sender_number=None,
        screenshot_url="https://files.example.com/proof.png",
    )
    reconcile(_created(tenant, pro_plan, external_id="sub_old"))
    reconcile(_updated("evt_old_past_due", external_id="sub_old", status=SubscriptionStatus.PAST_DUE))

    payments.approve_payment(payment.id, reviewer_id="ops@example.com")

    assert ledger.is_retired("sub_old")
    [replaced] = audit_events(tenant.id, audit_service.SUBSCRIPTION_REPLACED)
    assert replaced.metadata_json["status"] == "PAST_DUE"
    results = [
        reconcile(_updated(f"evt_old_{n}", external_id="sub_old", status=SubscriptionStatus.ACTIVE))
        for n in range(3)
    ]
    assert [r.outcome for r in results] == [Outcome.IGNORED] * 3
    assert all(webhook_service.is_processed(f"evt_old_{n}") for n in range(3))
    recreated = reconcile(_created(tenant, pro_plan, event_id="evt_old_again", external_id="sub_old"))
    assert recreated.outcome == Outcome.IGNORED
    assert ledger.get_by_tenant(tenant.id).provider.value == "manual"
    assert reload(tenant).ai_plan == AiPlan.PAID_BASIC


class _RecordingSession:
    def __init__(self, dialect):
        self.dialect = dialect
        self.statements = []

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect))

    def execute(self, statement):
        self.statements.append(str(statement))


@pytest.mark.parametrize(
    "dialect, seconds, expected",
    [
        ("postgresql", 10, ["SET LOCAL statement_timeout = 10000"]),
        ("postgresql", 0, []),
        ("sqlite", 10, []),
    ],
)
def test_delivery_deadline_only_set_on_postgresql(app, monkeypatch, dialect, seconds, expected):
    app.config["WEBHOOK_DEADLINE_SECONDS"] = seconds
    session = _RecordingSession(dialect)
    monkeypatch.setattr(webhook_service, "db", SimpleNamespace(session=session))

    webhook_service._apply_deadline()

    assert session.statements == expected
