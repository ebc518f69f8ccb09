"""Shared assertions and payload builders for the test suite."""
import hashlib
import hmac
import json
import time

from tenant_billing.extensions import db
from tenant_billing.models import AuditLog


def audit_events(tenant_id, event_type=None):
    query = AuditLog.query.filter_by(tenant_id=tenant_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return query.order_by(AuditLog.id.asc()).all()


def reload(instance):
    """Fetch fresh column values, bypassing the identity map."""
    db.session.expire(instance)
    db.session.refresh(instance)
    return instance


def use_up(tenant, daily=37, monthly=420):
    tenant.ai_daily_usage = daily
    tenant.ai_monthly_usage = monthly
    db.session.commit()


def stripe_signature(payload: bytes, secret: str, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_payload(event_id, event_type, obj) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")
