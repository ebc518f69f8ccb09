"""Audit emitter: appends one record per entitlement-changing operation."""
from __future__ import annotations

from typing import Any, Dict, Optional

from flask import current_app

from ..extensions import db
from ..models import AuditLog

SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
SUBSCRIPTION_DOWNGRADED_TO_FREE = "SUBSCRIPTION_DOWNGRADED_TO_FREE"
SUBSCRIPTION_REPLACED = "SUBSCRIPTION_REPLACED"
PAYMENT_FAILED = "PAYMENT_FAILED"
MANUAL_PAYMENT_SUBMITTED = "MANUAL_PAYMENT_SUBMITTED"
MANUAL_PAYMENT_APPROVED = "MANUAL_PAYMENT_APPROVED"
MANUAL_PAYMENT_REJECTED = "MANUAL_PAYMENT_REJECTED"


def record(
    tenant_id: int,
    event_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    actor_id: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    The row commits or rolls back together with the mutation it describes.
    """
    if not tenant_id:
        raise ValueError("Audit records require a tenant id")

    entry = AuditLog(
        tenant_id=tenant_id,
        event_type=event_type,
        actor_id=actor_id,
        metadata_json=dict(metadata or {}),
    )
    db.session.add(entry)
    current_app.logger.debug("Audit %s staged for tenant %s", event_type, tenant_id)
    return entry
