"""Manual payment review: EasyPaisa, JazzCash and bank transfers.

A payment moves PENDING -> APPROVED or PENDING -> REJECTED exactly once.
The transition is a conditional UPDATE on ``status = 'PENDING'`` so two
operators clicking at the same time cannot both win. Only approval grants
an entitlement.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from flask import current_app
from sqlalchemy import update

from ..extensions import db, unit_of_work
from ..models import (
    ManualPayment,
    ManualPaymentMethod,
    ManualPaymentStatus,
    Subscription,
    Tenant,
)
from . import audit_service, email_service, plan_catalog
from .errors import (
    AlreadyReviewedError,
    InvalidSubmissionError,
    PaymentNotFoundError,
    SubmissionConflictError,
    TenantNotFoundError,
)
from .subscription_service import ManuallyManaged, grant_entitlement

SENDER_NAME_MIN = 2
SENDER_NAME_MAX = 100
MAX_PAGE_SIZE = 200


@dataclass
class ApprovalResult:
    payment: ManualPayment
    subscription: Subscription

    def to_dict(self) -> dict:
        return {"payment": self.payment.to_dict(), "subscription": self.subscription.to_dict()}


def _validate_submission(method: str, sender_name: str, screenshot_url: str, final_price: Optional[int]) -> ManualPaymentMethod:
    try:
        parsed_method = ManualPaymentMethod(str(method or "").upper())
    except ValueError:
        raise InvalidSubmissionError(f"Unsupported payment method: {method}") from None

    name = (sender_name or "").strip()
    if not SENDER_NAME_MIN <= len(name) <= SENDER_NAME_MAX:
        raise InvalidSubmissionError(
            f"Sender name must be between {SENDER_NAME_MIN} and {SENDER_NAME_MAX} characters"
        )

    proof = urlparse((screenshot_url or "").strip())
    if proof.scheme not in ("http", "https") or not proof.netloc:
        raise InvalidSubmissionError("A valid proof-of-payment screenshot URL is required")

    if final_price is not None and int(final_price) < 0:
        raise InvalidSubmissionError("Final price cannot be negative")
    return parsed_method


def submit_payment(
    *,
    tenant_id: int,
    plan_id: int,
    method: str,
    sender_name: str,
    screenshot_url: str,
    sender_number: Optional[str] = None,
    reference: Optional[str] = None,
    coupon_code: Optional[str] = None,
    final_price: Optional[int] = None,
    actor_id: Optional[str] = None,
) -> ManualPayment:
    """Record a PENDING payment after every precondition has passed.

    ``final_price`` is the post-coupon amount already resolved by the caller;
    when omitted the plan price applies.
    """
    parsed_method = _validate_submission(method, sender_name, screenshot_url, final_price)

    with unit_of_work():
        plan = plan_catalog.get_plan(plan_id)
        if not plan.is_active:
            raise InvalidSubmissionError("Plan is not available", code="PLAN_INACTIVE")

        if db.session.get(Tenant, tenant_id) is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")

        existing = Subscription.query.filter_by(tenant_id=tenant_id).first()
        if existing is not None and not existing.status.is_lapsed:
            raise SubmissionConflictError(
                f"Tenant already has a {existing.status.value.lower()} subscription",
                code="ACTIVE_SUBSCRIPTION_EXISTS",
            )

        pending = ManualPayment.scoped_to_tenant(tenant_id).filter_by(status=ManualPaymentStatus.PENDING).first()
        if pending:
            raise SubmissionConflictError(
                "You already have a pending payment request", code="PENDING_PAYMENT_EXISTS"
            )

        payment = ManualPayment(
            tenant_id=tenant_id,
            plan=plan,
            method=parsed_method,
            sender_name=sender_name.strip(),
            sender_number=(sender_number or "").strip() or None,
            reference=(reference or "").strip() or None,
            screenshot_url=screenshot_url.strip(),
            coupon_code=coupon_code or None,
            original_price=plan.price_amount,
            final_price=plan.price_amount if final_price is None else int(final_price),
            status=ManualPaymentStatus.PENDING,
        )
        db.session.add(payment)
        db.session.flush()
        audit_service.record(
            tenant_id,
            audit_service.MANUAL_PAYMENT_SUBMITTED,
            {
                "payment_id": payment.id,
                "plan_id": plan.id,
                "method": parsed_method.value,
                "amount": payment.final_price,
            },
            actor_id=actor_id,
        )

    current_app.logger.info(
        "Manual payment %s submitted by tenant %s via %s for %s",
        payment.id,
        tenant_id,
        parsed_method.value,
        payment.final_price,
    )
    return payment


def get_payment(payment_id: int) -> ManualPayment:
    payment = db.session.get(ManualPayment, payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    return payment


def list_payments(
    status: Optional[ManualPaymentStatus] = None, limit: int = 50, offset: int = 0
) -> Tuple[List[ManualPayment], int]:
    query = ManualPayment.query
    if status is not None:
        query = query.filter_by(status=status)
    total = query.count()
    limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
    offset = max(int(offset), 0)
    payments = (
        query.order_by(ManualPayment.created_at.desc(), ManualPayment.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return payments, total


def _claim(payment_id: int, outcome: ManualPaymentStatus, reviewer_id: str, note: Optional[str]) -> None:
    """Compare-and-set PENDING -> ``outcome``; the loser gets ALREADY_REVIEWED."""
    result = db.session.execute(
        update(ManualPayment)
        .where(ManualPayment.id == payment_id, ManualPayment.status == ManualPaymentStatus.PENDING)
        .values(
            status=outcome,
            reviewed_by=reviewer_id,
            reviewer_note=note,
            reviewed_at=datetime.utcnow(),
        )
    )
    if result.rowcount != 1:
        raise AlreadyReviewedError(f"Payment {payment_id} has already been reviewed")


def approve_payment(payment_id: int, reviewer_id: str, note: Optional[str] = None) -> ApprovalResult:
    """Approve a PENDING payment and grant its plan in one transaction."""
    payment = get_payment(payment_id)
    if not payment.is_pending:
        raise AlreadyReviewedError(f"Payment is already {payment.status.value.lower()}")

    period_days = int(current_app.config.get("MANUAL_PAYMENT_PERIOD_DAYS", 30))
    with unit_of_work():
        _claim(payment_id, ManualPaymentStatus.APPROVED, reviewer_id, note)
        subscription = grant_entitlement(
            payment.tenant_id,
            payment.plan_id,
            ManuallyManaged(payment_id=payment.id, period_days=period_days),
            actor_id=reviewer_id,
            commit=False,
        )
        audit_service.record(
            payment.tenant_id,
            audit_service.MANUAL_PAYMENT_APPROVED,
            {"payment_id": payment.id, "plan_id": payment.plan_id, "amount": payment.final_price},
            actor_id=reviewer_id,
        )

    current_app.logger.info(
        "Manual payment %s approved by %s for tenant %s", payment_id, reviewer_id, payment.tenant_id
    )
    email_service.notify_payment_success(payment.tenant, payment.plan, payment.final_price)
    return ApprovalResult(payment=payment, subscription=subscription)


def reject_payment(payment_id: int, reviewer_id: str, note: Optional[str] = None) -> ManualPayment:
    """Reject a PENDING payment; the tenant's entitlement is left untouched."""
    payment = get_payment(payment_id)
    if not payment.is_pending:
        raise AlreadyReviewedError(f"Payment is already {payment.status.value.lower()}")

    with unit_of_work():
        _claim(payment_id, ManualPaymentStatus.REJECTED, reviewer_id, note)
        audit_service.record(
            payment.tenant_id,
            audit_service.MANUAL_PAYMENT_REJECTED,
            {"payment_id": payment.id, "reason": note},
            actor_id=reviewer_id,
        )

    current_app.logger.info(
        "Manual payment %s rejected by %s for tenant %s", payment_id, reviewer_id, payment.tenant_id
    )
    email_service.notify_payment_failed(payment.tenant, payment.plan, note)
    return payment
