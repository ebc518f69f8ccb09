"""Manual payment submission and operator review endpoints."""
from __future__ import annotations

from flask import Blueprint, request

from ..models import ManualPaymentStatus
from ..services import manual_payment_service as payments
from ..services.errors import InvalidSubmissionError
from ..utils.auth import current_superadmin, current_tenant, superadmin_required, tenant_required

manual_payments_bp = Blueprint("manual_payments", __name__)


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _review_note() -> str | None:
    note = _json_body().get("note")
    if note is None:
        return None
    note = str(note).strip()
    return note[:2000] or None


@manual_payments_bp.route("/checkout/manual", methods=["POST"])
@tenant_required
def submit_manual_payment():
    body = _json_body()
    try:
        plan_id = int(body.get("plan_id"))
    except (TypeError, ValueError):
        raise InvalidSubmissionError("plan_id is required") from None

    final_price = body.get("final_price")
    if final_price is not None:
        try:
            final_price = int(final_price)
        except (TypeError, ValueError):
            raise InvalidSubmissionError("final_price must be an integer amount") from None

    tenant = current_tenant()
    payment = payments.submit_payment(
        tenant_id=tenant.id,
        plan_id=plan_id,
        method=body.get("method"),
        sender_name=body.get("sender_name") or "",
        screenshot_url=body.get("screenshot_url") or "",
        sender_number=body.get("sender_number"),
        reference=body.get("reference"),
        coupon_code=body.get("coupon_code"),
        final_price=final_price,
    )
    return {
        **payment.to_dict(),
        "message": "Payment submitted successfully. Please wait for admin approval.",
    }, 201


@manual_payments_bp.route("/manual-payments", methods=["GET"])
@superadmin_required
def list_manual_payments():
    status_param = (request.args.get("status") or "").upper()
    try:
        status = ManualPaymentStatus(status_param) if status_param else None
    except ValueError:
        raise InvalidSubmissionError(f"Unknown status filter: {status_param}") from None

    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    results, total = payments.list_payments(status=status, limit=limit, offset=offset)
    return {
        "payments": [payment.to_dict() for payment in results],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@manual_payments_bp.route("/manual-payments/<int:payment_id>", methods=["GET"])
@superadmin_required
def get_manual_payment(payment_id: int):
    return payments.get_payment(payment_id).to_dict()


@manual_payments_bp.route("/manual-payments/<int:payment_id>/approve", methods=["POST"])
@superadmin_required
def approve_manual_payment(payment_id: int):
    reviewer = current_superadmin()
    result = payments.approve_payment(payment_id, reviewer["email"], _review_note())
    return {"message": "Payment approved successfully", **result.to_dict()}


@manual_payments_bp.route("/manual-payments/<int:payment_id>/reject", methods=["POST"])
@superadmin_required
def reject_manual_payment(payment_id: int):
    reviewer = current_superadmin()
    payment = payments.reject_payment(payment_id, reviewer["email"], _review_note())
    return {"message": "Payment rejected", "payment": payment.to_dict()}
