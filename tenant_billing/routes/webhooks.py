"""Billing provider webhook transport."""
from __future__ import annotations

import json

import stripe
from flask import Blueprint, current_app, request

from ..services.stripe_events import to_billing_event
from ..services.webhook_service import Outcome, reconcile

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        return {"error": "Stripe not configured"}, 500

    signature = request.headers.get("Stripe-Signature")
    if not signature:
        current_app.logger.warning("Webhook missing signature")
        return {"error": "Missing signature"}, 400

    payload = request.get_data()
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as exc:
        current_app.logger.warning("Invalid webhook payload: %s", exc)
        return {"error": "Invalid payload"}, 400
    except stripe.SignatureVerificationError as exc:
        current_app.logger.warning("Webhook signature verification failed: %s", exc)
        return {"error": "Signature verification failed"}, 400

    result = reconcile(to_billing_event(json.loads(payload)))
    if result.outcome == Outcome.DEFERRED:
        # non-2xx makes the provider redeliver once the creation has landed
        return {"received": True, **result.to_dict()}, 409
    return {"received": True, **result.to_dict()}, 200
