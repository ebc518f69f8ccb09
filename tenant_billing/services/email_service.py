"""Payment notices: the billing core's outbound notification sink.

A notice is rendered from a Jinja template and handed to SMTP only after the
entitlement transaction has committed. Delivery is best-effort: every entry
point returns an ``(ok, error)`` tuple and nothing raises into the caller.
"""
from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Optional, Tuple

from flask import current_app, render_template

from ..models import SubscriptionPlan, Tenant

PLAIN_TEXT_FALLBACK = "Your billing status has changed. Open this message in an HTML-capable client for details."


@dataclass(frozen=True)
class PaymentNotice:
    """One tenant-facing message about a payment outcome."""

    tenant: Tenant
    subject: str
    template: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def recipient(self) -> Optional[str]:
        return (self.tenant.contact_email or "").strip() or None

    def render(self) -> str:
        return render_template(
            self.template,
            tenant=self.tenant,
            app_name=current_app.config.get("APP_NAME"),
            **self.context,
        )

    def to_message(self, sender: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = self.subject
        message["From"] = sender
        message["To"] = self.recipient
        message.set_content(PLAIN_TEXT_FALLBACK)
        message.add_alternative(self.render(), subtype="html")
        return message


def _sender() -> str:
    cfg = current_app.config
    return formataddr(
        (cfg.get("MAIL_DEFAULT_NAME", "Tenant Billing"), cfg.get("MAIL_DEFAULT_SENDER", "billing@tenant-billing.app"))
    )


def deliver(notice: PaymentNotice) -> Tuple[bool, Optional[str]]:
    """Send ``notice`` over the configured SMTP relay."""
    cfg = current_app.config
    host = cfg.get("SMTP_HOST")
    if not host:
        return False, "SMTP_HOST is not configured"

    message = notice.to_message(_sender())
    port = int(cfg.get("SMTP_PORT", 587))
    timeout = int(cfg.get("SMTP_TIMEOUT_SECONDS", 10))
    username = cfg.get("SMTP_USERNAME")
    password = cfg.get("SMTP_PASSWORD")
    tls_context = ssl.create_default_context()

    try:
        if cfg.get("SMTP_USE_SSL"):
            server = smtplib.SMTP_SSL(host, port, timeout=timeout, context=tls_context)
        else:
            server = smtplib.SMTP(host, port, timeout=timeout)
        with server:
            if not cfg.get("SMTP_USE_SSL") and cfg.get("SMTP_USE_TLS", True):
                server.starttls(context=tls_context)
            if username and password:
                server.login(username, password)
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        return False, f"SMTP delivery failed: {exc}"
    return True, None


def _notify(notice: PaymentNotice) -> Tuple[bool, Optional[str]]:
    tenant_id = notice.tenant.id
    if not current_app.config.get("PAYMENT_EMAILS_ENABLED"):
        current_app.logger.debug("Payment notice to tenant %s skipped: disabled", tenant_id)
        return False, "Payment emails disabled"
    if notice.recipient is None:
        return False, "Tenant has no contact email"

    try:
        ok, err = deliver(notice)
    except Exception as exc:  # notices must never fail the billing path
        current_app.logger.exception("Payment notice to tenant %s failed", tenant_id)
        return False, str(exc)

    if ok:
        current_app.logger.info("Payment notice '%s' sent to tenant %s", notice.subject, tenant_id)
    else:
        current_app.logger.warning("Payment notice to tenant %s not delivered: %s", tenant_id, err)
    return ok, err


def notify_payment_success(
    tenant: Tenant, plan: SubscriptionPlan, amount: Optional[int] = None
) -> Tuple[bool, Optional[str]]:
    return _notify(
        PaymentNotice(
            tenant=tenant,
            subject="Payment confirmed",
            template="emails/payment_success.html",
            context={"plan": plan, "amount": plan.price_amount if amount is None else amount},
        )
    )


def notify_payment_failed(
    tenant: Tenant, plan: Optional[SubscriptionPlan], reason: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    return _notify(
        PaymentNotice(
            tenant=tenant,
            subject="Payment not completed",
            template="emails/payment_failed.html",
            context={"plan": plan, "reason": reason},
        )
    )
