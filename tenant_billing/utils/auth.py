"""Session helpers binding requests to a reviewer or a tenant.

Credentials are verified by the external auth collaborator; it establishes
these sessions and this module only reads them back.
"""
from __future__ import annotations

import functools
from typing import Callable, Optional

from flask import current_app, g, session

from ..extensions import db
from ..models import Tenant


SESSION_TENANT_ID = "tenant_id"
SESSION_SUPERADMIN_FLAG = "superadmin_active"
SESSION_SUPERADMIN_EMAIL = "superadmin_email"
SESSION_SUPERADMIN_NAME = "superadmin_name"
SESSION_SUPERADMIN_NONCE = "superadmin_nonce"


def _reset_session_state() -> None:
    """Drop all session keys to prevent stale or tampered sessions."""
    for key in list(session.keys()):
        session.pop(key, None)


def clear_session() -> None:
    _reset_session_state()


def current_tenant() -> Optional[Tenant]:
    """Return the active tenant bound to the session, loading once per request."""
    if hasattr(g, "current_tenant"):
        return g.current_tenant  # type: ignore[attr-defined]

    tenant = None
    tenant_id = session.get(SESSION_TENANT_ID)
    if tenant_id:
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            clear_session()
            tenant = None
    g.current_tenant = tenant  # type: ignore[attr-defined]
    return tenant


def current_superadmin() -> Optional[dict]:
    """Return the reviewer identity if the session matches the configured operator."""
    if hasattr(g, "superadmin"):
        return g.superadmin  # type: ignore[attr-defined]

    env_email = (current_app.config.get("SUPERADMIN_EMAIL") or "").strip().lower()
    session_email = (session.get(SESSION_SUPERADMIN_EMAIL) or "").strip().lower()
    if not env_email or not session.get(SESSION_SUPERADMIN_FLAG) or session_email != env_email:
        g.superadmin = None  # type: ignore[attr-defined]
        return None

    g.superadmin = {
        "email": env_email,
        "name": session.get(SESSION_SUPERADMIN_NAME) or current_app.config.get("SUPERADMIN_NAME"),
        "nonce": session.get(SESSION_SUPERADMIN_NONCE),
    }  # type: ignore[attr-defined]
    return g.superadmin


def superadmin_required(view: Callable):
    """Decorator enforcing platform-owner access for review endpoints."""

    @functools.wraps(view)
    def wrapped_view(*args, **kwargs):
        if not current_superadmin():
            return {"error": "UNAUTHORIZED", "message": "Super admin access required."}, 401
        return view(*args, **kwargs)

    return wrapped_view


def tenant_required(view: Callable):
    """Decorator requiring a session bound to an active tenant."""

    @functools.wraps(view)
    def wrapped_view(*args, **kwargs):
        if not current_tenant():
            return {"error": "UNAUTHORIZED", "message": "Please sign in to continue."}, 401
        return view(*args, **kwargs)

    return wrapped_view
