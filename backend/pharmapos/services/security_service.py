# Overview: Append-only security event logging with tenant context.

"""
Security Event Logging

WHY: Every denied access, failed login and cross-tenant access attempt leaves an
audit row. Events are written in their own short transaction so that a
rollback of the surrounding request never erases the evidence.
"""

from flask import g, has_request_context, request

from ..extensions import db
from ..models import SecurityEvent


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    tenant_id: int | None = None,
    branch_id: int | None = None,
) -> SecurityEvent:
    """
    Log security event to audit trail with tenant context.

    event_type examples:
    - LOGIN_FAILED
    - LOGIN_SUCCESS
    - LOGOUT
    - PROFILE_MISSING
    - ROLE_DENIED
    - SUBSCRIPTION_INACTIVE
    - CROSS_TENANT_ACCESS_DENIED
    - USER_CREATED / USER_DEACTIVATED / USER_REACTIVATED
    """
    event = SecurityEvent(
        user_id=user_id,
        tenant_id=tenant_id,
        branch_id=branch_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(event)
    db.session.commit()
    return event


def log_request_event(event_type: str, reason: str, *, success: bool = False, **context) -> SecurityEvent:
    """
    Log a security event, filling client and tenant details from the current
    request when one is active. Explicit keyword arguments win.
    """
    if has_request_context():
        user = getattr(g, "current_user", None)
        context.setdefault("user_id", user.id if user is not None else None)
        context.setdefault("tenant_id", getattr(g, "tenant_id", None))
        context.setdefault("branch_id", getattr(g, "branch_id", None))
        context.setdefault("resource", request.path)
        context.setdefault("action", request.method)
        context.setdefault("ip_address", request.remote_addr)
        context.setdefault("user_agent", request.headers.get("User-Agent"))
    context.setdefault("user_id", None)
    return log_security_event(event_type=event_type, success=success, reason=reason, **context)
