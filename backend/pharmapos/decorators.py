# Overview: Request authentication and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from . import permissions
from .services import session_service
from .services.security_service import log_request_event
from .services.tenant_service import TenantAccessError, resolve_branch_id

BRANCH_HEADER = "X-Branch-Id"


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'tenant_id')


def _requested_branch_id():
    raw = request.headers.get(BRANCH_HEADER)
    if raw is None or not raw.strip():
        return None
    raw = raw.strip()
    if not raw.isdigit():
        raise ValueError(raw)
    return int(raw)


def require_auth(f):
    """
    Require authentication and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.current_user: The authenticated User (the profile row)
    - g.tenant_id: The tenant ID - REQUIRED
    - g.branch_id: The branch the request operates on (None for owners
      that did not pick one with the X-Branch-Id header)
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - Profile missing or deactivated
    - Tenant deactivated
    Returns 404 when X-Branch-Id names a branch the user may not use.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required", "redirect": permissions.LOGIN_PATH}), 401

        token = auth_header.split(" ", 1)[1]

        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token", "redirect": permissions.LOGIN_PATH}), 401

        if not context.tenant_id:
            log_request_event(
                "TENANT_CONTEXT_MISSING",
                "Session missing tenant_id - critical security invariant violated",
                user_id=context.user.id,
            )
            return jsonify({"error": "Invalid session: missing tenant context"}), 401

        g.current_user = context.user
        g.tenant_id = context.tenant_id
        g.session_context = context

        try:
            requested = _requested_branch_id()
        except ValueError:
            return jsonify({"error": f"{BRANCH_HEADER} must be an integer"}), 400

        try:
            g.branch_id = resolve_branch_id(context.user, context.tenant_id, requested)
        except TenantAccessError as e:
            return jsonify({"error": str(e)}), 404

        return f(*args, **kwargs)

    return decorated_function


def require_active_subscription(f):
    """Reject users whose subscription_status is not "active"."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required", "redirect": permissions.LOGIN_PATH}), 401

        user = g.current_user
        if user.subscription_status != "active":
            log_request_event(
                "SUBSCRIPTION_INACTIVE",
                f"Subscription status is {user.subscription_status}",
            )
            return jsonify({
                "error": "Subscription is not active",
                "redirect": permissions.SUBSCRIPTION_EXPIRED_PATH,
            }), 403

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """
    Require the authenticated user to hold one of the given roles.

    Implies an active subscription, mirroring the client route guard.
    """
    def decorator(f):
        @wraps(f)
        @require_active_subscription
        def decorated_function(*args, **kwargs):
            user = g.current_user
            if user.role not in roles:
                log_request_event(
                    "ROLE_DENIED",
                    f"Role {user.role} not in: {', '.join(roles)}",
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                    "redirect": permissions.UNAUTHORIZED_PATH,
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
