# Overview: Flask API routes for login, logout, the current user and route access.

# backend/pharmapos/routes/auth.py
"""
Authentication API routes

SECURITY FEATURES:
- bcrypt credential check, then profile validation (a missing or
  deactivated profile refuses login)
- Hashed bearer tokens with absolute and idle timeouts
- Failed logins and inactive profiles are written to security_events
- Self-service tenant creation bootstraps tenant, owner and first branch
"""

from flask import Blueprint, request, jsonify, current_app, g

from .. import permissions
from ..decorators import require_auth
from ..services import auth_service, session_service
from ..services.auth_service import AuthError, PasswordValidationError
from ..services.security_service import log_request_event
from ..services.tenant_service import get_tenant_branches
from ..models import Tenant
from ..extensions import db


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _bearer_token():
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1]


@auth_bp.post("/login")
def login_route():
    """
    Authenticate and create a session token.

    Token must be included in the Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not all([email, password]):
            return jsonify({"error": "email and password required"}), 400

        try:
            user, token = auth_service.login(
                email,
                password,
                user_agent=request.headers.get("User-Agent"),
                ip_address=request.remote_addr,
            )
        except AuthError as e:
            reason = e.details.get("reason", "invalid_credentials")
            log_request_event("LOGIN_FAILED", f"{reason}: {email}")
            return jsonify({"error": str(e), "details": e.details}), 401

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "tenant_id": user.tenant_id,
            "branch_id": user.branch_id,
            "redirect": "/tenant" if user.role == "owner" else "/branch",
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """Revoke the session token (logout)."""
    try:
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authorization header required"}), 401

        if not auth_service.logout(token):
            return jsonify({"error": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    """
    Current user profile with tenant context.

    The client calls this on start-up to restore a session.
    """
    user = g.current_user
    tenant = db.session.get(Tenant, g.tenant_id)
    branches = get_tenant_branches(g.tenant_id) if user.role == "owner" else []
    return jsonify({
        "user": user.to_dict(),
        "tenant": tenant.to_dict() if tenant else None,
        "tenant_id": g.tenant_id,
        "branch_id": g.branch_id,
        "branches": [b.to_dict() for b in branches],
        "session": g.session_context.session.to_dict(),
    }), 200


@auth_bp.get("/route-access")
def route_access_route():
    """
    Evaluate the client route guard for ?path=.

    Works with or without a token: an anonymous caller is redirected to
    /login for every protected path.
    """
    path = request.args.get("path")
    if not path:
        return jsonify({"error": "path required"}), 400

    user = None
    token = _bearer_token()
    if token:
        context = session_service.validate_session(token)
        user = context.user if context else None

    redirect = permissions.resolve_route_access(path, user)
    return jsonify({
        "path": path,
        "allowed": redirect is None,
        "redirect": redirect,
        "roles": list(permissions.roles_for_path(path) or ()),
    }), 200


@auth_bp.post("/tenants")
def create_tenant_route():
    """
    Create a tenant with its owner and first branch.

    Body: name, email, password, optional code, branch_name, first_name, last_name.
    """
    try:
        data = request.get_json(silent=True) or {}
        name = data.get("name")
        email = data.get("email")
        password = data.get("password")

        if not all([name, email, password]):
            return jsonify({"error": "name, email and password required"}), 400

        try:
            tenant, owner, branch = auth_service.create_tenant(
                name,
                email,
                password,
                code=data.get("code"),
                branch_name=data.get("branch_name") or "Main Branch",
                owner_first_name=data.get("first_name") or "Admin",
                owner_last_name=data.get("last_name") or "User",
            )
        except PasswordValidationError as e:
            return jsonify({"error": str(e)}), 400
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        return jsonify({
            "tenant": tenant.to_dict(),
            "owner": owner.to_dict(),
            "branch": branch.to_dict(),
        }), 201

    except Exception:
        current_app.logger.exception("Failed to create tenant")
        return jsonify({"error": "Internal server error"}), 500
