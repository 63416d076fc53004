# Overview: Flask API routes for tenant owners; branches, users and the dashboard.

# backend/pharmapos/routes/tenant.py
"""
Tenant administration routes (owner only).

MULTI-TENANT: Everything here is tenant-level. Branch and user ids from
another tenant are reported as not found.

SECURITY:
- Owners cannot deactivate or demote themselves
- Deactivating a user revokes their sessions at once (USER_DEACTIVATED event)
"""
from flask import Blueprint, g, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..permissions import OWNER
from ..services import branch_service, report_service, user_service
from ..services.branch_service import BranchError
from ..services.security_service import log_request_event
from ..services.user_service import UserError
from ..validation import ConflictError, ValidationError

tenant_bp = Blueprint("tenant", __name__, url_prefix="/api/tenant")


def _include_inactive() -> bool:
    return request.args.get("include_inactive", "false").lower() == "true"


@tenant_bp.get("/overview")
@require_auth
@require_role(*OWNER)
def overview_route():
    """Tenant dashboard: totals, top sellers and per-branch figures."""
    try:
        return jsonify({"overview": report_service.tenant_overview(g.tenant_id)}), 200
    except Exception:
        current_app.logger.exception("Failed to compute tenant overview")
        return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------

@tenant_bp.get("/branches")
@require_auth
@require_role(*OWNER)
def list_branches_route():
    """Query params: search, include_inactive (default true)."""
    branches = branch_service.list_branches(
        g.tenant_id,
        search=request.args.get("search"),
        include_inactive=request.args.get("include_inactive", "true").lower() == "true",
    )
    return jsonify({"items": branches, "count": len(branches)}), 200


@tenant_bp.get("/branches/<int:branch_id>")
@require_auth
@require_role(*OWNER)
def get_branch_route(branch_id: int):
    branch = branch_service.get_branch(branch_id, g.tenant_id)
    if branch is None:
        return jsonify({"error": "Branch not found"}), 404
    return jsonify({"branch": branch.to_dict()}), 200


@tenant_bp.post("/branches")
@require_auth
@require_role(*OWNER)
def create_branch_route():
    """Body: name (required), code, address, phone."""
    try:
        branch = branch_service.create_branch(g.tenant_id, request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"branch": branch.to_dict()}), 201


@tenant_bp.put("/branches/<int:branch_id>")
@require_auth
@require_role(*OWNER)
def update_branch_route(branch_id: int):
    try:
        branch = branch_service.update_branch(branch_id, g.tenant_id, request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    if branch is None:
        return jsonify({"error": "Branch not found"}), 404
    return jsonify({"branch": branch.to_dict()}), 200


def _set_branch_active(branch_id: int, active: bool):
    try:
        branch = branch_service.set_branch_active(branch_id, g.tenant_id, active)
    except BranchError as e:
        return jsonify({"error": str(e)}), 400
    if branch is None:
        return jsonify({"error": "Branch not found"}), 404
    return jsonify({"branch": branch.to_dict()}), 200


@tenant_bp.post("/branches/<int:branch_id>/deactivate")
@require_auth
@require_role(*OWNER)
def deactivate_branch_route(branch_id: int):
    """Staff pinned to the branch lose their sessions on next use."""
    return _set_branch_active(branch_id, False)


@tenant_bp.post("/branches/<int:branch_id>/reactivate")
@require_auth
@require_role(*OWNER)
def reactivate_branch_route(branch_id: int):
    return _set_branch_active(branch_id, True)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@tenant_bp.get("/users")
@require_auth
@require_role(*OWNER)
def list_users_route():
    """
    Query params:
    - include_inactive: bool (default false)
    - branch_id, role, search, page, per_page
    """
    result = user_service.list_users(
        g.tenant_id,
        branch_id=request.args.get("branch_id", type=int),
        role=request.args.get("role"),
        search=request.args.get("search"),
        include_inactive=_include_inactive(),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@tenant_bp.get("/users/<int:user_id>")
@require_auth
@require_role(*OWNER)
def get_user_route(user_id: int):
    user = user_service.get_user(user_id, g.tenant_id)
    if user is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify({"user": user.to_dict()}), 200


@tenant_bp.post("/users")
@require_auth
@require_role(*OWNER)
def create_user_route():
    """Body: email, password, role, branch_id (not for owners), first_name, last_name."""
    try:
        user = user_service.create_user(g.tenant_id, request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    log_request_event("USER_CREATED", f"Created {user.role} {user.email}", success=True)
    return jsonify({"user": user.to_dict()}), 201


@tenant_bp.patch("/users/<int:user_id>")
@require_auth
@require_role(*OWNER)
def update_user_route(user_id: int):
    """Body (all optional): first_name, last_name, role, branch_id, subscription_status."""
    try:
        user = user_service.update_user(
            user_id,
            g.tenant_id,
            request.get_json(silent=True) or {},
            acting_user_id=g.current_user.id,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except UserError as e:
        return jsonify({"error": str(e)}), 400
    if user is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify({"user": user.to_dict()}), 200


@tenant_bp.post("/users/<int:user_id>/deactivate")
@require_auth
@require_role(*OWNER)
def deactivate_user_route(user_id: int):
    """
    Deactivate a user account.

    The user is logged out everywhere and cannot log back in.
    """
    try:
        result = user_service.deactivate_user(user_id, g.tenant_id, acting_user_id=g.current_user.id)
    except UserError as e:
        return jsonify({"error": str(e)}), 400
    if result is None:
        return jsonify({"error": "User not found"}), 404

    user, revoked = result
    log_request_event(
        "USER_DEACTIVATED",
        f"Deactivated {user.email}; revoked {revoked} sessions",
        success=True,
    )
    return jsonify({"user": user.to_dict(), "sessions_revoked": revoked}), 200


@tenant_bp.post("/users/<int:user_id>/reactivate")
@require_auth
@require_role(*OWNER)
def reactivate_user_route(user_id: int):
    try:
        user = user_service.reactivate_user(user_id, g.tenant_id)
    except UserError as e:
        return jsonify({"error": str(e)}), 400
    if user is None:
        return jsonify({"error": "User not found"}), 404

    log_request_event("USER_REACTIVATED", f"Reactivated {user.email}", success=True)
    return jsonify({"user": user.to_dict()}), 200
