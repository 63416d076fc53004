"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

WHY: Centralize tenant validation logic for reuse across services and routes.
Every request is scoped to a tenant and a branch, and cross-tenant access
must be explicitly denied.

SECURITY INVARIANTS:
1. Every authenticated request has g.tenant_id set
2. Branch IDs from client input are validated against g.tenant_id
3. Queries touching branch-owned data filter by tenant_id AND branch_id
4. Cross-tenant access attempts are logged as security events

Services never read flask.g themselves: routes build a Scope with
current_scope() and pass it down explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import g

from ..extensions import db
from ..models import Branch, Tenant
from .security_service import log_request_event


class TenantAccessError(Exception):
    """Raised when cross-tenant access is attempted."""
    pass


@dataclass(frozen=True)
class Scope:
    """Tenant/branch/user context a service call runs under."""
    tenant_id: int
    branch_id: int | None
    user_id: int | None = None

    def require_branch(self) -> int:
        if self.branch_id is None:
            raise TenantAccessError("Branch context required")
        return self.branch_id


def current_scope() -> Scope:
    """
    Build the Scope for the authenticated request.

    SECURITY: Raises TenantAccessError if tenant context is not set.
    This should never happen after @require_auth, but is a safety check.
    """
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id is None:
        raise TenantAccessError("Tenant context not established")
    user = getattr(g, "current_user", None)
    return Scope(
        tenant_id=tenant_id,
        branch_id=getattr(g, "branch_id", None),
        user_id=user.id if user is not None else None,
    )


def require_branch_in_tenant(branch_id: int, tenant_id: int) -> Branch:
    """
    Validate that a branch belongs to the specified tenant.

    SECURITY: Core tenant isolation check. Call this before any operation
    that uses a branch_id from client input.

    Raises:
        TenantAccessError if branch doesn't exist or belongs to another tenant
    """
    branch = db.session.get(Branch, branch_id)

    if not branch:
        _log_cross_tenant_attempt(f"Branch {branch_id} not found", tenant_id=tenant_id)
        raise TenantAccessError("Branch not found")

    if branch.tenant_id != tenant_id:
        _log_cross_tenant_attempt(
            f"Branch {branch_id} belongs to tenant {branch.tenant_id}, not {tenant_id}",
            tenant_id=tenant_id,
            attempted_branch_id=branch_id,
        )
        raise TenantAccessError("Branch not found")  # Don't reveal it exists in another tenant

    return branch


def resolve_branch_id(user, tenant_id: int, requested_branch_id: int | None) -> int | None:
    """
    Decide which branch a request operates on.

    - Owners are tenant-level: they may pick any branch of their tenant
      (validated) or none.
    - Everyone else is pinned to their own branch; asking for another one
      is treated as a cross-tenant access attempt.
    """
    if requested_branch_id is None:
        return user.branch_id

    if user.role == "owner":
        require_branch_in_tenant(requested_branch_id, tenant_id)
        return requested_branch_id

    if requested_branch_id != user.branch_id:
        _log_cross_tenant_attempt(
            f"User {user.id} of branch {user.branch_id} requested branch {requested_branch_id}",
            tenant_id=tenant_id,
            attempted_branch_id=requested_branch_id,
        )
        raise TenantAccessError("Branch not found")

    return requested_branch_id


def get_tenant_branches(tenant_id: int) -> list[Branch]:
    return (
        db.session.query(Branch)
        .filter_by(tenant_id=tenant_id)
        .order_by(Branch.name)
        .all()
    )


def validate_tenant_active(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)

    if not tenant:
        raise TenantAccessError("Tenant not found")

    if not tenant.is_active:
        raise TenantAccessError("Tenant is not active")

    return tenant


def scoped_query(model, scope: Scope, *, branch: bool = True):
    """
    Base query for a tenant-owned model.

    Filters by tenant_id always, and by branch_id when the model has one
    and the scope names a branch.

    Usage:
        products = scoped_query(Product, scope).filter_by(status="active").all()
    """
    query = db.session.query(model).filter(model.tenant_id == scope.tenant_id)
    if branch and scope.branch_id is not None and hasattr(model, "branch_id"):
        query = query.filter(model.branch_id == scope.branch_id)
    return query


def _log_cross_tenant_attempt(
    reason: str,
    tenant_id: int | None = None,
    attempted_branch_id: int | None = None,
) -> None:
    """
    SECURITY: Critical audit trail for detecting unauthorized access attempts.
    """
    log_request_event(
        "CROSS_TENANT_ACCESS_DENIED",
        reason,
        tenant_id=tenant_id,
        branch_id=attempted_branch_id,
    )
