# Overview: Service-layer operations for tenant users; list, create, update, deactivate.

"""
User management for tenant owners.

MULTI-TENANT: Users are only ever looked up by (id, tenant_id). A user id
from another tenant is reported as not found.

ROLE/BRANCH RULE: owners are tenant-level (branch_id NULL), every other
role is pinned to one active branch of the same tenant. Changing a role
re-applies the rule.

SECURITY:
- An owner cannot deactivate or demote their own account
- Deactivation revokes every open session immediately
"""

from __future__ import annotations

from ..extensions import db
from ..models import ROLES, SUBSCRIPTION_STATUSES, Branch, User
from ..validation import ConflictError, ValidationError, coerce_int
from . import session_service
from .auth_service import PasswordValidationError, create_user as _create_user
from .concurrency import lock_for_update, run_with_retry
from .listing import like_pattern, paginate

NAME_FIELDS = ("first_name", "last_name")


class UserError(Exception):
    """Raised when a user change is not allowed."""
    pass


def _user_row(user: User) -> dict:
    data = user.to_dict()
    data["full_name"] = user.full_name
    data["branch_name"] = user.branch.name if user.branch else None
    return data


def _choice(value, choices: tuple[str, ...], field: str) -> str:
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}")
    return value


def _branch_for_role(tenant_id: int, role: str, branch_id) -> int | None:
    if role == "owner":
        return None
    if branch_id in (None, ""):
        raise ValidationError("branch_id is required for non-owner users")
    branch_id = coerce_int(branch_id, "branch_id")
    branch = db.session.query(Branch).filter_by(id=branch_id, tenant_id=tenant_id).first()
    if branch is None:
        raise ValidationError("Branch not found")
    if not branch.is_active:
        raise ValidationError("Branch is not active")
    return branch.id


def _name(value, field: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return (value or "").strip() or None


def get_user(user_id: int, tenant_id: int) -> User | None:
    return db.session.query(User).filter_by(id=user_id, tenant_id=tenant_id).first()


def list_users(
    tenant_id: int,
    *,
    branch_id: int | None = None,
    role: str | None = None,
    search: str | None = None,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Users of the tenant by email; inactive users only when asked for."""
    query = db.session.query(User).filter(User.tenant_id == tenant_id)

    if not include_inactive:
        query = query.filter(User.is_active.is_(True))
    if branch_id is not None:
        query = query.filter(User.branch_id == branch_id)
    if role and role != "all":
        query = query.filter(User.role == role)
    if search:
        pattern = like_pattern(search)
        query = query.filter(db.or_(
            User.email.ilike(pattern, escape="\\"),
            User.first_name.ilike(pattern, escape="\\"),
            User.last_name.ilike(pattern, escape="\\"),
        ))

    return paginate(query.order_by(User.email), page, per_page, serialize=_user_row)


def create_user(tenant_id: int, payload: dict) -> User:
    """
    Create a user inside the tenant.

    Body keys: email, password, role (default "staff"), branch_id (required
    unless the role is owner), first_name, last_name.

    Raises ValidationError for bad input or a weak password, ConflictError
    when the email is taken.
    """
    email = payload.get("email")
    password = payload.get("password")
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("email is required")
    if not isinstance(password, str) or not password:
        raise ValidationError("password is required")

    role = _choice(payload.get("role") or "staff", ROLES, "role")
    branch_id = _branch_for_role(tenant_id, role, payload.get("branch_id"))

    if db.session.query(User.id).filter_by(email=email.strip().lower()).first():
        raise ConflictError("Email already exists")

    try:
        return _create_user(
            email,
            password,
            tenant_id,
            role=role,
            branch_id=branch_id,
            first_name=_name(payload.get("first_name"), "first_name"),
            last_name=_name(payload.get("last_name"), "last_name"),
        )
    except PasswordValidationError as exc:
        raise ValidationError(str(exc)) from exc
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def update_user(user_id: int, tenant_id: int, payload: dict, *, acting_user_id: int | None = None) -> User | None:
    """
    Apply a partial update: first_name, last_name, role, branch_id,
    subscription_status.

    Returns None when the user is not in the tenant.
    """
    def _op():
        user = lock_for_update(
            db.session.query(User).filter_by(id=user_id, tenant_id=tenant_id)
        ).first()
        if user is None:
            return None

        for key in NAME_FIELDS:
            if key in payload:
                setattr(user, key, _name(payload[key], key))

        if "subscription_status" in payload:
            user.subscription_status = _choice(
                payload["subscription_status"], SUBSCRIPTION_STATUSES, "subscription_status"
            )

        if "role" in payload or "branch_id" in payload:
            role = _choice(payload.get("role", user.role), ROLES, "role")
            if user.id == acting_user_id and role != user.role:
                raise UserError("Cannot change your own role")
            user.role = role
            user.branch_id = _branch_for_role(tenant_id, role, payload.get("branch_id", user.branch_id))

        db.session.commit()
        return user

    return run_with_retry(_op)


def deactivate_user(user_id: int, tenant_id: int, *, acting_user_id: int | None = None) -> tuple[User, int] | None:
    """
    Deactivate a user and revoke all of their sessions.

    Returns (user, sessions_revoked), or None when the user is not in the
    tenant. Raises UserError for the caller's own account or a user that
    is already inactive.
    """
    user = get_user(user_id, tenant_id)
    if user is None:
        return None
    if user.id == acting_user_id:
        raise UserError("Cannot deactivate your own account")
    if not user.is_active:
        raise UserError("User is already deactivated")

    user.is_active = False
    db.session.commit()

    revoked = session_service.revoke_all_user_sessions(user.id, reason="Account deactivated by owner")
    return user, revoked


def reactivate_user(user_id: int, tenant_id: int) -> User | None:
    user = get_user(user_id, tenant_id)
    if user is None:
        return None
    if user.is_active:
        raise UserError("User is already active")

    user.is_active = True
    db.session.commit()
    return user
