# Overview: Service-layer operations for branches; tenant-level create, update, deactivate.

"""
Branch management for tenant owners.

MULTI-TENANT: Every call takes the owner's tenant_id; a branch id from
another tenant behaves exactly like a missing one.

Branches are never deleted: sales, stock and users hang off them.
Deactivating keeps the history readable but refuses further logins into it
(see deactivate_branch).
"""

from __future__ import annotations

from ..extensions import db
from ..models import Branch, User
from ..validation import ConflictError, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .listing import like_pattern

BRANCH_FIELDS = ("name", "code", "address", "phone")


class BranchError(Exception):
    """Raised when a branch operation is not allowed."""
    pass


def _clean(payload: dict, *, partial: bool) -> dict:
    patch = {}
    for key in BRANCH_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
        value = (value or "").strip() or None
        patch[key] = value.upper() if key == "code" and value else value

    if "name" in patch and patch["name"] is None:
        raise ValidationError("name is required")
    if not partial and "name" not in patch:
        raise ValidationError("name is required")
    return patch


def _check_unique(tenant_id: int, patch: dict, exclude_id: int | None = None) -> None:
    for key in ("name", "code"):
        value = patch.get(key)
        if value is None:
            continue
        query = db.session.query(Branch.id).filter(
            Branch.tenant_id == tenant_id,
            getattr(Branch, key) == value,
        )
        if exclude_id is not None:
            query = query.filter(Branch.id != exclude_id)
        if query.first():
            raise ConflictError(f"Branch {key} '{value}' already exists")


def list_branches(tenant_id: int, *, search: str | None = None, include_inactive: bool = True) -> list[dict]:
    """Branches of the tenant with their user counts, by name."""
    query = db.session.query(Branch).filter(Branch.tenant_id == tenant_id)
    if search:
        pattern = like_pattern(search)
        query = query.filter(db.or_(
            Branch.name.ilike(pattern, escape="\\"),
            Branch.code.ilike(pattern, escape="\\"),
        ))
    if not include_inactive:
        query = query.filter(Branch.is_active.is_(True))

    counts = dict(
        db.session.query(User.branch_id, db.func.count(User.id))
        .filter(User.tenant_id == tenant_id, User.is_active.is_(True))
        .group_by(User.branch_id)
        .all()
    )

    rows = []
    for branch in query.order_by(Branch.name).all():
        data = branch.to_dict()
        data["user_count"] = counts.get(branch.id, 0)
        rows.append(data)
    return rows


def get_branch(branch_id: int, tenant_id: int) -> Branch | None:
    return db.session.query(Branch).filter_by(id=branch_id, tenant_id=tenant_id).first()


def create_branch(tenant_id: int, payload: dict) -> Branch:
    """
    Create a branch in the tenant.

    Raises ValidationError for a missing name, ConflictError when the name
    or code is already used inside the tenant.
    """
    patch = _clean(payload, partial=False)
    _check_unique(tenant_id, patch)

    branch = Branch(tenant_id=tenant_id, **patch)
    db.session.add(branch)
    db.session.commit()
    return branch


def update_branch(branch_id: int, tenant_id: int, payload: dict) -> Branch | None:
    patch = _clean(payload, partial=True)

    def _op():
        branch = lock_for_update(
            db.session.query(Branch).filter_by(id=branch_id, tenant_id=tenant_id)
        ).first()
        if branch is None:
            return None
        _check_unique(tenant_id, patch, exclude_id=branch.id)
        for key, value in patch.items():
            setattr(branch, key, value)
        db.session.commit()
        return branch

    return run_with_retry(_op)


def set_branch_active(branch_id: int, tenant_id: int, active: bool) -> Branch | None:
    """
    Activate or deactivate a branch.

    A tenant keeps at least one active branch; deactivating the last one
    raises BranchError.
    """
    def _op():
        branch = lock_for_update(
            db.session.query(Branch).filter_by(id=branch_id, tenant_id=tenant_id)
        ).first()
        if branch is None:
            return None
        if not active and branch.is_active:
            others = db.session.query(Branch.id).filter(
                Branch.tenant_id == tenant_id,
                Branch.id != branch.id,
                Branch.is_active.is_(True),
            ).first()
            if others is None:
                raise BranchError("Cannot deactivate the only active branch")
        branch.is_active = active
        db.session.commit()
        return branch

    return run_with_retry(_op)
