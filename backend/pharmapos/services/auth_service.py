# Overview: Service-layer operations for auth; password hashing, login, tenant bootstrap.

"""
Authentication Service with Multi-Tenant Support

WHY: Every action must be attributable. Uses bcrypt for secure password
hashing and validates password strength.

MULTI-TENANT: Users belong to exactly one tenant (tenant_id). Owners are
tenant-level; every other role is pinned to one branch.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, mixed case, digit and special char required
- The user row (profile) is the source of truth for authorization: a
  correct password with an inactive profile or tenant still refuses login
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt

from ..extensions import db
from ..models import ROLES, Branch, Tenant, User
from ..time_utils import utcnow
from . import session_service


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class AuthError(Exception):
    """Raised when credentials or the user profile do not permit login."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r"[A-Z]", password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r"[a-z]", password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>_\-]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    A malformed stored hash verifies as False instead of raising.
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def create_user(
    email: str,
    password: str,
    tenant_id: int,
    *,
    role: str = "staff",
    branch_id: int | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    subscription_status: str = "active",
    commit: bool = True,
) -> User:
    """
    Create new user with bcrypt password hashing.

    Owners may omit branch_id; every other role needs a branch of the same
    tenant.

    Raises:
        ValueError: tenant/branch invalid, role unknown or email taken
        PasswordValidationError: password doesn't meet requirements
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        raise ValueError("Tenant not found")
    if not tenant.is_active:
        raise ValueError("Tenant is not active")

    if branch_id is not None:
        branch = db.session.get(Branch, branch_id)
        if not branch:
            raise ValueError("Branch not found")
        if branch.tenant_id != tenant_id:
            raise ValueError("Branch does not belong to this tenant")
    elif role != "owner":
        raise ValueError("Branch is required for non-owner users")

    email = _normalize_email(email)
    if not email:
        raise ValueError("Email is required")

    if db.session.query(User).filter_by(email=email).first():
        raise ValueError("Email already exists")

    user = User(
        tenant_id=tenant_id,
        branch_id=branch_id,
        email=email,
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(password),
        role=role,
        subscription_status=subscription_status,
    )

    db.session.add(user)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Check credentials only.

    Returns the User whose password matches, or None. Profile and tenant
    validation is done by login().
    """
    user = db.session.query(User).filter_by(email=_normalize_email(email)).first()
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def login(
    email: str,
    password: str,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[User, str]:
    """
    Credential exchange followed by profile validation.

    Returns (user, plaintext_token). Raises AuthError when the credentials
    are wrong, the profile is deactivated, or the tenant is inactive; the
    message never says which of the credentials was wrong.
    """
    user = authenticate(email, password)
    if user is None:
        raise AuthError("Invalid credentials")

    if not user.is_active:
        raise AuthError("User profile is not active", {"reason": "profile_inactive"})

    tenant = db.session.get(Tenant, user.tenant_id) if user.tenant_id else None
    if tenant is None or not tenant.is_active:
        raise AuthError("User profile is not active", {"reason": "tenant_inactive"})

    user.last_login_at = utcnow()
    db.session.commit()

    try:
        _session, token = session_service.create_session(
            user.id, user_agent=user_agent, ip_address=ip_address
        )
    except session_service.SessionError as exc:
        raise AuthError(str(exc)) from exc

    return user, token


def logout(token: str) -> bool:
    return session_service.revoke_session(token, reason="User logout")


def create_tenant(
    name: str,
    owner_email: str,
    owner_password: str,
    *,
    code: str | None = None,
    branch_name: str = "Main Branch",
    owner_first_name: str = "Admin",
    owner_last_name: str = "User",
) -> tuple[Tenant, User, Branch]:
    """
    Bootstrap a tenant: tenant row, owner profile and first branch.

    WHY one transaction: a failure at any step (weak password, duplicate
    email) must not leave an orphan tenant behind.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Tenant name is required")

    # Fail before any insert
    validate_password_strength(owner_password)
    if db.session.query(User).filter_by(email=_normalize_email(owner_email)).first():
        raise ValueError("Email already exists")

    try:
        tenant = Tenant(name=name, code=code)
        db.session.add(tenant)
        db.session.flush()

        branch = Branch(tenant_id=tenant.id, name=branch_name, code="MAIN")
        db.session.add(branch)
        db.session.flush()

        owner = create_user(
            owner_email,
            owner_password,
            tenant.id,
            role="owner",
            first_name=owner_first_name,
            last_name=owner_last_name,
            commit=False,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return tenant, owner, branch
