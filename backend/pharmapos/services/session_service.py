# Overview: Service-layer operations for session tokens; issue, validate, revoke.

"""
Session Token Management Service with Multi-Tenant Support

WHY: Secure session management with automatic timeout and revocation.
Tokens are cryptographically secure, hashed in database, and time-limited.

MULTI-TENANT: Sessions capture tenant_id and branch_id at creation time.
This establishes the tenant context for every authenticated request
without repeated database lookups.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute timeout (SESSION_ABSOLUTE_TIMEOUT_HOURS, default 24h)
- Idle timeout (SESSION_IDLE_TIMEOUT_HOURS, default 2h)
- Revocable on logout or security events
- A session whose profile row has vanished is revoked on next use
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Branch, SessionToken, Tenant, User
from ..time_utils import utcnow


DEFAULT_ABSOLUTE_TIMEOUT_HOURS = 24
DEFAULT_IDLE_TIMEOUT_HOURS = 2
REVOKED_RETENTION = timedelta(days=30)


class SessionError(Exception):
    """Raised when a session cannot be issued for a user."""
    pass


@dataclass
class SessionContext:
    """
    Complete session context returned by validate_session.

    MULTI-TENANT: Contains both user identity and tenant context.
    All fields are set from the immutable session record.
    """
    user: User
    session: SessionToken
    tenant_id: int
    branch_id: int | None  # None for tenant-level users (owners)


def _absolute_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get(
        "SESSION_ABSOLUTE_TIMEOUT_HOURS", DEFAULT_ABSOLUTE_TIMEOUT_HOURS
    ))


def _idle_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get(
        "SESSION_IDLE_TIMEOUT_HOURS", DEFAULT_IDLE_TIMEOUT_HOURS
    ))


def generate_token() -> str:
    """
    Generate cryptographically secure random token.

    Returns 64-character hex string (32 bytes of entropy).
    This is the plaintext token sent to client (never stored).
    """
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    WHY SHA-256 not bcrypt: Tokens are already high-entropy (unlike passwords).
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Create new session token for user with tenant context.

    Returns (session_record, plaintext_token).
    Client receives plaintext_token, database stores only the hash.

    Raises SessionError if the user has no tenant, or the tenant or the
    user's branch is inactive.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise SessionError("User not found")

    if not user.tenant_id:
        raise SessionError("User must belong to a tenant")

    tenant = db.session.get(Tenant, user.tenant_id)
    if not tenant or not tenant.is_active:
        raise SessionError("Tenant is not active")

    if user.branch_id is not None:
        branch = db.session.get(Branch, user.branch_id)
        if not branch or not branch.is_active:
            raise SessionError("Branch is not active")

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        user_id=user.id,
        tenant_id=user.tenant_id,
        branch_id=user.branch_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=user_agent,
        ip_address=ip_address,
        is_revoked=False,
    )

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    """
    Validate session token and return SessionContext if valid.

    Returns None if:
    - Token is invalid, expired, or revoked
    - The user's profile row no longer exists (session is revoked)
    - User account is deactivated
    - Tenant is deactivated
    - The session's branch is deactivated

    Updates last_used_at on successful validation (activity tracking).
    """
    now = utcnow()

    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return None

    if session.expires_at < now:
        return None

    if now - session.last_used_at > _idle_timeout():
        _revoke(session, "Idle timeout")
        return None

    user = session.user

    # An identity without a profile cannot be authorized for anything
    if user is None:
        _revoke(session, "Profile missing")
        return None

    if not user.is_active:
        _revoke(session, "User account deactivated")
        return None

    tenant = db.session.get(Tenant, session.tenant_id)
    if not tenant or not tenant.is_active:
        _revoke(session, "Tenant deactivated")
        return None

    if session.branch_id is not None:
        branch = db.session.get(Branch, session.branch_id)
        if not branch or not branch.is_active:
            _revoke(session, "Branch deactivated")
            return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(
        user=user,
        session=session,
        tenant_id=session.tenant_id,
        branch_id=session.branch_id,
    )


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """
    Revoke session token.

    Returns True if session was revoked, False if not found.
    """
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return False

    _revoke(session, reason)
    return True


def revoke_all_user_sessions(user_id: int, reason: str = "All sessions revoked") -> int:
    """
    Revoke every active session of a user.

    Used when an account is deactivated. Returns count of sessions revoked.
    """
    count = db.session.query(SessionToken).filter_by(
        user_id=user_id,
        is_revoked=False,
    ).update({
        "is_revoked": True,
        "revoked_at": utcnow(),
        "revoked_reason": reason,
    })

    db.session.commit()
    return count


def cleanup_expired_sessions() -> int:
    """
    Delete expired and revoked sessions older than 30 days.

    Returns count of sessions deleted. Run periodically via
    `flask maintenance cleanup-sessions`.
    """
    now = utcnow()
    deleted = db.session.query(SessionToken).filter(
        db.or_(
            SessionToken.expires_at < now,
            SessionToken.is_revoked.is_(True),
        ),
        SessionToken.created_at < now - REVOKED_RETENTION,
    ).delete(synchronize_session=False)

    db.session.commit()
    return deleted
