"""Authentication: accounts, session tokens and the request principal.

Passwords are bcrypt-hashed; a login issues an opaque session token that is
looked up on every request. Everything downstream of this module only sees a
Principal (the authenticated user id), never the User row or the token.
"""

import functools
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.config import settings
from consenthub.core.errors import ConflictError
from consenthub.core.policy import Principal
from consenthub.dependencies import get_db
from consenthub.models.audit import ACCOUNT_ENTITY, SESSION_ENTITY
from consenthub.models.session import Session
from consenthub.models.user import User
from consenthub.services import audit_service

logger = logging.getLogger("consenthub.auth")

SESSION_TOKEN_HEADER = "X-Session-Token"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


@functools.cache
def _decoy_hash() -> str:
    # Checked against when the email is unknown, so both failures cost one bcrypt round.
    return hash_password(secrets.token_hex(16))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def principal_for(user: User) -> Principal:
    return Principal(user_id=user.id)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def register_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    ip_address: str | None = None,
) -> User:
    """Create an account. ConflictError if the email is already registered."""
    user = User(email=normalize_email(email), password_hash=hash_password(password))
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("Email already registered") from None

    await audit_service.record(
        db,
        user_id=user.id,
        event_type="auth.register",
        entity_type=ACCOUNT_ENTITY,
        entity_id=user.id,
        action="register",
        ip_address=ip_address,
    )
    logger.info("Account registered user=%s", user.id)
    return user


async def login_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    ip_address: str | None = None,
) -> Session:
    """Check credentials and open a session. 401 on any mismatch."""
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    user = result.scalar_one_or_none()
    password_ok = verify_password(password, user.password_hash if user else _decoy_hash())
    if user is None or not password_ok:
        raise _unauthorized("Invalid email or password")

    session = Session(
        user_id=user.id,
        token=secrets.token_hex(32),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=settings.session_duration_hours),
    )
    db.add(session)
    await db.flush()

    await audit_service.record(
        db,
        user_id=user.id,
        event_type="auth.login",
        entity_type=SESSION_ENTITY,
        entity_id=session.id,
        action="login",
        ip_address=ip_address,
    )
    return session


async def logout_user(
    db: AsyncSession,
    *,
    token: str | None,
    ip_address: str | None = None,
) -> bool:
    """Revoke a session. Returns False if the token was unknown or already revoked."""
    if not token:
        return False
    result = await db.execute(
        select(Session).where(Session.token == token, Session.revoked.is_(False))
    )
    session = result.scalar_one_or_none()
    if session is None:
        return False

    session.revoked = True
    await db.flush()
    await audit_service.record(
        db,
        user_id=session.user_id,
        event_type="auth.logout",
        entity_type=SESSION_ENTITY,
        entity_id=session.id,
        action="logout",
        ip_address=ip_address,
    )
    return True


async def authenticate_token(db: AsyncSession, token: str | None) -> User:
    """Resolve a session token to its user. 401 if missing, unknown, revoked or expired."""
    if not token:
        raise _unauthorized("Authentication required")

    result = await db.execute(
        select(Session, User).join(User, User.id == Session.user_id).where(Session.token == token)
    )
    row = result.one_or_none()
    if row is None or row.Session.revoked:
        raise _unauthorized("Invalid or revoked session")

    expires_at = row.Session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at < datetime.now(timezone.utc):
        raise _unauthorized("Session expired")
    return row.User


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: the user behind the X-Session-Token header.

    Also leaves the principal on request.state for the access log.
    """
    user = await authenticate_token(db, request.headers.get(SESSION_TOKEN_HEADER))
    request.state.principal = principal_for(user)
    return user


async def get_current_principal(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> Principal:
    return request.state.principal
