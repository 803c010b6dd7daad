"""Authentication helpers for the Kebilo API.

Accounts are stored in the ``users`` table and identified by e-mail.  A
successful login yields a signed session token (HS256 JWT) that carries the
user's role, the physician whose records the user may see and a bridging
token the API forwards to the document-processing service.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kebilo.config import AppSettings, get_settings
from kebilo.db.models import User, UserRole
from kebilo.time_utils import ensure_utc, utc_now

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

LOCKOUT_THRESHOLD = 5
LOCKOUT_DURATION = timedelta(minutes=15)
BRIDGING_TOKEN_TTL = timedelta(hours=12)
JWT_ALGORITHM = "HS256"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6
SIGNUP_ROLES = {role.value for role in UserRole}


class UserExistsError(ValueError):
    """Raised when an e-mail address is already registered."""


class SessionTokenError(Exception):
    """Raised when a session token is missing, malformed or expired."""


@dataclass(frozen=True)
class SessionUser:
    """Identity resolved from a session token."""

    id: str
    email: Optional[str]
    role: Optional[str]
    physician_id: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    fastapi_token: Optional[str] = None

    @property
    def is_physician(self) -> bool:
        return self.role == UserRole.PHYSICIAN.value

    @property
    def is_staff(self) -> bool:
        return self.role == UserRole.STAFF.value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "physicianId": self.physician_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
        }


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    """Verify a plaintext password against a stored hash."""

    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def normalise_email(email: str) -> str:
    return (email or "").strip().lower()


def physician_scope_for(user: User) -> Optional[str]:
    """Return the physician id whose records *user* may access."""

    if user.role == UserRole.PHYSICIAN.value:
        return user.id
    return user.physician_id


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.execute(
        select(User).where(func.lower(User.email) == normalise_email(email))
    ).scalar_one_or_none()


def register_user(
    session: Session,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: Optional[str] = None,
    physician_id: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> User:
    """Create a user account.

    Raises :class:`UserExistsError` when the e-mail is already registered and
    ``ValueError`` for malformed input.
    """

    address = normalise_email(email)
    if not EMAIL_RE.match(address):
        raise ValueError("Invalid email format")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValueError("Password must be at least 6 characters")
    if get_user_by_email(session, address) is not None:
        raise UserExistsError("User already exists with this email")

    resolved_role = role if role in SIGNUP_ROLES else UserRole.STAFF.value
    user = User(
        email=address,
        password_hash=hash_password(password),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        role=resolved_role,
        physician_id=physician_id or None,
        phone_number=phone_number or None,
    )
    session.add(user)
    session.flush()
    return user


def authenticate_user(session: Session, email: str, password: str) -> Optional[User]:
    """Validate credentials, returning the user when they match.

    Repeated failures lock the account for :data:`LOCKOUT_DURATION`.
    """

    user = get_user_by_email(session, email)
    if user is None:
        return None

    now = utc_now()
    if user.account_locked_until and ensure_utc(user.account_locked_until) > now:
        return None

    if verify_password(password, user.password_hash):
        user.failed_login_attempts = 0
        user.account_locked_until = None
        user.last_login = now
        session.flush()
        return user

    attempts = (user.failed_login_attempts or 0) + 1
    user.failed_login_attempts = attempts
    if attempts >= LOCKOUT_THRESHOLD:
        user.account_locked_until = now + LOCKOUT_DURATION
    session.flush()
    return None


def _require_secret(value: Optional[str], name: str) -> str:
    if not value:
        raise RuntimeError(f"{name} is not configured")
    return value


def create_bridging_token(user: User, settings: Optional[AppSettings] = None) -> str:
    """Return the bearer token forwarded to the document-processing service."""

    settings = settings or get_settings()
    secret = _require_secret(settings.python_api_jwt_secret, "PYTHON_API_JWT_SECRET")
    now = utc_now()
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "physicianId": physician_scope_for(user),
        "iat": now,
        "exp": now + BRIDGING_TOKEN_TTL,
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def create_session_token(user: User, settings: Optional[AppSettings] = None) -> str:
    """Return a signed session token for *user*."""

    settings = settings or get_settings()
    secret = _require_secret(settings.session_secret, "SESSION_SECRET")
    now = utc_now()
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "physicianId": physician_scope_for(user),
        "firstName": user.first_name,
        "lastName": user.last_name,
        "fastapi_token": create_bridging_token(user, settings) if settings.python_api_jwt_secret else None,
        "type": "session",
        "iat": now,
        "exp": now + timedelta(days=settings.session_max_age_days),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_session_token(token: str, settings: Optional[AppSettings] = None) -> SessionUser:
    """Decode *token* into a :class:`SessionUser`.

    Raises :class:`SessionTokenError` for invalid or expired tokens.
    """

    settings = settings or get_settings()
    secret = _require_secret(settings.session_secret, "SESSION_SECRET")
    try:
        claims: Mapping[str, Any] = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise SessionTokenError("Session expired") from exc
    except jwt.PyJWTError as exc:
        raise SessionTokenError("Invalid session token") from exc
    if claims.get("type") != "session" or not claims.get("sub"):
        raise SessionTokenError("Invalid session token")
    return SessionUser(
        id=str(claims["sub"]),
        email=claims.get("email"),
        role=claims.get("role"),
        physician_id=claims.get("physicianId"),
        first_name=claims.get("firstName"),
        last_name=claims.get("lastName"),
        fastapi_token=claims.get("fastapi_token"),
    )


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role,
        "phoneNumber": user.phone_number,
    }


__all__ = [
    "EMAIL_RE",
    "LOCKOUT_DURATION",
    "LOCKOUT_THRESHOLD",
    "SessionTokenError",
    "SessionUser",
    "UserExistsError",
    "authenticate_user",
    "create_bridging_token",
    "create_session_token",
    "decode_session_token",
    "get_user_by_email",
    "hash_password",
    "physician_scope_for",
    "pwd_context",
    "register_user",
    "serialize_user",
    "verify_password",
]
