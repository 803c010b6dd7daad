"""Application settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Tuple

DEFAULT_WORKSPACE_DOMAIN = "doclatch.com"
DEFAULT_SESSION_MAX_AGE_DAYS = 30


def _get_str_env(*names: str) -> Optional[str]:
    for name in names:
        raw = os.getenv(name)
        if raw is not None and raw.strip():
            return raw.strip()
    return None


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


@dataclass(frozen=True)
class AppSettings:
    """Secrets and collaborator endpoints used by the API."""

    session_secret: Optional[str] = None
    session_max_age_days: int = DEFAULT_SESSION_MAX_AGE_DAYS
    intake_jwt_secret: Optional[str] = None
    python_api_jwt_secret: Optional[str] = None
    encryption_secret: Optional[str] = None
    python_api_url: Optional[str] = None
    python_api_timeout: float = 30.0
    base_url: str = "http://localhost:3000"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    google_workspace_domain: str = DEFAULT_WORKSPACE_DOMAIN
    google_admin_email: Optional[str] = None
    google_service_account_file: Optional[str] = None
    progress_service_token: Optional[str] = None
    cors_allow_origins: Tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"

    @property
    def admin_email(self) -> str:
        return self.google_admin_email or f"admin@{self.google_workspace_domain}"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the active application settings derived from the environment."""

    origins = _get_str_env("CORS_ALLOW_ORIGINS") or ""
    python_api_url = _get_str_env("PYTHON_API_URL")
    return AppSettings(
        session_secret=_get_str_env("SESSION_SECRET", "NEXTAUTH_SECRET"),
        session_max_age_days=_get_int_env("SESSION_MAX_AGE_DAYS", DEFAULT_SESSION_MAX_AGE_DAYS),
        intake_jwt_secret=_get_str_env("JWT_SECRET"),
        python_api_jwt_secret=_get_str_env("PYTHON_API_JWT_SECRET", "JWT_SECRET"),
        encryption_secret=_get_str_env("ENCRYPTION_SECRET"),
        python_api_url=python_api_url.rstrip("/") if python_api_url else None,
        python_api_timeout=_get_float_env("PYTHON_API_TIMEOUT", 30.0),
        base_url=(_get_str_env("BASE_URL") or "http://localhost:3000").rstrip("/"),
        stripe_secret_key=_get_str_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_get_str_env("STRIPE_WEBHOOK_SECRET"),
        google_workspace_domain=(
            _get_str_env("GOOGLE_WORKSPACE_DOMAIN") or DEFAULT_WORKSPACE_DOMAIN
        ).lower(),
        google_admin_email=_get_str_env("GOOGLE_ADMIN_EMAIL"),
        google_service_account_file=_get_str_env(
            "GOOGLE_SERVICE_ACCOUNT_FILE", "GOOGLE_APPLICATION_CREDENTIALS"
        ),
        progress_service_token=_get_str_env("PROGRESS_SERVICE_TOKEN"),
        cors_allow_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        log_level=(_get_str_env("LOG_LEVEL") or "INFO").upper(),
    )


__all__ = ["AppSettings", "get_settings"]
