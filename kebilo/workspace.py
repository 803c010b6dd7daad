"""Google Workspace e-mail aliases through the Admin SDK directory API.

The service account needs domain-wide delegation for the scopes below and
impersonates ``GOOGLE_ADMIN_EMAIL`` (a super admin of the workspace).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from google.auth.exceptions import RefreshError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from kebilo.auth import EMAIL_RE
from kebilo.config import AppSettings

logger = structlog.get_logger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/admin.directory.user",
    "https://www.googleapis.com/auth/admin.directory.user.alias",
]

DELEGATION_STEPS = [
    "1. Go to https://admin.google.com/",
    "2. Navigate to: Security > API Controls > Domain-wide Delegation",
    "3. Click 'Add new'",
    "4. Enter the service account Client ID",
    "5. Add OAuth scopes:",
    *[f"   - {scope}" for scope in SCOPES],
    "6. Click 'Authorize'",
]


class WorkspaceError(Exception):
    """A directory API failure mapped to an HTTP status and error body."""

    def __init__(self, status_code: int, error: str, details: Optional[str] = None, **extra: Any) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details
        self.extra = extra

    def as_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.error}
        if self.details:
            detail["details"] = self.details
        detail.update(self.extra)
        return detail


def build_directory_service(settings: AppSettings):
    """Return an Admin SDK directory client impersonating the workspace admin."""

    if not settings.google_service_account_file:
        raise RuntimeError("GOOGLE_SERVICE_ACCOUNT_FILE is not configured")
    credentials = service_account.Credentials.from_service_account_file(
        settings.google_service_account_file,
        scopes=SCOPES,
        subject=settings.admin_email,
    )
    return build("admin", "directory_v1", credentials=credentials, cache_discovery=False)


def _http_status(exc: Exception) -> Optional[int]:
    if isinstance(exc, HttpError):
        return int(exc.resp.status)
    return None


def validate_alias_request(email: Optional[str], alias: Optional[str], domain: str) -> None:
    if not email:
        raise WorkspaceError(400, "Email is required")
    if not alias:
        raise WorkspaceError(400, "Alias is required")
    if not EMAIL_RE.match(email):
        raise WorkspaceError(400, "Invalid email format")
    if not EMAIL_RE.match(alias):
        raise WorkspaceError(400, "Invalid alias format. Alias must be a valid email address")
    alias_domain = alias.split("@", 1)[1].lower()
    if alias_domain != domain:
        raise WorkspaceError(
            400,
            "Invalid alias domain",
            f"The alias domain ({alias_domain}) must match your Google Workspace domain ({domain}).",
        )
    email_domain = email.split("@", 1)[1].lower()
    if email_domain != domain:
        logger.warning("alias_user_outside_workspace", email_domain=email_domain, workspace_domain=domain)


def _insert_error(exc: Exception, email: str, alias: str) -> WorkspaceError:
    status = _http_status(exc)
    message = str(exc)
    if status == 404:
        return WorkspaceError(404, "User not found in Google Workspace", f"User {email} does not exist in the workspace")
    if status == 409:
        return WorkspaceError(409, "Alias already exists", f"The alias {alias} is already in use")
    if status == 403:
        return WorkspaceError(
            403,
            "Permission denied",
            "Service account does not have sufficient permissions. Please ensure domain-wide "
            "delegation is enabled in Google Admin Console.",
        )
    if "unauthorized_client" in message or "Client is unauthorized" in message:
        return WorkspaceError(
            403,
            "Domain-wide delegation not configured",
            "The service account Client ID needs to be authorized in Google Admin Console.",
            setupSteps=DELEGATION_STEPS,
        )
    if "invalid_grant" in message or "Invalid email" in message:
        return WorkspaceError(
            400,
            "Authentication or user validation failed",
            f"The user {email} may not exist in your Google Workspace, or the admin email for "
            "domain-wide delegation is incorrect.",
        )
    return WorkspaceError(500, "Failed to create alias", message or "Unknown error occurred")


def create_alias(service, email: str, alias: str) -> Dict[str, Any]:
    """Add *alias* to the workspace user *email*."""

    try:
        service.users().get(userKey=email).execute()
    except HttpError as exc:
        if _http_status(exc) == 404:
            raise WorkspaceError(
                404,
                "User not found in Google Workspace",
                f"The user {email} does not exist in your Google Workspace.",
            ) from exc
        # Permission problems surface again, with better mapping, on insert.
        logger.warning("alias_user_lookup_failed", error=str(exc))

    try:
        service.users().aliases().insert(userKey=email, body={"alias": alias}).execute()
    except (HttpError, RefreshError) as exc:
        logger.error("alias_insert_failed", error=str(exc))
        raise _insert_error(exc, email, alias) from exc

    logger.info("alias_created", alias_domain=alias.split("@", 1)[1])
    return {
        "success": True,
        "message": f"Alias {alias} successfully created for user {email}",
        "email": email,
        "alias": alias,
    }


def list_aliases(service, email: str) -> Dict[str, Any]:
    try:
        user = service.users().get(userKey=email).execute()
        response = service.users().aliases().list(userKey=email).execute()
    except (HttpError, RefreshError) as exc:
        logger.error("alias_list_failed", error=str(exc))
        if _http_status(exc) == 404:
            raise WorkspaceError(
                404, "User not found in Google Workspace", f"User {email} does not exist in the workspace"
            ) from exc
        raise WorkspaceError(500, "Failed to fetch aliases", str(exc) or "Unknown error occurred") from exc
    aliases: List[str] = [item.get("alias") for item in response.get("aliases") or []]
    return {"success": True, "email": user.get("primaryEmail") or email, "aliases": aliases}


__all__ = [
    "SCOPES",
    "WorkspaceError",
    "build_directory_service",
    "create_alias",
    "list_aliases",
    "validate_alias_request",
]
