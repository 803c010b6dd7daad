"""Client for the external document-processing service.

Requests are authenticated with the caller's bridging token.  The service
answers JSON; any non-2xx response is surfaced as :class:`UpstreamError`
with the upstream status and body so routes can pass both through.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests
import structlog

from kebilo.config import AppSettings
from kebilo.security import DOCUMENT_SERVICE_CALLS_TOTAL

logger = structlog.get_logger(__name__)

ALLOWED_EXTENSIONS = (".pdf", ".docx", ".jpg", ".jpeg", ".png")
MAX_FILE_SIZE = 40 * 1024 * 1024
PAYMENT_REQUIRED_MARKERS = (
    "limit exceeded",
    "subscription inactive",
    "upgrade your plan",
    "no active subscription",
)


class UpstreamError(Exception):
    """Raised when the document service answers with an error status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Document service returned {status_code}")
        self.status_code = status_code
        self.body = body

    @property
    def message(self) -> str:
        """Best-effort error message from a JSON ``detail``/``error`` body."""

        try:
            payload = json.loads(self.body)
        except ValueError:
            return self.body
        if isinstance(payload, Mapping):
            detail = payload.get("detail") or payload.get("error") or payload.get("message")
            if isinstance(detail, Mapping):
                detail = detail.get("message") or detail.get("error")
            if detail:
                return str(detail)
        return self.body

    @property
    def payment_required(self) -> bool:
        if self.status_code not in (400, 402):
            return False
        lowered = self.message.lower()
        return any(marker in lowered for marker in PAYMENT_REQUIRED_MARKERS)


@dataclass
class UploadFile:
    filename: str
    content: bytes
    content_type: Optional[str] = None


def validate_upload(filename: str, size: int) -> None:
    """Raise ``ValueError`` when *filename* may not be sent for extraction."""

    extension = os.path.splitext(filename or "")[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type for {filename}. Allowed: {', '.join(ALLOWED_EXTENSIONS)}"
        )
    if size > MAX_FILE_SIZE:
        raise ValueError(f"{filename} exceeds the 40MB limit")


def _base_url(settings: AppSettings) -> str:
    if not settings.python_api_url:
        raise RuntimeError("Python API URL not configured")
    return settings.python_api_url


def _headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _record(operation: str, outcome: str) -> None:
    DOCUMENT_SERVICE_CALLS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def fetch_document(settings: AppSettings, token: str, params: Mapping[str, Optional[str]]) -> Any:
    """Fetch an aggregated patient document from the processing service."""

    url = f"{_base_url(settings)}/api/documents/document"
    query = {key: value for key, value in params.items() if value}
    try:
        response = requests.get(
            url,
            params=query,
            headers={**_headers(token), "Content-Type": "application/json"},
            timeout=settings.python_api_timeout,
        )
    except requests.RequestException:
        _record("get_document", "network_error")
        logger.exception("document_proxy_failed", operation="get_document")
        raise
    if not response.ok:
        _record("get_document", "upstream_error")
        logger.warning("document_proxy_upstream_error", operation="get_document", status=response.status_code)
        raise UpstreamError(response.status_code, response.text)
    _record("get_document", "success")
    return response.json()


def upload_documents(
    settings: AppSettings,
    token: str,
    files: Sequence[UploadFile],
    *,
    mode: str,
    physician_id: str,
    user_id: str,
) -> Any:
    """Forward *files* to the extraction endpoint as multipart ``documents``."""

    for item in files:
        validate_upload(item.filename, len(item.content))

    url = f"{_base_url(settings)}/api/documents/extract-documents"
    multipart: List[Tuple[str, Tuple[str, bytes, str]]] = [
        ("documents", (item.filename, item.content, item.content_type or "application/octet-stream"))
        for item in files
    ]
    try:
        response = requests.post(
            url,
            params={"physicianId": physician_id, "userId": user_id},
            headers=_headers(token),
            data={"mode": mode},
            files=multipart,
            timeout=settings.python_api_timeout,
        )
    except requests.RequestException:
        _record("upload", "network_error")
        logger.exception("document_proxy_failed", operation="upload")
        raise
    if not response.ok:
        _record("upload", "upstream_error")
        logger.warning("document_proxy_upstream_error", operation="upload", status=response.status_code)
        raise UpstreamError(response.status_code, response.text)
    _record("upload", "success")
    payload = response.json()
    logger.info(
        "documents_uploaded",
        file_count=len(files),
        task_id=payload.get("task_id") if isinstance(payload, Mapping) else None,
    )
    return payload


__all__ = [
    "ALLOWED_EXTENSIONS",
    "MAX_FILE_SIZE",
    "UploadFile",
    "UpstreamError",
    "fetch_document",
    "upload_documents",
    "validate_upload",
]
