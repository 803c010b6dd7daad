"""Shareable intake links.

An intake link is an HS256 JWT embedding the parameters of a patient's intake
form (name, DOB, visit type, language, mode, body parts, expiry and whether the
patient must authenticate).  Staff generate links from the dashboard; the
patient-facing intake page decodes them again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from kebilo.dashboard import increment_workflow_stat
from kebilo.db.models import Document, IntakeLink
from kebilo.security import hash_identifier
from kebilo.time_utils import from_epoch_seconds, parse_datetime, utc_now

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
DEFAULT_EXPIRY_DAYS = 7
NEW_PATIENT_VISIT = "New Patient"
PLACEHOLDER_CLAIM = "Not specified"


class InvalidIntakeToken(Exception):
    """Raised when an intake token cannot be verified."""


class ExpiredIntakeToken(InvalidIntakeToken):
    """Raised when an intake token is past its expiry."""


@dataclass
class LinkRequest:
    patient: str
    dob: str
    claim_number: str = ""
    visit: str = "Follow-up"
    lang: str = "en"
    mode: str = "tele"
    body: str = ""
    exp: str = "7"
    auth: str = "yes"
    physician_id: Optional[str] = None

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "LinkRequest":
        patient = (body.get("patient") or "").strip() if isinstance(body.get("patient"), str) else ""
        dob = (body.get("dob") or "").strip() if isinstance(body.get("dob"), str) else ""
        if not patient or not dob:
            raise ValueError("Patient name and date of birth are required")
        if parse_datetime(dob) is None:
            raise ValueError("Invalid date format for date of birth")
        return cls(
            patient=patient,
            dob=dob,
            claim_number=body.get("claim_number") or "",
            visit=body.get("visit") or "Follow-up",
            lang=body.get("lang") or "en",
            mode=body.get("mode") or "tele",
            body=body.get("body") or "",
            exp=str(body.get("exp") or "7"),
            auth=body.get("auth") or "yes",
            physician_id=body.get("physicianId") or None,
        )

    @property
    def expires_in_days(self) -> int:
        try:
            days = int(self.exp)
        except (TypeError, ValueError):
            return DEFAULT_EXPIRY_DAYS
        return days or DEFAULT_EXPIRY_DAYS


def issue_token(request: LinkRequest, secret: str) -> Dict[str, Any]:
    """Sign the intake token; returns the token and its claims."""

    now = utc_now()
    expires_at = int((now + timedelta(days=request.expires_in_days)).timestamp())
    claims = {
        "patient": request.patient,
        "dob": request.dob,
        "claimNumber": request.claim_number or "",
        "visit": request.visit,
        "lang": request.lang,
        "mode": request.mode,
        "body": request.body,
        "exp": expires_at,
        "auth": request.auth,
        "createdAt": now.isoformat().replace("+00:00", "Z"),
        "physicianId": request.physician_id,
    }
    return {"token": jwt.encode(claims, secret, algorithm=JWT_ALGORITHM), "claims": claims}


def _ensure_placeholder_document(session: Session, request: LinkRequest) -> None:
    claim = request.claim_number or PLACEHOLDER_CLAIM
    existing = session.execute(
        select(Document.id)
        .where(
            Document.patient_name == request.patient,
            Document.dob == request.dob,
            Document.claim_number == claim,
        )
        .limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return
    now = utc_now()
    session.add(
        Document(
            patient_name=request.patient,
            dob=request.dob,
            doi=now.date().isoformat(),
            claim_number=claim,
            status="Intake Pending",
            gcs_file_link="",
            mode="gm" if request.mode == "office" else "wc",
            report_date=now,
            physician_id=request.physician_id,
        )
    )
    session.flush()
    logger.info("intake_placeholder_document_created", extra={"patient": hash_identifier(request.patient)})


def _best_effort(session: Session, event: str, func, *args) -> None:
    """Run a side effect in a savepoint; a failure is logged and rolled back alone."""

    try:
        with session.begin_nested():
            func(*args)
    except Exception:
        logger.warning(event, exc_info=True)


def generate_link(session: Session, request: LinkRequest, secret: str) -> Dict[str, Any]:
    """Issue a token and upsert the IntakeLink for the patient.

    New patients also get a placeholder document so the intake has something
    to attach to.  Creating (not updating) a link counts towards today's
    ``intakes_created`` statistic.  Neither side effect can fail the link.
    """

    issued = issue_token(request, secret)
    token = issued["token"]
    expires_at = from_epoch_seconds(issued["claims"]["exp"])

    if request.visit == NEW_PATIENT_VISIT:
        _best_effort(session, "placeholder_document_failed", _ensure_placeholder_document, session, request)

    dob = parse_datetime(request.dob)
    link = session.execute(
        select(IntakeLink)
        .where(IntakeLink.patient_name == request.patient, IntakeLink.date_of_birth == dob)
        .limit(1)
    ).scalar_one_or_none()

    action = "updated" if link is not None else "created"
    if link is None:
        link = IntakeLink(patient_name=request.patient, date_of_birth=dob)
        session.add(link)
    link.token = token
    if request.claim_number:
        link.claim_number = request.claim_number
    link.visit_type = request.visit
    link.language = request.lang
    link.mode = request.mode
    link.body_parts = request.body
    link.expires_in_days = request.expires_in_days
    link.require_auth = request.auth == "yes"
    link.expires_at = expires_at
    if request.physician_id:
        link.physician_id = request.physician_id
    session.flush()

    if action == "created":
        _best_effort(session, "intake_stat_failed", increment_workflow_stat, session, "intakes_created")

    return {
        "token": token,
        "expiresIn": f"{request.expires_in_days} days",
        "action": action,
    }


def decode_token(token: str, secret: str) -> Dict[str, Any]:
    """Verify *token* and return its claims.

    Raises :class:`ExpiredIntakeToken` or :class:`InvalidIntakeToken`.
    """

    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise ExpiredIntakeToken("Token has expired") from exc
    except jwt.PyJWTError as exc:
        raise InvalidIntakeToken("Invalid token") from exc


def patient_data(claims: Mapping[str, Any], *, include_expiry: bool) -> Dict[str, Any]:
    data = {
        "patientName": claims.get("patient"),
        "dateOfBirth": claims.get("dob"),
        "visitType": claims.get("visit"),
        "language": claims.get("lang"),
        "mode": claims.get("mode"),
        "bodyParts": claims.get("body"),
        "claimNumber": claims.get("claimNumber") or None,
        "requireAuth": claims.get("auth"),
        "createdAt": claims.get("createdAt"),
    }
    if include_expiry:
        data["expiresIn"] = claims.get("exp")
    return data


__all__ = [
    "ExpiredIntakeToken",
    "InvalidIntakeToken",
    "LinkRequest",
    "decode_token",
    "generate_link",
    "issue_token",
    "patient_data",
]
