"""Document record queries shared by the patient, duplicate and failed-document routes."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from kebilo.db.models import Document, FailDoc
from kebilo.patient_matching import PLACEHOLDER_VALUES
from kebilo.time_utils import ensure_utc, parse_datetime

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
RECENT_DOCUMENT_LIMIT = 10
FAILED_DOCUMENT_LIMIT = 10
MAX_PAGE_SIZE = 50


def _dt(value):
    return ensure_utc(value) if value is not None else None


def serialize_summary(summary) -> Optional[Dict[str, Any]]:
    if summary is None:
        return None
    return {
        "id": summary.id,
        "type": summary.type,
        "date": _dt(summary.date),
        "summary": summary.summary,
    }


def serialize_adl(adl) -> Optional[Dict[str, Any]]:
    if adl is None:
        return None
    return {
        "id": adl.id,
        "documentId": adl.document_id,
        "adlsAffected": adl.adls_affected,
        "workRestrictions": adl.work_restrictions,
        "createdAt": _dt(adl.created_at),
        "updatedAt": _dt(adl.updated_at),
    }


def serialize_document(document: Document, *, relations: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": document.id,
        "patientName": document.patient_name,
        "dob": document.dob,
        "doi": document.doi,
        "claimNumber": document.claim_number,
        "status": document.status,
        "mode": document.mode,
        "physicianId": document.physician_id,
        "fileName": document.file_name,
        "gcsFileLink": document.gcs_file_link,
        "blobPath": document.blob_path,
        "reportDate": _dt(document.report_date),
        "ur_denial_reason": document.ur_denial_reason,
        "briefSummary": document.brief_summary,
        "createdAt": _dt(document.created_at),
        "updatedAt": _dt(document.updated_at),
    }
    if relations:
        payload["documentSummary"] = serialize_summary(document.document_summary)
        payload["adl"] = serialize_adl(document.adl)
        payload["bodyPartSnapshots"] = [
            {"id": snap.id, "bodyPart": snap.body_part, "dx": snap.dx}
            for snap in document.body_part_snapshots
        ]
    return payload


def serialize_fail_doc(doc: FailDoc) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "reason": doc.reason,
        "dob": doc.dob,
        "doi": doc.doi,
        "claimNumber": doc.claim_number,
        "patientName": doc.patient_name,
        "documentText": doc.document_text,
        "physicianId": doc.physician_id,
        "gcsFileLink": doc.gcs_file_link,
        "fileName": doc.file_name,
        "fileHash": doc.file_hash,
        "blobPath": doc.blob_path,
        "summary": doc.summary,
        "createdAt": _dt(doc.created_at),
    }


# ---------------------------------------------------------------------------
# Patient-matching inputs
# ---------------------------------------------------------------------------


def duplicate_candidates(session: Session, physician_id: Optional[str], mode: Optional[str] = None) -> List[Dict[str, Any]]:
    """Documents of the physician with a real name and claim number, newest first."""

    stmt = select(Document).where(
        Document.physician_id == physician_id,
        Document.patient_name.is_not(None),
        Document.patient_name.notin_(PLACEHOLDER_VALUES),
        Document.claim_number.is_not(None),
        Document.claim_number.notin_(PLACEHOLDER_VALUES),
    )
    if mode:
        stmt = stmt.where(Document.mode == mode)
    documents = session.execute(stmt.order_by(Document.created_at.desc())).scalars()
    return [
        {
            "id": doc.id,
            "patientName": doc.patient_name,
            "dob": doc.dob,
            "doi": doc.doi,
            "claimNumber": doc.claim_number,
            "createdAt": _dt(doc.created_at),
            "fileName": doc.file_name,
            "gcsFileLink": doc.gcs_file_link,
            "blobPath": doc.blob_path,
        }
        for doc in documents
    ]


def recent_documents(
    session: Session,
    physician_id: Optional[str],
    mode: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Documents feeding the recent-patient sidebar, newest first."""

    stmt = (
        select(Document)
        .options(selectinload(Document.document_summary))
        .where(
            Document.physician_id == physician_id,
            Document.patient_name.is_not(None),
            Document.patient_name.notin_(PLACEHOLDER_VALUES),
        )
    )
    if mode:
        stmt = stmt.where(Document.mode == mode)
    if search and search.strip():
        stmt = stmt.where(Document.patient_name.ilike(f"%{search.strip()}%"))
    documents = session.execute(stmt.order_by(Document.created_at.desc())).scalars()
    return [
        {
            "id": doc.id,
            "patientName": doc.patient_name,
            "dob": doc.dob,
            "claimNumber": doc.claim_number,
            "createdAt": _dt(doc.created_at),
            "reportDate": _dt(doc.report_date),
            "mode": doc.mode,
            "documentSummary": serialize_summary(doc.document_summary),
        }
        for doc in documents
    ]


# ---------------------------------------------------------------------------
# Failed documents
# ---------------------------------------------------------------------------


def failed_documents(session: Session, physician_id: str) -> Tuple[List[FailDoc], int]:
    docs = list(
        session.execute(
            select(FailDoc)
            .where(FailDoc.physician_id == physician_id)
            .order_by(FailDoc.created_at.desc())
            .limit(FAILED_DOCUMENT_LIMIT)
        ).scalars()
    )
    total = session.execute(
        select(func.count(FailDoc.id)).where(FailDoc.physician_id == physician_id)
    ).scalar_one()
    return docs, int(total)


def normalise_dob_field(dob: Any) -> Optional[str]:
    """Return *dob* as ``YYYY-MM-DD``; ISO timestamps are truncated.

    Falsy values clear the DOB.  Anything else raises ``ValueError``.
    """

    if not dob:
        return None
    if not isinstance(dob, str):
        raise ValueError("Invalid DOB format. Use YYYY-MM-DD")
    value = dob.split("T", 1)[0] if "T" in dob else dob
    if not ISO_DATE_RE.match(value) or parse_datetime(value) is None:
        raise ValueError("Invalid DOB format. Use YYYY-MM-DD")
    return value


def apply_failed_document_fix(document: Document, body: Mapping[str, Any]) -> Document:
    """Apply the corrections a user made to a document that failed extraction."""

    if (
        not body.get("patientName")
        and not body.get("claimNumber")
        and "dob" not in body
        and not body.get("doi")
    ):
        raise ValueError("At least one field must be provided")

    if "dob" in body:
        document.dob = normalise_dob_field(body["dob"])
    if "patientName" in body:
        document.patient_name = body["patientName"]
    if "claimNumber" in body:
        document.claim_number = body["claimNumber"]
    if "doi" in body:
        document.doi = body["doi"]
    document.status = "updated"
    return document


# ---------------------------------------------------------------------------
# Document corrections
# ---------------------------------------------------------------------------


def _iso_timestamp(value: Any) -> str:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid date: {value}")
    return parsed.isoformat().replace("+00:00", "Z")


def update_document_identity(document: Document, body: Mapping[str, Any]) -> Document:
    patient_name = str(body.get("patientName") or "").strip()
    if not patient_name:
        raise ValueError("Patient name is required")
    claim_number = str(body.get("claimNumber") or "").strip()
    if not claim_number:
        raise ValueError("Claim number is required")

    document.patient_name = patient_name
    document.claim_number = claim_number
    if body.get("dob"):
        document.dob = _iso_timestamp(body["dob"])
    if body.get("doi"):
        document.doi = _iso_timestamp(body["doi"])
    return document


def update_patient_documents(
    session: Session, original: Mapping[str, Any], updated: Mapping[str, Any]
) -> int:
    """Apply *updated* patient details to every document of *original*.

    Returns the number of documents touched; ``LookupError`` when none match.
    """

    documents = list(
        session.execute(
            select(Document).where(
                Document.patient_name == original.get("patientName"),
                Document.dob == original.get("dob"),
            )
        ).scalars()
    )
    if not documents:
        raise LookupError("Patient not found")
    for doc in documents:
        doc.patient_name = updated.get("patientName") or doc.patient_name
        doc.dob = updated.get("dob") or doc.dob
        doc.doi = updated.get("doi") or doc.doi
        doc.claim_number = updated.get("claimNumber") or doc.claim_number
    return len(documents)


def latest_documents(session: Session, physician_id: str, limit: int = RECENT_DOCUMENT_LIMIT) -> List[Dict[str, Any]]:
    documents = session.execute(
        select(Document)
        .options(selectinload(Document.document_summary))
        .where(Document.physician_id == physician_id)
        .order_by(Document.created_at.desc())
        .limit(limit)
    ).scalars()
    return [
        {
            "id": doc.id,
            "patientName": doc.patient_name,
            "claimNumber": doc.claim_number,
            "status": doc.status,
            "createdAt": _dt(doc.created_at),
            "gcsFileLink": doc.gcs_file_link,
            "fileName": doc.file_name,
            "briefSummary": doc.brief_summary,
            "documentSummary": serialize_summary(doc.document_summary),
            "blobPath": doc.blob_path,
        }
        for doc in documents
    ]


def page_patient_documents(
    session: Session,
    physician_id: str,
    *,
    page: int = 1,
    limit: int = 10,
    search: str = "",
    status: str = "all",
) -> Dict[str, Any]:
    """Return one page of a physician's documents, one per patient record.

    Rows sharing name, claim, DOB and DOI collapse to the most recently
    updated one; ``total`` counts the de-duplicated page.
    """

    page = max(1, page)
    limit = min(MAX_PAGE_SIZE, max(1, limit))
    stmt = (
        select(Document)
        .options(
            selectinload(Document.document_summary),
            selectinload(Document.adl),
            selectinload(Document.body_part_snapshots),
        )
        .where(Document.physician_id == physician_id)
    )
    if status and status != "all":
        stmt = stmt.where(Document.status == status)
    if search:
        stmt = stmt.where(Document.patient_name.ilike(f"%{search}%"))
    stmt = stmt.order_by(Document.updated_at.desc()).offset((page - 1) * limit).limit(limit)

    unique: Dict[str, Dict[str, Any]] = {}
    for doc in session.execute(stmt).scalars():
        key = f"{doc.patient_name}-{doc.claim_number or ''}-{doc.dob}-{doc.doi}"
        if key not in unique:
            unique[key] = serialize_document(doc, relations=True)
    data = list(unique.values())
    return {"data": data, "total": len(data), "page": page, "limit": limit}


def get_document_detail(
    session: Session, document_id: str, physician_id: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    stmt = (
        select(Document)
        .options(
            selectinload(Document.document_summary),
            selectinload(Document.adl),
            selectinload(Document.body_part_snapshots),
        )
        .where(Document.id == document_id)
    )
    if physician_id:
        stmt = stmt.where(or_(Document.physician_id.is_(None), Document.physician_id == physician_id))
    document = session.execute(stmt).scalar_one_or_none()
    if document is None:
        return None
    return serialize_document(document, relations=True)


__all__ = [
    "apply_failed_document_fix",
    "duplicate_candidates",
    "failed_documents",
    "get_document_detail",
    "latest_documents",
    "normalise_dob_field",
    "page_patient_documents",
    "recent_documents",
    "serialize_document",
    "serialize_fail_doc",
    "update_document_identity",
    "update_patient_documents",
]
