"""Dashboard aggregates: workflow statistics, patient search and audit trail."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from kebilo.db.models import AuditLog, Document, WorkflowStats
from kebilo.documents import serialize_document
from kebilo.time_utils import day_bounds, ensure_utc, utc_now

logger = logging.getLogger(__name__)

WORKFLOW_LABELS = [
    "Referrals Processed",
    "RFAs Monitored",
    "QME Upcoming",
    "Payer Disputes",
    "External Docs",
    "Intakes Created",
]
WORKFLOW_FIELDS = [
    "referrals_processed",
    "rfas_monitored",
    "qme_upcoming",
    "payer_disputes",
    "external_docs",
    "intakes_created",
]
DENIAL_RESULT_LIMIT = 50
NOT_SPECIFIED = "Not specified"


def record_audit(
    session: Session,
    *,
    user_id: Optional[str],
    email: Optional[str],
    action: str,
    path: str,
    method: str = "GET",
) -> AuditLog:
    entry = AuditLog(user_id=user_id, email=email, action=action, path=path, method=method)
    session.add(entry)
    session.flush()
    return entry


# ---------------------------------------------------------------------------
# Workflow statistics
# ---------------------------------------------------------------------------


def _stats_for_day(session: Session, start: datetime) -> Optional[WorkflowStats]:
    return session.execute(
        select(WorkflowStats)
        .where(WorkflowStats.date >= start, WorkflowStats.date < start + timedelta(days=1))
        .order_by(WorkflowStats.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def increment_workflow_stat(session: Session, field: str, amount: int = 1, now: Optional[datetime] = None) -> WorkflowStats:
    """Add *amount* to today's counter *field*, creating the row if needed."""

    if field not in WORKFLOW_FIELDS:
        raise ValueError(f"Unknown workflow statistic: {field}")
    start, _ = day_bounds(now or utc_now())
    stats = _stats_for_day(session, start)
    if stats is None:
        stats = WorkflowStats(date=start, **{name: 0 for name in WORKFLOW_FIELDS})
        session.add(stats)
    setattr(stats, field, (getattr(stats, field) or 0) + amount)
    session.flush()
    return stats


def workflow_stats_payload(session: Session, day: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the latest statistics row of *day* (today by default), or zeros."""

    now = utc_now()
    start, _ = day_bounds(day or now)
    row = _stats_for_day(session, start)
    if row is None:
        stats: Dict[str, Any] = {"id": None, "date": now, "createdAt": now, "updatedAt": now}
        stats.update({_camel(name): 0 for name in WORKFLOW_FIELDS})
        stats["intakes_created"] = 0
    else:
        stats = {
            "id": row.id,
            "date": ensure_utc(row.date),
            "createdAt": ensure_utc(row.created_at),
            "updatedAt": ensure_utc(row.updated_at),
        }
        stats.update({_camel(name): getattr(row, name) or 0 for name in WORKFLOW_FIELDS})
        stats["intakes_created"] = row.intakes_created or 0
    vals = [stats[_camel(name)] for name in WORKFLOW_FIELDS]
    return {
        "stats": stats,
        "labels": list(WORKFLOW_LABELS),
        "vals": vals,
        "date": stats["date"],
        "hasData": row is not None,
    }


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# ---------------------------------------------------------------------------
# Patient search
# ---------------------------------------------------------------------------


def _name_or_claim(patient_name: Optional[str], claim_number: Optional[str]):
    conditions = []
    if patient_name:
        conditions.append(Document.patient_name.ilike(f"%{patient_name}%"))
    if claim_number:
        conditions.append(Document.claim_number.ilike(f"%{claim_number}%"))
    return or_(*conditions)


def search_documents_with_alerts(
    session: Session, patient_name: Optional[str], claim_number: Optional[str]
) -> List[Dict[str, Any]]:
    documents = session.execute(
        select(Document)
        .options(selectinload(Document.alerts))
        .where(_name_or_claim(patient_name, claim_number))
        .order_by(Document.created_at.desc())
    ).scalars()
    results = []
    for doc in documents:
        payload = serialize_document(doc)
        payload["alerts"] = [
            {
                "id": alert.id,
                "alertType": alert.alert_type,
                "title": alert.title,
                "date": ensure_utc(alert.date) if alert.date else None,
                "status": alert.status,
                "description": alert.description,
                "isResolved": alert.is_resolved,
                "resolvedAt": ensure_utc(alert.resolved_at) if alert.resolved_at else None,
                "resolvedBy": alert.resolved_by,
                "createdAt": ensure_utc(alert.created_at),
                "updatedAt": ensure_utc(alert.updated_at),
            }
            for alert in doc.alerts
        ]
        payload["actions"] = []
        results.append(payload)
    return results


def search_suggestions(
    session: Session, patient_name: Optional[str], claim_number: Optional[str]
) -> Dict[str, List[str]]:
    rows = session.execute(
        select(Document.patient_name, Document.claim_number)
        .where(_name_or_claim(patient_name, claim_number))
        .distinct()
    ).all()
    patient_names: List[str] = []
    claim_numbers: List[str] = []
    for name, claim in rows:
        if name and name not in patient_names:
            patient_names.append(name)
        if claim and claim not in claim_numbers:
            claim_numbers.append(claim)
    return {"patientNames": patient_names, "claimNumbers": claim_numbers}


def denial_recommendations(
    session: Session,
    *,
    patient_name: Optional[str] = None,
    claim_number: Optional[str] = None,
    dob: Optional[str] = None,
    physician_id: Optional[str] = None,
    mode: Optional[str] = None,
) -> Dict[str, Any]:
    """Find documents carrying a UR denial reason, one entry per patient claim.

    Documents sharing name, claim and DOB are merged into the newest one and
    their body-part snapshots are combined, unique by body part and diagnosis.
    """

    patient_name, claim_number, dob, physician_id, mode = (
        value.strip() if value else value for value in (patient_name, claim_number, dob, physician_id, mode)
    )
    if physician_id in ("null", "undefined", ""):
        physician_id = None

    stmt = select(Document).options(selectinload(Document.body_part_snapshots))
    if mode:
        stmt = stmt.where(Document.mode == mode)
    if physician_id:
        stmt = stmt.where(Document.physician_id == physician_id)
    if patient_name and patient_name != NOT_SPECIFIED:
        stmt = stmt.where(Document.patient_name.ilike(f"%{patient_name}%"))
    if claim_number and claim_number != NOT_SPECIFIED:
        stmt = stmt.where(Document.claim_number.ilike(f"%{claim_number}%"))
    if dob and dob != NOT_SPECIFIED:
        stmt = stmt.where(Document.dob == dob)
    stmt = stmt.where(Document.ur_denial_reason.is_not(None), Document.ur_denial_reason != "")
    documents = session.execute(
        stmt.order_by(Document.created_at.desc()).limit(DENIAL_RESULT_LIMIT)
    ).scalars()

    grouped: Dict[str, List[Document]] = {}
    for doc in documents:
        if not doc.patient_name or doc.patient_name.lower() == NOT_SPECIFIED.lower():
            continue
        if not (doc.ur_denial_reason or "").strip():
            continue
        dob_key = "" if not doc.dob or doc.dob == NOT_SPECIFIED else doc.dob
        key = f"{doc.patient_name}-{doc.claim_number or ''}-{dob_key}"
        grouped.setdefault(key, []).append(doc)

    merged: List[Dict[str, Any]] = []
    for group in grouped.values():
        group.sort(key=lambda item: ensure_utc(item.created_at), reverse=True)
        snapshots: Dict[str, Dict[str, Any]] = {}
        for doc in group:
            for snap in doc.body_part_snapshots:
                snapshots[f"{snap.body_part}-{snap.dx}"] = {"bodyPart": snap.body_part, "dx": snap.dx}
        payload = serialize_document(group[0])
        payload["bodyPartSnapshots"] = list(snapshots.values())
        merged.append(payload)

    patient_names: List[str] = []
    for item in merged:
        if item["patientName"] and item["patientName"] not in patient_names:
            patient_names.append(item["patientName"])
    return {
        "patientNames": patient_names,
        "allMatchingDocuments": merged,
        "totalCount": len(merged),
    }


__all__ = [
    "WORKFLOW_LABELS",
    "denial_recommendations",
    "increment_workflow_stat",
    "record_audit",
    "search_documents_with_alerts",
    "search_suggestions",
    "workflow_stats_payload",
]
