"""Treatment history merging and the streamed summary prompt.

The document-processing service stores one ``TreatmentHistory`` row per
ingested batch.  ``history_data`` maps a body system ("musculoskeletal",
"neurological", ...) to a list of report dicts carrying at least
``report_date`` and ``physician`` and optionally ``document_id``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from kebilo.db.models import Document, TreatmentHistory
from kebilo.openai_client import sse_event, stream_chat
from kebilo.time_utils import parse_datetime

SUMMARY_MODEL = "gpt-4o-mini"
SUMMARY_MAX_TOKENS = 500
SUMMARY_TEMPERATURE = 0.3
DEFAULT_MAX_WORDS = 300

SUMMARY_SYSTEM_PROMPT = (
    "You are a medical summarization expert. Provide concise, accurate summaries of "
    "treatment histories. donot include patient identifiers or personal information."
)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def has_lookup_keys(patient_name: Optional[str], dob: Optional[str], claim_number: Optional[str]) -> bool:
    """Either name + DOB or a real claim number is needed to look up history."""

    has_identity = bool((patient_name or "").strip()) and bool((dob or "").strip())
    claim = (claim_number or "").strip()
    return has_identity or (bool(claim) and claim != "Not specified")


def find_history_records(
    session: Session,
    physician_id: str,
    *,
    patient_name: Optional[str] = None,
    dob: Optional[str] = None,
    claim_number: Optional[str] = None,
) -> List[TreatmentHistory]:
    alternatives = []
    if (patient_name or "").strip() and (dob or "").strip():
        alternatives.append(
            (func.lower(TreatmentHistory.patient_name) == patient_name.strip().lower())
            & (TreatmentHistory.dob == dob.strip())
        )
    claim = (claim_number or "").strip()
    if claim and claim != "Not specified":
        alternatives.append(func.lower(TreatmentHistory.claim_number) == claim.lower())
    if not alternatives:
        return []
    return list(
        session.execute(
            select(TreatmentHistory)
            .where(TreatmentHistory.physician_id == physician_id, or_(*alternatives))
            .order_by(TreatmentHistory.created_at.desc())
        ).scalars()
    )


def _report_sort_key(report: Mapping[str, Any]):
    parsed = parse_datetime(report.get("report_date"))
    # Unparsable dates sort after every valid one.
    return (parsed is not None, parsed or _OLDEST)


def merge_history(records: Sequence[Any]) -> Dict[str, List[Dict[str, Any]]]:
    """Merge ``history_data`` of *records* per body system.

    A report is kept once per (report_date, physician); earlier records win.
    """

    merged: Dict[str, List[Dict[str, Any]]] = {}
    for record in records:
        data = record.history_data if hasattr(record, "history_data") else record
        if not isinstance(data, Mapping):
            continue
        for system, reports in data.items():
            if not isinstance(reports, list):
                continue
            bucket = merged.setdefault(system, [])
            for report in reports:
                if not isinstance(report, Mapping):
                    continue
                duplicate = any(
                    existing.get("report_date") == report.get("report_date")
                    and existing.get("physician") == report.get("physician")
                    for existing in bucket
                )
                if not duplicate:
                    bucket.append(dict(report))
    return merged


def attach_document_links(session: Session, merged: Dict[str, List[Dict[str, Any]]]) -> None:
    document_ids = {
        report["document_id"]
        for reports in merged.values()
        for report in reports
        if report.get("document_id")
    }
    if not document_ids:
        return
    rows = session.execute(
        select(Document.id, Document.gcs_file_link, Document.blob_path).where(Document.id.in_(document_ids))
    ).all()
    links = {row.id: row for row in rows}
    for reports in merged.values():
        for report in reports:
            row = links.get(report.get("document_id"))
            if row is not None:
                report["gcs_file_link"] = row.gcs_file_link
                report["blob_path"] = row.blob_path


def sort_reports(merged: Dict[str, List[Dict[str, Any]]]) -> None:
    for reports in merged.values():
        reports.sort(key=_report_sort_key, reverse=True)


def treatment_history(
    session: Session,
    physician_id: str,
    *,
    patient_name: Optional[str] = None,
    dob: Optional[str] = None,
    claim_number: Optional[str] = None,
) -> Dict[str, Any]:
    records = find_history_records(
        session, physician_id, patient_name=patient_name, dob=dob, claim_number=claim_number
    )
    if not records:
        return {"success": True, "data": None, "message": "No treatment history found"}
    merged = merge_history(records)
    attach_document_links(session, merged)
    sort_reports(merged)
    return {
        "success": True,
        "data": merged,
        "debug": {"recordsFound": len(records), "mergedSystems": list(merged.keys())},
    }


def summary_messages(context: str, max_words: Optional[int] = None) -> List[Dict[str, str]]:
    limit = max_words or DEFAULT_MAX_WORDS
    prompt = (
        "You are a medical summarization assistant. Summarize the following treatment history "
        "information in a clear, concise manner. Keep the summary under "
        f"{limit} words. Focus on the most important diagnoses, treatments, and clinical "
        "findings across all body parts. No self generated content, only summarize what is "
        "provided. No patient identifiers or personal information. No fabrication.\n\n"
        f"Treatment History Data:\n{context}\n\n"
        "Provide a professional medical summary that a physician can quickly review."
    )
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def summary_events(context: str, max_words: Optional[int] = None) -> Iterator[str]:
    """Return server-sent events for a streamed summary, ending with ``[DONE]``."""

    chunks = stream_chat(
        summary_messages(context, max_words),
        model=SUMMARY_MODEL,
        temperature=SUMMARY_TEMPERATURE,
        max_tokens=SUMMARY_MAX_TOKENS,
    )
    return _as_events(chunks)


def _as_events(chunks: Iterator[Dict[str, Any]]) -> Iterator[str]:
    for chunk in chunks:
        yield sse_event(chunk)
    yield sse_event("[DONE]")


__all__ = [
    "has_lookup_keys",
    "merge_history",
    "summary_events",
    "summary_messages",
    "treatment_history",
]
