"""Patient questionnaires, ADL analysis and questionnaire summary chips.

Patients fill an intake questionnaire (body areas, pain before/after
medication, ADL trend, appointments, therapies) from a shared intake link.
When the patient already has dated documents, the answers are condensed by
the language model into two comma-separated lines (affected activities and
work restrictions) stored as the ADL of the newest document.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from kebilo.db.models import ADL, Document, PatientIntakeUpdate, PatientQuiz
from kebilo.documents import serialize_summary
from kebilo.openai_client import call_openai
from kebilo.time_utils import ensure_utc, extract_iso_date, parse_datetime

logger = logging.getLogger(__name__)

ADL_MODEL = "gpt-4o-mini"
ADL_TEMPERATURE = 0.1
DEFAULT_ADL = {"state": "same", "list": []}
GENERAL_CLAIMS = ("General", "Not specified", "N/A")

ADL_SYSTEM_PROMPT = (
    "You are a medical ADL analyzer. Output exactly 2 lines with comma-separated short "
    "phrases only. Analyze the patient data provided and list: Line 1 = affected daily "
    "activities, Line 2 = work restrictions. Use direct phrases like \"lifting heavy "
    "objects\" not sentences like \"patient cannot lift\"."
)
ADL_UPDATE_SYSTEM_PROMPT = (
    "You output exactly 2 lines. Each line contains only comma-separated short noun "
    "phrases, NO complete sentences, NO verbs like \"may\", \"face\", \"include\". Just the "
    "restriction names directly."
)

_FORMAT_RULES = """Line 1 Format: List affected daily activities as short phrases (e.g., "dressing, bathing, walking, climbing stairs")
Line 2 Format: List work restrictions as short phrases (e.g., "lifting heavy objects, prolonged standing, driving long distances")

Rules:
- Use ONLY short noun phrases separated by commas
- NO complete sentences, NO words like "may", "patient", "restrictions in", "unable to"
- Just list the activities/restrictions directly
{extra_rules}

Example Output:
bathing, dressing, prolonged walking
lifting heavy objects, overhead reaching, repetitive bending

Output your 2 lines now:"""

_NEW_RULES = """- Base affected ADLs on patient selected list and symptom trend (e.g., if "better", focus on improved ones; if "worse", emphasize impacts)
- If pain is high (before > 5) or therapies show positive effects, adjust restrictions accordingly
- Include body areas in restrictions if relevant (e.g., "neck strain" for neck issues)"""

_UPDATE_RULES = """- If trend is "better", consider reducing restrictions
- If trend is "worse", consider adding restrictions
- Base on therapies effects and pain changes"""


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _json_field(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def serialize_quiz(quiz: PatientQuiz) -> Dict[str, Any]:
    return {
        "id": quiz.id,
        "patientName": quiz.patient_name,
        "dob": quiz.dob,
        "doi": quiz.doi,
        "lang": quiz.lang,
        "bodyAreas": quiz.body_areas,
        "newAppointments": _json_field(quiz.new_appointments),
        "refill": _json_field(quiz.refill),
        "adl": _json_field(quiz.adl),
        "therapies": _json_field(quiz.therapies),
        "claimNumber": quiz.claim_number,
        "createdAt": ensure_utc(quiz.created_at) if quiz.created_at else None,
        "updatedAt": ensure_utc(quiz.updated_at) if quiz.updated_at else None,
    }


def serialize_intake_update(update: PatientIntakeUpdate) -> Dict[str, Any]:
    document = update.document
    return {
        "id": update.id,
        "patientName": update.patient_name,
        "dob": update.dob,
        "claimNumber": update.claim_number,
        "documentId": update.document_id,
        "generatedPoints": update.generated_points or [],
        "adlEffectPoints": update.adl_effect_points or [],
        "intakePatientPoints": update.intake_patient_points or [],
        "createdAt": ensure_utc(update.created_at) if update.created_at else None,
        "document": None
        if document is None
        else {
            "id": document.id,
            "patientName": document.patient_name,
            "createdAt": ensure_utc(document.created_at),
            "documentSummary": serialize_summary(document.document_summary),
        },
    }


# ---------------------------------------------------------------------------
# Quiz records
# ---------------------------------------------------------------------------


def latest_quiz(
    session: Session, patient_name: str, dob: Optional[str] = None, doi: Optional[str] = None
) -> Optional[PatientQuiz]:
    stmt = select(PatientQuiz).where(PatientQuiz.patient_name == patient_name)
    if dob:
        stmt = stmt.where(PatientQuiz.dob == dob)
    if doi:
        stmt = stmt.where(PatientQuiz.doi == doi)
    return session.execute(
        stmt.order_by(PatientQuiz.created_at.desc()).limit(1)
    ).scalar_one_or_none()


def create_quiz(session: Session, body: Mapping[str, Any], *, default_adl: bool = True) -> PatientQuiz:
    adl = body.get("adl")
    if not adl and default_adl:
        adl = dict(DEFAULT_ADL)
    quiz = PatientQuiz(
        patient_name=body.get("patientName"),
        dob=body.get("dob"),
        doi=body.get("doi"),
        claim_number=body.get("claimNumber") or None,
        lang=body.get("language") or body.get("lang") or "en",
        body_areas=body.get("bodyAreas") or None,
        new_appointments=body.get("newAppointments") or None,
        refill=body.get("refill") or None,
        adl=adl or None,
        therapies=body.get("therapies") or None,
    )
    session.add(quiz)
    session.flush()
    return quiz


def update_quiz(quiz: PatientQuiz, body: Mapping[str, Any]) -> PatientQuiz:
    quiz.lang = body.get("language") or quiz.lang
    quiz.body_areas = body.get("bodyAreas") or quiz.body_areas
    quiz.new_appointments = body.get("newAppointments") or quiz.new_appointments
    quiz.refill = body.get("refill") or quiz.refill
    quiz.adl = body.get("adl") or quiz.adl
    quiz.therapies = body.get("therapies") or quiz.therapies
    return quiz


def dated_patient_documents(
    session: Session, patient_name: str, dob: Optional[str], claim_number: Optional[str] = None
) -> List[Document]:
    """Documents of the patient that carry a report date, newest report first."""

    stmt = (
        select(Document)
        .options(selectinload(Document.adl))
        .where(Document.patient_name == patient_name, Document.report_date.is_not(None))
    )
    if dob is not None:
        stmt = stmt.where(Document.dob == dob)
    if claim_number:
        stmt = stmt.where(Document.claim_number == claim_number)
    documents = list(session.execute(stmt).scalars())
    documents.sort(key=lambda doc: ensure_utc(doc.report_date), reverse=True)
    return documents


# ---------------------------------------------------------------------------
# ADL analysis
# ---------------------------------------------------------------------------


def _patient_section(answers: Mapping[str, Any], language: str) -> str:
    refill = answers.get("refill")
    if isinstance(refill, Mapping):
        pain = f"{refill.get('before') or 'N/A'} -> {refill.get('after') or 'N/A'}"
    else:
        pain = "N/A"
    adl = answers.get("adl") if isinstance(answers.get("adl"), Mapping) else {}
    return "\n".join(
        [
            f"- Body Areas: {answers.get('bodyAreas') or 'N/A'}",
            f"- Language: {language}",
            f"- Pain Level (before -> after medication): {pain}",
            f"- Symptom Trend (from ADLs): {adl.get('state') or 'N/A'}",
            f"- Patient Selected ADLs: {json.dumps(adl.get('list') or [])}",
            f"- New Appointments: {json.dumps(answers.get('newAppointments') or [])}",
            f"- Therapies and Effects: {json.dumps(answers.get('therapies') or [])}",
        ]
    )


def build_adl_prompt(answers: Mapping[str, Any], language: str, previous_adl: Optional[ADL] = None, *, update: bool = False) -> str:
    """Return the user prompt for the ADL analyser."""

    if not update:
        return (
            "Based on the patient's intake form responses, determine which ADL activities "
            "are affected and what work restrictions apply.\n\n"
            "Patient Information:\n"
            f"{_patient_section(answers, language)}\n\n"
            "Task: Generate 2 lines based on the data above.\n\n"
            + _FORMAT_RULES.format(extra_rules=_NEW_RULES)
        )

    if previous_adl is not None:
        previous = (
            f'Previous ADL: adlsAffected="{previous_adl.adls_affected}", '
            f'workRestrictions="{previous_adl.work_restrictions}"'
        )
    else:
        previous = "No previous ADL available"
    return (
        "Based on the patient's current intake form responses and previous ADL data, "
        "determine updated ADL activities and work restrictions.\n\n"
        "Current Patient Information:\n"
        f"{_patient_section(answers, language)}\n\n"
        f"{previous}\n\n"
        "Task: Compare current data with previous ADL and generate updated 2 lines.\n\n"
        + _FORMAT_RULES.format(extra_rules=_UPDATE_RULES)
    )


def parse_adl_lines(content: Optional[str]) -> Tuple[str, str]:
    """Split a model response into (affected activities, work restrictions).

    Responses with fewer than two non-empty lines yield empty strings.
    """

    lines = [line.strip() for line in (content or "").strip().splitlines() if line.strip()]
    if len(lines) < 2:
        logger.warning("adl_response_unparsed", extra={"line_count": len(lines)})
        return "", ""
    return lines[0], lines[1]


def analyse_adl(answers: Mapping[str, Any], language: str, previous_adl: Optional[ADL] = None, *, update: bool = False) -> Tuple[str, str]:
    system = ADL_UPDATE_SYSTEM_PROMPT if update else ADL_SYSTEM_PROMPT
    messages = [
        {"role": "system", "content": system},
        {"role": "user", "content": build_adl_prompt(answers, language, previous_adl, update=update)},
    ]
    content = call_openai(messages, model=ADL_MODEL, temperature=ADL_TEMPERATURE)
    return parse_adl_lines(content)


def upsert_adl(session: Session, document: Document, adls_affected: str, work_restrictions: str) -> ADL:
    adl = document.adl
    if adl is None:
        adl = ADL(document_id=document.id)
        session.add(adl)
        document.adl = adl
    adl.adls_affected = adls_affected
    adl.work_restrictions = work_restrictions
    session.flush()
    return adl


def refresh_document_adl(
    session: Session,
    answers: Mapping[str, Any],
    language: str,
    documents: List[Document],
    *,
    update: bool = False,
) -> Optional[ADL]:
    """Run the analyser for the newest document of *documents*, if any."""

    if not documents:
        return None
    previous = documents[1].adl if update and len(documents) > 1 else None
    affected, restrictions = analyse_adl(answers, language, previous, update=update)
    return upsert_adl(session, documents[0], affected, restrictions)


# ---------------------------------------------------------------------------
# Intake lookups
# ---------------------------------------------------------------------------


def _first_param(params: Mapping[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = params.get(name)
        if value:
            return value
    return None


def normalise_dob_query(dob: str) -> str:
    parsed = parse_datetime(dob)
    if parsed is not None:
        return parsed.date().isoformat()
    return extract_iso_date(dob) or dob


def intake_query_params(params: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "patientName": _first_param(params, "patientName", "patient_name", "name"),
        "dob": _first_param(params, "dob", "dateOfBirth", "date_of_birth"),
        "claimNumber": _first_param(params, "claimNumber", "claim_number", "claim"),
    }


def find_patient_intakes(
    session: Session, patient_name: str, dob: Optional[str] = None, claim_number: Optional[str] = None
) -> List[PatientQuiz]:
    """Quizzes whose name contains *patient_name*, filtered by DOB and claim.

    A general claim ("General", "Not specified", "N/A") matches quizzes with
    no claim or any of those placeholders.
    """

    stmt = select(PatientQuiz).where(PatientQuiz.patient_name.ilike(f"%{patient_name}%"))
    if dob:
        stmt = stmt.where(PatientQuiz.dob == normalise_dob_query(dob))
    if claim_number:
        if claim_number in GENERAL_CLAIMS:
            stmt = stmt.where(
                or_(
                    PatientQuiz.claim_number.is_(None),
                    PatientQuiz.claim_number.in_(("",) + GENERAL_CLAIMS),
                )
            )
        else:
            stmt = stmt.where(PatientQuiz.claim_number == claim_number)
    return list(session.execute(stmt.order_by(PatientQuiz.created_at.desc())).scalars())


def latest_intake_update(
    session: Session, patient_name: str, dob: Optional[str] = None, claim_number: Optional[str] = None
) -> Optional[PatientIntakeUpdate]:
    stmt = (
        select(PatientIntakeUpdate)
        .options(selectinload(PatientIntakeUpdate.document).selectinload(Document.document_summary))
        .where(func.lower(PatientIntakeUpdate.patient_name) == patient_name.lower())
    )
    if dob:
        stmt = stmt.where(PatientIntakeUpdate.dob == dob.split("T", 1)[0])
    if claim_number and claim_number != "Not specified":
        stmt = stmt.where(PatientIntakeUpdate.claim_number == claim_number)
    return session.execute(
        stmt.order_by(PatientIntakeUpdate.created_at.desc()).limit(1)
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Questionnaire chips
# ---------------------------------------------------------------------------

_COLOR_TAG_RE = re.compile(r"[(\[]?(Red|Blue|Green|Amber)[)\]]?", re.I)
_COLOR_STRIP_RE = re.compile(r"\s*[(\[]?(Red|Blue|Green|Amber)[)\]]?", re.I)

_NEGATIVE = ("worse", "decreased", "limited", "difficulty")
_POSITIVE = ("improved", "better", "increased")


def _contains(text: str, words) -> bool:
    return any(word in text for word in words)


def _generated_chip(point: str) -> Dict[str, str]:
    text = point.strip()
    match = _COLOR_TAG_RE.search(text)
    if match:
        return {"text": _COLOR_STRIP_RE.sub("", text, count=1).strip(), "type": match.group(1).lower()}
    lower = text.lower()
    if _contains(lower, _NEGATIVE + ("pain",)):
        kind = "red"
    elif _contains(lower, _POSITIVE + ("good",)):
        kind = "green"
    elif _contains(lower, ("unchanged", "same", "stable")):
        kind = "green"
    else:
        kind = "blue"
    return {"text": text, "type": kind}


def _adl_effect_chip(point: str) -> Dict[str, str]:
    lower = point.lower()
    if _contains(lower, _NEGATIVE):
        kind = "red"
    elif _contains(lower, _POSITIVE):
        kind = "green"
    elif _contains(lower, ("unchanged", "same")):
        kind = "green"
    else:
        kind = "amber"
    return {"text": point.strip(), "type": kind}


def _intake_point_chip(point: str) -> Dict[str, str]:
    lower = point.lower()
    if _contains(lower, ("refill", "medication", "appointment", "consult")):
        kind = "blue"
    elif _contains(lower, ("improved", "better")):
        kind = "green"
    elif _contains(lower, ("worse", "pain")):
        kind = "red"
    else:
        kind = "amber"
    return {"text": point.strip(), "type": kind}


def _as_list(value: Any) -> List[Any]:
    value = json.loads(value) if isinstance(value, str) else value
    if isinstance(value, list):
        return value
    if isinstance(value, Mapping):
        return list(value.values())
    return []


def _quiz_chips(quiz: Mapping[str, Any]) -> List[Dict[str, str]]:
    chips: List[Dict[str, str]] = []
    refill = quiz.get("refill")
    if refill:
        refill = json.loads(refill) if isinstance(refill, str) else refill
        if refill and (
            not isinstance(refill, Mapping)
            or refill.get("requested")
            or refill.get("needed")
            or len(refill) > 0
        ):
            chips.append({"text": "Medication refill requested", "type": "blue"})

    if quiz.get("therapies"):
        therapies = _as_list(quiz["therapies"])
        if any(
            (isinstance(item, Mapping) and (item.get("missed") or item.get("status") == "missed"))
            or (isinstance(item, str) and "missed" in item.lower())
            for item in therapies
        ):
            chips.append({"text": "Missed PT session", "type": "amber"})

    if quiz.get("newAppointments") and _as_list(quiz["newAppointments"]):
        chips.append({"text": "New appointment scheduled", "type": "blue"})

    adl = quiz.get("adl")
    if adl:
        adls = _as_list(adl)
        unchanged = all(
            not item or item == "unchanged" or (isinstance(item, str) and "unchanged" in item.lower())
            for item in adls
        )
        if unchanged:
            chips.append({"text": "ADLs unchanged", "type": "green"})
        else:
            chips.append({"text": "ADLs changed", "type": "amber"})
    else:
        chips.append({"text": "ADLs unchanged", "type": "green"})

    chips.append({"text": "No ER visits", "type": "green"})
    return chips


def questionnaire_chips(
    intake_update: Optional[Mapping[str, Any]], quiz: Optional[Mapping[str, Any]]
) -> List[Dict[str, str]]:
    """Build the colour-coded summary chips shown next to a patient.

    Model-generated points from the intake update win; the raw quiz answers
    are only summarised when no points exist.
    """

    chips: List[Dict[str, str]] = []
    if intake_update:
        for point in intake_update.get("generatedPoints") or []:
            if isinstance(point, str) and point.strip():
                chips.append(_generated_chip(point))
        for point in intake_update.get("adlEffectPoints") or []:
            if isinstance(point, str) and point.strip():
                chips.append(_adl_effect_chip(point))
        for point in intake_update.get("intakePatientPoints") or []:
            if isinstance(point, str) and point.strip():
                chips.append(_intake_point_chip(point))

    if not chips and quiz:
        try:
            chips = _quiz_chips(quiz)
        except ValueError:
            logger.warning("questionnaire_quiz_unparsable")
            chips = [
                {"text": "ADLs unchanged", "type": "green"},
                {"text": "No ER visits", "type": "green"},
            ]
    return chips


__all__ = [
    "DEFAULT_ADL",
    "analyse_adl",
    "build_adl_prompt",
    "create_quiz",
    "dated_patient_documents",
    "find_patient_intakes",
    "intake_query_params",
    "latest_intake_update",
    "latest_quiz",
    "parse_adl_lines",
    "questionnaire_chips",
    "refresh_document_adl",
    "serialize_intake_update",
    "serialize_quiz",
    "update_quiz",
    "upsert_adl",
]
