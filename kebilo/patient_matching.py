"""Patient identity heuristics used by the duplicate and recent-patient views.

Documents arrive from OCR/extraction with inconsistent patient names
("DOE, JOHN A.", "John Doe"), placeholder claim numbers ("Not specified") and
claim suffixes ("JH3345-01").  Two families of rules live here:

* duplicate detection: documents whose names share at least two parts and
  whose claim numbers share a common core sequence;
* recent-patient grouping: documents collapsed into one patient when their
  claim numbers agree, or, when a claim is missing, when name and DOB agree
  within a fuzzy tolerance.

All helpers work on plain mappings with camelCase keys (``id``,
``patientName``, ``dob``, ``claimNumber``, ``createdAt``...) so that they can
be exercised without a database.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from kebilo.time_utils import ensure_utc, parse_datetime

INVALID_CLAIMS = frozenset(
    {
        "not specified",
        "notspecified",
        "unspecified",
        "n/a",
        "na",
        "none",
        "unknown",
        "undefined",
        "",
    }
)

# Stored values excluded before any matching happens.
PLACEHOLDER_VALUES = ("", "Not specified", "Not Specified", "Undefined", "N/A", "NA")
INVALID_RECENT_NAMES = frozenset({"not specified", "undefined", "n/a", "na"})

DOB_TOLERANCE_DAYS = 2
FUZZY_MAX_DISTANCE = 2
FUZZY_MAX_RATIO = 0.15
MIN_SEQUENCE_LENGTH = 4

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Shared normalisation
# ---------------------------------------------------------------------------


def normalize_claim_number(claim: Optional[str]) -> str:
    """Return the claim upper-cased and alphanumeric only; placeholders → ``""``."""

    if not claim:
        return ""
    if claim.strip().lower() in INVALID_CLAIMS:
        return ""
    return _NON_ALNUM_RE.sub("", claim).upper()


def _created_at(doc: Mapping[str, Any]) -> datetime:
    value = doc.get("createdAt")
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_datetime(value) or _EPOCH


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


def duplicate_name_parts(name: Optional[str]) -> List[str]:
    """Split *name* into lower-case parts, ignoring punctuation and initials."""

    if not name:
        return []
    cleaned = re.sub(r"[,.]", " ", name).lower().strip()
    return [part for part in cleaned.split() if len(part) > 1]


def names_match(name1: Optional[str], name2: Optional[str]) -> bool:
    """Names match when they share at least two parts (first + last)."""

    if not name1 or not name2:
        return False
    parts1 = duplicate_name_parts(name1)
    parts2 = duplicate_name_parts(name2)
    if not parts1 or not parts2:
        return False
    common = [part for part in parts1 if part in parts2]
    return len(common) >= 2


def extract_claim_core(claim: Optional[str]) -> str:
    """Return the claim without trailing sequence suffixes such as ``01``."""

    normalized = normalize_claim_number(claim)
    if not normalized:
        return ""
    core = re.sub(r"0[1-9]$", "", normalized)
    core = re.sub(r"[1-9]0$", "", core)
    core = re.sub(r"0[0-9]$", "", core)
    return core or normalized


def have_common_claim_sequence(claim1: Optional[str], claim2: Optional[str]) -> bool:
    """Return ``True`` for different claims that share the same core sequence.

    Identical claims are not considered related: they describe the same
    claim rather than a duplicate record.
    """

    if not claim1 or not claim2:
        return False
    normalized1 = normalize_claim_number(claim1)
    normalized2 = normalize_claim_number(claim2)
    if not normalized1 or not normalized2:
        return False
    if normalized1 == normalized2:
        return False

    core1 = extract_claim_core(claim1)
    core2 = extract_claim_core(claim2)
    if not core1 or not core2:
        return False
    if core1 == core2:
        return True

    if len(normalized1) < len(normalized2):
        shorter, longer = normalized1, normalized2
    else:
        shorter, longer = normalized2, normalized1
    if len(shorter) >= MIN_SEQUENCE_LENGTH and shorter in longer:
        return True

    if len(core1) >= MIN_SEQUENCE_LENGTH and core1 in core2:
        return True
    if len(core2) >= MIN_SEQUENCE_LENGTH and core2 in core1:
        return True
    return False


def find_duplicate_documents(
    target_name: str, documents: Sequence[Mapping[str, Any]]
) -> List[Mapping[str, Any]]:
    """Return the documents of *target_name* that carry related claim numbers.

    Only documents whose name matches the target are considered; fewer than
    two such documents means there is nothing to compare.  The result holds
    every document that takes part in at least one related pair, newest
    first.
    """

    matching = [doc for doc in documents if names_match(target_name, doc.get("patientName"))]
    if len(matching) < 2:
        return []

    duplicates: List[Mapping[str, Any]] = []
    seen: set = set()
    for doc in matching:
        for other in matching:
            if doc.get("id") == other.get("id"):
                continue
            if not have_common_claim_sequence(doc.get("claimNumber"), other.get("claimNumber")):
                continue
            for candidate in (doc, other):
                key = candidate.get("id")
                if key not in seen:
                    seen.add(key)
                    duplicates.append(candidate)

    duplicates.sort(key=_created_at, reverse=True)
    return duplicates


# ---------------------------------------------------------------------------
# Recent-patient grouping
# ---------------------------------------------------------------------------


def levenshtein_distance(left: str, right: str) -> int:
    """Return the edit distance between two strings."""

    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            if left_char == right_char:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j], current[j - 1], previous[j - 1]) + 1)
        previous = current
    return previous[-1]


def fuzzy_name_match(name1: str, name2: str) -> bool:
    """Allow up to two edits, or up to 15% of the longer name."""

    if not name1 or not name2:
        return False
    if name1 == name2:
        return True
    distance = levenshtein_distance(name1, name2)
    longest = max(len(name1), len(name2))
    return distance <= FUZZY_MAX_DISTANCE or distance / longest <= FUZZY_MAX_RATIO


def normalize_patient_name(name: Optional[str]) -> str:
    """Return ``first last`` sorted alphabetically, without middle initials."""

    if not name:
        return ""
    cleaned = name.replace(",", " ").lower().strip()
    parts = [part for part in cleaned.split() if len(part) > 1]
    if not parts:
        return ""
    if len(parts) >= 2:
        return " ".join(sorted([parts[0], parts[-1]]))
    return parts[0]


def recent_name_parts(name: Optional[str]) -> Dict[str, str]:
    if not name:
        return {"first": "", "last": ""}
    parts = name.replace(",", " ").lower().split()
    if not parts:
        return {"first": "", "last": ""}
    if len(parts) == 1:
        return {"first": parts[0], "last": ""}
    return {"first": parts[0], "last": parts[-1]}


def normalize_dob(dob: Any) -> str:
    """Return ``YYYY-MM-DD`` for a parsable DOB, else an empty string."""

    parsed = parse_datetime(dob)
    if parsed is None:
        return ""
    return parsed.date().isoformat()


def dobs_within_tolerance(dob1: str, dob2: str, tolerance_days: int = DOB_TOLERANCE_DAYS) -> bool:
    if not dob1 or not dob2:
        return False
    first = parse_datetime(dob1)
    second = parse_datetime(dob2)
    if first is None or second is None:
        return False
    return abs((first - second).total_seconds()) / 86400 <= tolerance_days


def is_same_patient(
    name1: str, dob1: str, claim1: str, name2: str, dob2: str, claim2: str
) -> bool:
    """Decide whether two normalised identities describe the same patient.

    When both sides carry a claim number the claims alone decide.  Otherwise
    a shared last name with matching DOBs is enough; failing that the names
    must match (exactly or fuzzily) and any DOBs present must agree.
    """

    if claim1 and claim2:
        return claim1 == claim2

    parts1 = recent_name_parts(name1)
    parts2 = recent_name_parts(name2)
    if (
        parts1["last"]
        and parts1["last"] == parts2["last"]
        and dob1
        and dob2
        and (dob1 == dob2 or dobs_within_tolerance(dob1, dob2))
    ):
        return True

    if not (name1 == name2 or fuzzy_name_match(name1, name2)):
        return False
    if dob1 and dob2:
        return dob1 == dob2 or dobs_within_tolerance(dob1, dob2)
    return True


def is_valid_recent_name(name: Optional[str]) -> bool:
    cleaned = (name or "").strip().lower()
    return bool(cleaned) and cleaned not in INVALID_RECENT_NAMES


def _document_type(doc: Mapping[str, Any]) -> Optional[str]:
    summary = doc.get("documentSummary")
    if isinstance(summary, Mapping):
        return summary.get("type")
    return doc.get("documentType")


def group_recent_patients(
    documents: Iterable[Mapping[str, Any]], limit: int = 10
) -> List[Dict[str, Any]]:
    """Collapse documents into patients and return the most recent *limit*.

    *documents* should be ordered newest first; each new document is compared
    with the first document of every existing group.
    """

    groups: List[Dict[str, Any]] = []
    for doc in documents:
        if not is_valid_recent_name(doc.get("patientName")):
            continue
        doc_name = normalize_patient_name(doc.get("patientName"))
        doc_claim = normalize_claim_number(doc.get("claimNumber"))
        doc_dob = normalize_dob(doc.get("dob"))
        doc_created = _created_at(doc)

        for group in groups:
            first = group["documents"][0]
            if not is_same_patient(
                doc_name,
                doc_dob,
                doc_claim,
                normalize_patient_name(first.get("patientName")),
                normalize_dob(first.get("dob")),
                normalize_claim_number(first.get("claimNumber")),
            ):
                continue
            group["documents"].append(doc)
            _merge_into_group(group, doc, doc_created)
            break
        else:
            groups.append(
                {
                    "documents": [doc],
                    "patientName": doc.get("patientName"),
                    "dob": doc.get("dob"),
                    "claimNumber": doc.get("claimNumber"),
                    "createdAt": doc_created,
                }
            )

    groups.sort(key=lambda group: group["createdAt"], reverse=True)
    return [_summarise_group(group) for group in groups[:limit]]


def _merge_into_group(group: Dict[str, Any], doc: Mapping[str, Any], doc_created: datetime) -> None:
    name = doc.get("patientName")
    if name:
        current = (group["patientName"] or "").strip()
        if not current or len(name.strip()) > len(current):
            group["patientName"] = name

    dob = doc.get("dob")
    if not group["dob"] and dob:
        group["dob"] = dob
    elif group["dob"] and dob and doc_created > group["createdAt"]:
        group["dob"] = dob

    group_claim = normalize_claim_number(group["claimNumber"])
    doc_claim = normalize_claim_number(doc.get("claimNumber"))
    if not group_claim and doc_claim:
        group["claimNumber"] = doc.get("claimNumber")
    elif group_claim and doc_claim and doc_created > group["createdAt"]:
        group["claimNumber"] = doc.get("claimNumber")
    elif not group["claimNumber"] and doc.get("claimNumber"):
        group["claimNumber"] = doc.get("claimNumber")

    if doc_created > group["createdAt"]:
        group["createdAt"] = doc_created


def _summarise_group(group: Mapping[str, Any]) -> Dict[str, Any]:
    docs: List[Mapping[str, Any]] = group["documents"]
    most_recent = docs[0]
    for candidate in docs[1:]:
        if _created_at(candidate) > _created_at(most_recent):
            most_recent = candidate
    summary: Dict[str, Any] = {
        "patientName": group["patientName"],
        "dob": group["dob"],
        "claimNumber": group["claimNumber"],
        "createdAt": group["createdAt"],
        "reportDate": most_recent.get("reportDate"),
        "documentCount": len(docs),
        "documentIds": [doc.get("id") for doc in docs],
        "documentType": _document_type(most_recent),
    }
    if len(docs) > 1:
        summary["matchingDocuments"] = [
            {
                "id": doc.get("id"),
                "patientName": doc.get("patientName"),
                "dob": doc.get("dob"),
                "claimNumber": doc.get("claimNumber"),
                "createdAt": doc.get("createdAt"),
                "reportDate": doc.get("reportDate"),
                "mode": doc.get("mode"),
                "documentType": _document_type(doc),
            }
            for doc in docs
        ]
    return summary


__all__ = [
    "PLACEHOLDER_VALUES",
    "dobs_within_tolerance",
    "duplicate_name_parts",
    "extract_claim_core",
    "find_duplicate_documents",
    "fuzzy_name_match",
    "group_recent_patients",
    "have_common_claim_sequence",
    "is_same_patient",
    "levenshtein_distance",
    "names_match",
    "normalize_claim_number",
    "normalize_dob",
    "normalize_patient_name",
    "recent_name_parts",
]
