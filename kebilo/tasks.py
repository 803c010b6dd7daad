"""Task routing: query filters, prioritisation and dashboard aggregates.

Tasks are created by the document-processing service (one per actionable
finding in an ingested document) or manually from the staff dashboard.  The
list endpoint supports a fairly rich set of filters which are translated into
SQLAlchemy conditions here so the route handler only deals with HTTP.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy import String, func, or_, select
from sqlalchemy.orm import Session, selectinload

from kebilo.db.models import Task, User, UserRole
from kebilo.sanitizer import sanitize_mapping, sanitize_text
from kebilo.time_utils import (
    day_bounds,
    ensure_utc,
    month_bounds,
    parse_datetime,
    utc_now,
    week_bounds,
)

DEPARTMENTS = [
    "Medical/Clinical",
    "Scheduling & Coordination",
    "Administrative / Compliance",
    "Authorizations & Denials",
]

STATUS_MAP = {
    "pending": "Pending",
    "done": "Done",
    "completed": "Completed",
    "closed": "Closed",
}
CLOSED_STATUSES = ("Done", "Completed", "Closed")
TASK_TYPES = ("internal", "external")
SORT_FIELDS = {
    "dueDate": Task.due_date,
    "createdAt": Task.created_at,
    "description": Task.description,
    "department": Task.department,
    "updatedAt": Task.updated_at,
}
DEFAULT_ACTIONS = ["Claim", "Complete"]
CLAIMED_ACTION = "Claimed"
_DEPARTMENT_WORD_RE = re.compile("department", re.I)

BASE_STATUS_OPTIONS = ["Pending", "In Progress", "Waiting Callback", "Completed"]

# JSON field name -> column for PATCH /api/tasks/{id}
UPDATABLE_FIELDS = {
    "status": "status",
    "assignee": "assignee",
    "actions": "actions",
    "quickNotes": "quick_notes",
    "description": "description",
    "department": "department",
    "dueDate": "due_date",
    "priority": "priority",
    "type": "type",
    "reason": "reason",
}


def _int_param(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


@dataclass
class TaskQuery:
    """Parsed query-string parameters of ``GET /api/tasks``."""

    mode: str = "wc"
    claim: Optional[str] = None
    page: int = 1
    page_size: int = 10
    search: str = ""
    dept: str = ""
    status: str = ""
    overdue_only: bool = False
    priority: str = ""
    due_date: str = ""
    task_type: str = ""
    assigned_to: str = ""
    sort_by: str = "dueDate"
    sort_order: str = "desc"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "TaskQuery":
        return cls(
            mode=params.get("mode") or "wc",
            claim=params.get("claim") or None,
            page=max(_int_param(params.get("page"), 1), 1),
            page_size=max(_int_param(params.get("pageSize"), 10), 1),
            search=params.get("search") or "",
            dept=params.get("dept") or "",
            status=params.get("status") or "",
            overdue_only=params.get("overdueOnly") == "true",
            priority=params.get("priority") or "",
            due_date=params.get("dueDate") or "",
            task_type=params.get("type") or "",
            assigned_to=params.get("assignedTo") or "",
            sort_by=params.get("sortBy") or "dueDate",
            sort_order=params.get("sortOrder") or "desc",
        )


def _claimed_condition():
    return sa.cast(Task.actions, String).like(f'%"{CLAIMED_ACTION}"%')


def _due_window(kind: str, now: datetime) -> Optional[Tuple[datetime, datetime]]:
    if kind == "today":
        return day_bounds(now)
    if kind == "week":
        return week_bounds(now)
    if kind == "month":
        return month_bounds(now)
    return None


def _priority_condition(priority: str, now: datetime):
    tomorrow = now + timedelta(days=1)
    week_later = now + timedelta(days=7)
    if priority == "high":
        return or_(Task.due_date.is_(None), Task.due_date < tomorrow)
    if priority == "medium":
        return sa.and_(Task.due_date >= tomorrow, Task.due_date < week_later)
    if priority == "low":
        return Task.due_date >= week_later
    return None


def build_task_conditions(physician_id: str, query: TaskQuery, now: Optional[datetime] = None) -> List[Any]:
    """Return the AND-combined WHERE conditions for a task listing.

    Closed tasks (Done/Completed/Closed) are hidden unless the caller asks for
    a specific status; ``status=all`` disables status filtering entirely and
    ``status=overdue`` (or ``overdueOnly``) selects open tasks past due.
    """

    now = now or utc_now()
    conditions: List[Any] = [Task.physician_id == physician_id]

    if query.dept:
        clean_dept = _DEPARTMENT_WORD_RE.sub("", query.dept).strip()
        conditions.append(Task.department.ilike(f"%{clean_dept}%"))

    status = query.status
    effective_status = STATUS_MAP.get(status, status)
    overdue = query.overdue_only or status == "overdue"
    if overdue:
        conditions.append(Task.due_date < now)
        conditions.append(Task.status.notin_(CLOSED_STATUSES))
        effective_status = ""

    if status == "all":
        pass
    elif effective_status:
        conditions.append(Task.status == effective_status)
    elif not overdue:
        conditions.append(Task.status.notin_(CLOSED_STATUSES))

    if query.task_type in TASK_TYPES:
        conditions.append(Task.type == query.task_type)

    if query.assigned_to == "me":
        conditions.append(_claimed_condition())
    elif query.assigned_to == "unassigned":
        conditions.append(sa.not_(_claimed_condition()))

    if query.search:
        pattern = f"%{query.search}%"
        conditions.append(or_(Task.description.ilike(pattern), Task.patient.ilike(pattern)))

    window = _due_window(query.due_date, now)
    if window is not None:
        conditions.append(Task.due_date.between(*window))
    priority = _priority_condition(query.priority, now)
    if priority is not None:
        conditions.append(priority)

    return conditions


def _order_by(query: TaskQuery):
    column = SORT_FIELDS.get(query.sort_by, Task.due_date)
    if query.sort_by == "priority":
        column = Task.due_date
    return column.desc() if query.sort_order == "desc" else column.asc()


def list_tasks(
    session: Session, physician_id: str, query: TaskQuery, now: Optional[datetime] = None
) -> Tuple[List[Dict[str, Any]], int]:
    """Return one page of serialised tasks and the total match count."""

    now = now or utc_now()
    conditions = build_task_conditions(physician_id, query, now)
    total = session.execute(select(func.count(Task.id)).where(*conditions)).scalar_one()
    rows = (
        session.execute(
            select(Task)
            .options(selectinload(Task.document))
            .where(*conditions)
            .order_by(_order_by(query), Task.id)
            .offset((query.page - 1) * query.page_size)
            .limit(query.page_size)
        )
        .scalars()
        .all()
    )
    return [serialize_task(task, now) for task in rows], int(total)


def compute_priority(due_date: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Return ``high``, ``medium`` or ``low`` from the time left until *due_date*."""

    now = now or utc_now()
    if due_date is None:
        return "high"
    due = ensure_utc(due_date)
    if due < now:
        return "high"
    days_left = (due - now).total_seconds() / 86400
    if days_left <= 1:
        return "high"
    if days_left <= 7:
        return "medium"
    return "low"


def status_options(status: Optional[str]) -> List[str]:
    """Return the statuses a task in *status* can move to."""

    current = (status or "").lower()
    if "signature" in current or "physician" in current:
        return ["Physician Signature", "Reviewed", "Signed", "Completed"]
    if "scheduling" in current:
        return ["Pending Scheduling", "Left VM", "Scheduled", "Completed"]
    if "appeal" in current or "authorization" in current:
        return ["In Progress", "Left VM", "Waiting Callback", "Completed"]
    return list(BASE_STATUS_OPTIONS)


def is_claimed(actions: Optional[Iterable[str]]) -> bool:
    return CLAIMED_ACTION in (actions or [])


def serialize_task(task: Task, now: Optional[datetime] = None) -> Dict[str, Any]:
    document = task.document
    document_payload = None
    if document is not None:
        document_payload = {
            "id": document.id,
            "claimNumber": document.claim_number,
            "status": document.status,
            "ur_denial_reason": document.ur_denial_reason,
            "blobPath": document.blob_path,
            "patientName": document.patient_name,
        }
    return {
        "id": task.id,
        "description": task.description,
        "department": task.department,
        "status": task.status,
        "dueDate": ensure_utc(task.due_date) if task.due_date else None,
        "patient": task.patient,
        "claimNumber": task.claim_number,
        "reason": task.reason,
        "type": task.type,
        "assignee": task.assignee,
        "actions": list(task.actions or []),
        "quickNotes": task.quick_notes,
        "sourceDocument": task.source_document,
        "documentId": task.document_id,
        "physicianId": task.physician_id,
        "createdAt": ensure_utc(task.created_at) if task.created_at else None,
        "updatedAt": ensure_utc(task.updated_at) if task.updated_at else None,
        "document": document_payload,
        "ur_denial_reason": (document.ur_denial_reason if document else None) or task.reason or None,
        "priority": compute_priority(task.due_date, now),
        "statusOptions": status_options(task.status),
    }


def task_stats(tasks: Sequence[Mapping[str, Any]], now: Optional[datetime] = None) -> Dict[str, int]:
    """Summarise serialised tasks into the staff dashboard counters."""

    now = now or utc_now()
    today = now.date()

    def completed(task: Mapping[str, Any]) -> bool:
        return task.get("status") in ("Completed", "completed")

    def due(task: Mapping[str, Any]) -> Optional[datetime]:
        return parse_datetime(task.get("dueDate"))

    stats = {"open": 0, "urgent": 0, "dueToday": 0, "completed": 0}
    for task in tasks:
        due_date = due(task)
        if completed(task):
            stats["completed"] += 1
        else:
            stats["open"] += 1
            if due_date is not None and due_date.date() == today:
                stats["dueToday"] += 1
        if task.get("priority") == "high" or (due_date is not None and due_date < now):
            stats["urgent"] += 1
    return stats


def create_manual_task(
    session: Session,
    *,
    physician_id: Optional[str],
    description: str,
    department: str,
    patient: str,
    due_date: Any = None,
    actions: Optional[List[str]] = None,
    document_id: Optional[str] = None,
) -> Task:
    task = Task(
        description=sanitize_text(description),
        department=department,
        patient=patient,
        status="Pending",
        actions=list(actions) if actions else list(DEFAULT_ACTIONS),
        due_date=parse_datetime(due_date),
        document_id=document_id or None,
        physician_id=physician_id,
        type="internal",
    )
    session.add(task)
    session.flush()
    return task


def apply_task_updates(task: Task, updates: Mapping[str, Any], now: Optional[datetime] = None) -> Task:
    """Copy whitelisted fields from a PATCH body onto *task*.

    Unknown fields are ignored.  Quick notes are HTML-stripped and stamped
    with the server time.
    """

    for field, column in UPDATABLE_FIELDS.items():
        if field not in updates:
            continue
        value = updates[field]
        if field == "dueDate":
            value = parse_datetime(value)
        elif field == "quickNotes":
            if value is not None:
                if not isinstance(value, Mapping):
                    raise ValueError("quickNotes must be an object")
                value = sanitize_mapping(value)
                value["timestamp"] = (now or utc_now()).isoformat()
        elif field == "actions":
            if value is None:
                value = []
            elif not isinstance(value, list):
                raise ValueError("actions must be a list")
        elif field == "description":
            if not value:
                raise ValueError("description cannot be empty")
            value = sanitize_text(value)
        setattr(task, column, value)
    return task


def office_pulse(tasks: Iterable[Task], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Aggregate open/overdue/unclaimed counts per department."""

    now = now or utc_now()
    departments: Dict[str, Dict[str, int]] = {}
    for task in tasks:
        stats = departments.setdefault(task.department, {"open": 0, "overdue": 0, "unclaimed": 0})
        if task.status != "Done":
            stats["open"] += 1
            if task.due_date is not None and ensure_utc(task.due_date) < now:
                stats["overdue"] += 1
        if not is_claimed(task.actions):
            stats["unclaimed"] += 1

    depts = [{"department": name, **stats} for name, stats in departments.items()]
    return {
        "depts": depts,
        "labels": ["Total Open", "Total Overdue", "Total Unclaimed"],
        "vals": [
            sum(item["open"] for item in depts),
            sum(item["overdue"] for item in depts),
            sum(item["unclaimed"] for item in depts),
        ],
    }


def build_assignees(staff: Iterable[User]) -> List[Dict[str, Any]]:
    """Return the assignee picker entries for a physician's practice."""

    assignees: List[Dict[str, Any]] = [
        {"value": "Unclaimed", "label": "Unclaimed", "type": "default"},
        {"value": "Physician", "label": "Physician", "type": "physician"},
    ]
    for member in staff:
        value = f"Assigned: {member.first_name or 'Staff'} {member.last_name or ''}".strip()
        label = f"{member.first_name or ''} {member.last_name or ''}".strip() or member.email or "Staff"
        assignees.append({"value": value, "label": label, "type": "staff", "staffId": member.id})

    common = [
        {"value": "Assigned: MA", "label": "Medical Assistant", "type": "role"},
        {"value": "Assigned: Admin", "label": "Administrator", "type": "role"},
        {"value": "Assigned: Scheduler", "label": "Scheduler", "type": "role"},
    ]
    taken = {entry["value"] for entry in assignees}
    assignees.extend(entry for entry in common if entry["value"] not in taken)
    return assignees


def staff_for_physician(session: Session, physician_id: str, *, staff_only: bool = False) -> List[User]:
    stmt = select(User).where(User.physician_id == physician_id)
    if staff_only:
        stmt = stmt.where(User.role == UserRole.STAFF.value)
    return list(session.execute(stmt.order_by(User.first_name.asc())).scalars())


__all__ = [
    "CLOSED_STATUSES",
    "DEFAULT_ACTIONS",
    "DEPARTMENTS",
    "TaskQuery",
    "apply_task_updates",
    "build_assignees",
    "build_task_conditions",
    "compute_priority",
    "create_manual_task",
    "is_claimed",
    "list_tasks",
    "office_pulse",
    "serialize_task",
    "staff_for_physician",
    "status_options",
    "task_stats",
]
