"""FastAPI application exposing the Kebilo clinical-workflow API."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import requests
import structlog
from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from kebilo import billing, document_service, workspace
from kebilo.auth import (
    SessionTokenError,
    SessionUser,
    UserExistsError,
    authenticate_user,
    create_session_token,
    decode_session_token,
    register_user,
    serialize_user,
)
from kebilo.config import AppSettings, get_settings
from kebilo.dashboard import (
    denial_recommendations,
    record_audit,
    search_documents_with_alerts,
    search_suggestions,
    workflow_stats_payload,
)
from kebilo.db import get_session, init_db
from kebilo.db.config import get_database_settings
from kebilo.db.models import Document, FailDoc, Task, UserRole
from kebilo.documents import (
    apply_failed_document_fix,
    duplicate_candidates,
    failed_documents,
    get_document_detail,
    latest_documents,
    page_patient_documents,
    recent_documents,
    serialize_document,
    serialize_fail_doc,
    update_document_identity,
    update_patient_documents,
)
from kebilo.encryption import encrypted_envelope
from kebilo.intake import (
    create_quiz,
    dated_patient_documents,
    find_patient_intakes,
    intake_query_params,
    latest_intake_update,
    latest_quiz,
    questionnaire_chips,
    refresh_document_adl,
    serialize_intake_update,
    serialize_quiz,
    update_quiz,
)
from kebilo.intake_links import (
    ExpiredIntakeToken,
    InvalidIntakeToken,
    LinkRequest,
    decode_token,
    generate_link,
    patient_data,
)
from kebilo.openai_client import MissingAPIKeyError
from kebilo.patient_matching import duplicate_name_parts, find_duplicate_documents, group_recent_patients
from kebilo.security import DUPLICATE_SCANS_TOTAL, constant_time_equals, hash_identifier
from kebilo.tasks import (
    TaskQuery,
    apply_task_updates,
    build_assignees,
    build_task_conditions,
    create_manual_task,
    list_tasks,
    office_pulse,
    serialize_task,
    staff_for_physician,
    task_stats,
)
from kebilo.time_utils import ensure_utc, utc_now
from kebilo.treatment_history import has_lookup_keys, summary_events, treatment_history
from kebilo.ws_progress import ProgressHub

load_dotenv()

SESSION_COOKIE = "kebilo_session"
DOCUMENT_ROUTE_MARKER = "nextjs-api-route-hit"

LOG_LEVEL = get_settings().log_level
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

START_TIME = time.time()
progress_hub = ProgressHub()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("lifespan_startup")
    if get_database_settings().is_sqlite:
        init_db()
    start_ts = time.time()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="Kebilo API", lifespan=lifespan)

_origins = get_settings().cors_allow_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _origins else list(_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    """Bind the request path and method to every log line of the request."""

    bind_contextvars(path=request.url.path, method=request.method)
    try:
        return await call_next(request)
    finally:
        unbind_contextvars("path", "method")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTP errors as ``{"error": ...}`` plus any extra detail keys."""

    if isinstance(exc.detail, Mapping):
        content = dict(exc.detail)
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=jsonable_encoder({"error": "Invalid request", "details": exc.errors()}),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _server_error(event: str, message: str = "Internal server error", **extra: Any) -> HTTPException:
    """Log the active exception and build the 500 response for it."""

    logger.error(event, exc_info=True)
    return HTTPException(status_code=500, detail={"error": message, **extra})


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if header and header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def optional_user(request: Request) -> Optional[SessionUser]:
    """Return the session user from the bearer header or cookie, if valid."""

    token = _bearer_token(request.headers.get("authorization")) or request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    try:
        return decode_session_token(token)
    except SessionTokenError:
        return None
    except RuntimeError:
        logger.error("session_secret_missing")
        raise HTTPException(status_code=500, detail="Server configuration error")


def _require_user(user: Optional[SessionUser], message: str = "Unauthorized") -> SessionUser:
    if user is None:
        raise HTTPException(status_code=401, detail=message)
    return user


def get_current_user(user: Optional[SessionUser] = Depends(optional_user)) -> SessionUser:
    return _require_user(user)


def _practice_scope(user: SessionUser) -> str:
    """Physician id for routes limited to physicians and their staff."""

    if user.role not in (UserRole.PHYSICIAN.value, UserRole.STAFF.value):
        raise HTTPException(status_code=403, detail="Access denied: Invalid role")
    if not user.physician_id:
        raise HTTPException(status_code=400, detail="Physician ID not found for this user")
    return user.physician_id


def _in_scope(user: SessionUser, physician_id: Optional[str]) -> bool:
    """Records without a physician are shared; others must match the caller's scope."""

    return not user.physician_id or physician_id in (None, user.physician_id)


def _scoped_document(session: Session, document_id: str, user: SessionUser) -> Optional[Document]:
    document = session.get(Document, document_id)
    if document is None or not _in_scope(user, document.physician_id):
        return None
    return document


def _audit(session: Session, user: SessionUser, action: str, request: Request) -> None:
    record_audit(
        session,
        user_id=user.id,
        email=user.email,
        action=action,
        path=request.url.path,
        method=request.method,
    )


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
def health(session: Session = Depends(get_session)):
    """Lightweight liveness probe with a best-effort database check."""

    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:  # pragma: no cover
        logger.warning("health_db_check_failed", exc_info=True)
        db_ok = False
    return {"status": "ok", "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", tags=["system"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    physicianId: Optional[str] = None
    phoneNumber: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


@app.post("/api/auth/sign-up", status_code=201)
def sign_up(payload: SignUpRequest, session: Session = Depends(get_session)):
    if not (payload.firstName and payload.lastName and payload.email and payload.password):
        raise HTTPException(status_code=400, detail="All fields are required")
    try:
        user = register_user(
            session,
            email=payload.email,
            password=payload.password,
            first_name=payload.firstName,
            last_name=payload.lastName,
            role=payload.role,
            physician_id=payload.physicianId,
            phone_number=payload.phoneNumber,
        )
    except UserExistsError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    session.commit()
    logger.info("user_registered", user_id=user.id, role=user.role)
    return {"message": "User created successfully", "user": serialize_user(user)}


@app.post("/api/auth/login")
def login(
    payload: LoginRequest,
    response: Response,
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    user = authenticate_user(session, payload.email, payload.password)
    session.commit()
    if user is None:
        logger.info("login_failed", email=hash_identifier(payload.email.lower()))
        raise HTTPException(status_code=401, detail="Invalid email or password")
    try:
        token = create_session_token(user, settings)
    except RuntimeError:
        raise _server_error("session_token_failed", "Server configuration error")
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age_days * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
    )
    logger.info("login_succeeded", user_id=user.id)
    return {"access_token": token, "token_type": "bearer", "user": serialize_user(user)}


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True}


@app.get("/api/auth/session")
def current_session(user: SessionUser = Depends(get_current_user)):
    return {"user": user.as_dict()}


# ---------------------------------------------------------------------------
# Patient matching
# ---------------------------------------------------------------------------


@app.get("/api/get-duplicate-patients")
def get_duplicate_patients(
    request: Request,
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    patient_name = request.query_params.get("patientName")
    if not patient_name:
        raise HTTPException(status_code=400, detail="Patient name is required")
    user = _require_user(user)
    if len(duplicate_name_parts(patient_name)) < 2:
        raise HTTPException(status_code=400, detail="Patient name must have at least first and last name")
    try:
        candidates = duplicate_candidates(session, user.physician_id, request.query_params.get("mode"))
        duplicates = find_duplicate_documents(patient_name, candidates)
    except Exception:
        raise _server_error("duplicate_scan_failed", "Failed to fetch duplicate patients")
    DUPLICATE_SCANS_TOTAL.labels(result="found" if duplicates else "none").inc()
    return duplicates


@app.get("/api/get-recent-patients")
def get_recent_patients(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        documents = recent_documents(
            session,
            user.physician_id,
            request.query_params.get("mode"),
            request.query_params.get("search"),
        )
        return group_recent_patients(documents)
    except Exception:
        raise _server_error("recent_patients_failed", "Failed to fetch recent documents")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class ManualTaskRequest(BaseModel):
    description: Optional[str] = None
    department: Optional[str] = None
    patient: Optional[str] = None
    dueDate: Optional[str] = None
    actions: Optional[List[str]] = None
    documentId: Optional[str] = None


@app.get("/api/tasks")
def get_tasks(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    physician_id = _practice_scope(user)
    query = TaskQuery.from_params(request.query_params)
    try:
        tasks, total = list_tasks(session, physician_id, query)
    except Exception as exc:
        raise _server_error("tasks_fetch_failed", details=str(exc))
    return {"tasks": tasks, "totalCount": total}


@app.get("/api/tasks/stats")
def get_task_stats(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    physician_id = _practice_scope(user)
    params = dict(request.query_params)
    params.setdefault("status", "all")
    now = utc_now()
    conditions = build_task_conditions(physician_id, TaskQuery.from_params(params), now)
    tasks = session.execute(select(Task).where(*conditions)).scalars()
    return task_stats([serialize_task(task, now) for task in tasks], now)


@app.patch("/api/tasks/{task_id}")
def update_task(
    task_id: str,
    updates: Dict[str, Any] = Body(...),
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    physician_id = _practice_scope(user)
    task = session.execute(
        select(Task).where(Task.id == task_id, Task.physician_id == physician_id)
    ).scalar_one_or_none()
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    try:
        apply_task_updates(task, updates)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    session.commit()
    logger.info("task_updated", task_id=task.id, fields=sorted(updates))
    return serialize_task(task)


@app.post("/api/add-manual-task", status_code=201)
def add_manual_task(
    payload: ManualTaskRequest,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if not (payload.description and payload.department and payload.patient):
        raise HTTPException(status_code=400, detail="Missing required fields: description, department, patient")
    try:
        task = create_manual_task(
            session,
            physician_id=user.physician_id,
            description=payload.description,
            department=payload.department,
            patient=payload.patient,
            due_date=payload.dueDate,
            actions=payload.actions,
            document_id=payload.documentId,
        )
        session.commit()
    except Exception:
        raise _server_error("manual_task_failed", "Failed to create task")
    return serialize_task(task)


# ---------------------------------------------------------------------------
# Staff
# ---------------------------------------------------------------------------


@app.get("/api/staff")
def get_staff(user: SessionUser = Depends(get_current_user), session: Session = Depends(get_session)):
    if not user.physician_id:
        raise HTTPException(status_code=400, detail="Physician ID not found")
    members = staff_for_physician(session, user.physician_id)
    return {
        "staff": [
            {
                "id": member.id,
                "firstName": member.first_name,
                "lastName": member.last_name,
                "email": member.email,
                "role": member.role,
                "image": member.image,
            }
            for member in members
        ]
    }


@app.get("/api/assignees")
def get_assignees(user: SessionUser = Depends(get_current_user), session: Session = Depends(get_session)):
    physician_id = _practice_scope(user)
    assignees = build_assignees(staff_for_physician(session, physician_id, staff_only=True))
    return {"assignees": assignees, "count": len(assignees)}


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@app.get("/api/office-pulse")
def get_office_pulse(user: SessionUser = Depends(get_current_user), session: Session = Depends(get_session)):
    physician_id = _practice_scope(user)
    try:
        tasks = list(
            session.execute(
                select(Task).where(Task.physician_id == physician_id).order_by(Task.created_at.desc())
            ).scalars()
        )
        now = utc_now()
        return {"tasks": [serialize_task(task, now) for task in tasks], "pulse": office_pulse(tasks, now)}
    except Exception:
        raise _server_error("office_pulse_failed", "Failed to fetch tasks")


@app.get("/api/workflow-stats")
def get_workflow_stats(
    request: Request,
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    _require_user(user, "Unauthorized. Please log in.")
    day = None
    raw = request.query_params.get("date")
    if raw:
        try:
            day = datetime.strptime(raw, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    return {"success": True, "data": workflow_stats_payload(session, day)}


@app.get("/api/dashboard/search-patient")
def search_patient(
    request: Request,
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    user = _require_user(user, "Unauthorized. Please log in.")
    patient_name = request.query_params.get("patientName")
    claim_number = request.query_params.get("claimNumber")
    if not patient_name and not claim_number:
        raise HTTPException(status_code=400, detail="Either patient name or claim number is required")
    results = search_documents_with_alerts(session, patient_name, claim_number)
    if not results:
        return JSONResponse(status_code=404, content={"message": "No documents found for the given search criteria"})
    criteria = ", ".join(
        part
        for part in (
            f"patient: {patient_name}" if patient_name else "",
            f"claim: {claim_number}" if claim_number else "",
        )
        if part
    )
    _audit(session, user, f"Viewed documents and alerts for search: {criteria}", request)
    session.commit()
    return {"success": True, "data": results}


@app.get("/api/dashboard/recommendation")
def search_recommendation(
    request: Request,
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    user = _require_user(user, "Unauthorized. Please log in.")
    patient_name = request.query_params.get("patientName")
    claim_number = request.query_params.get("claimNumber")
    if not patient_name and not claim_number:
        raise HTTPException(status_code=400, detail="Either patientName or claimNumber is required")
    suggestions = search_suggestions(session, patient_name, claim_number)
    if not suggestions["patientNames"] and not suggestions["claimNumbers"]:
        return JSONResponse(status_code=404, content={"message": "No matching patients or claims found"})
    _audit(
        session,
        user,
        f'Searched suggestions: patientName="{patient_name or ""}", claimNumber="{claim_number or ""}"',
        request,
    )
    session.commit()
    return {"success": True, "data": suggestions}


@app.get("/api/dashboard/deniel-recommendation")
def denial_recommendation(
    request: Request,
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    user = _require_user(user, "Unauthorized. Please log in.")
    params = request.query_params
    try:
        data = denial_recommendations(
            session,
            patient_name=params.get("patientName"),
            claim_number=params.get("claimNumber"),
            dob=params.get("dob"),
            physician_id=params.get("physicianId"),
            mode=params.get("mode"),
        )
        _audit(session, user, f'Searched denial recommendations: patientName="{params.get("patientName") or ""}"', request)
        session.commit()
    except Exception:
        logger.error("denial_recommendation_failed", exc_info=True)
        session.rollback()
        return {
            "success": False,
            "data": {"patientNames": [], "allMatchingDocuments": [], "totalCount": 0},
            "error": "Internal server error",
        }
    return {"success": True, "data": data}


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@app.get("/api/documents/get-document")
def get_document(
    request: Request,
    user: Optional[SessionUser] = Depends(optional_user),
    settings: AppSettings = Depends(get_settings),
):
    if user is None or not user.fastapi_token:
        raise HTTPException(status_code=401, detail="Unauthorized - No valid session token")
    params = request.query_params
    patient_name, dob, physician_id = params.get("patient_name"), params.get("dob"), params.get("physicianId")
    if not (patient_name and dob and physician_id):
        raise HTTPException(
            status_code=400,
            detail="Missing required parameters: patient_name, dob, and physicianId are required",
        )
    if not settings.encryption_secret:
        logger.error("encryption_secret_missing")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not settings.python_api_url:
        raise HTTPException(status_code=500, detail="Python API URL not configured")

    query = {
        "patient_name": patient_name,
        "dob": dob,
        "physicianId": physician_id,
        "doi": params.get("doi"),
        "claim_number": params.get("claim_number"),
        "mode": params.get("mode"),
    }
    try:
        data = document_service.fetch_document(settings, user.fastapi_token, query)
    except document_service.UpstreamError as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": f"Failed to fetch document: {exc.status_code}", "details": exc.body},
        )
    except requests.RequestException:
        raise _server_error("document_fetch_failed")
    return encrypted_envelope(data, settings.encryption_secret, route_marker=DOCUMENT_ROUTE_MARKER)


@app.post("/api/documents/upload")
async def upload_documents(
    documents: List[UploadFile] = File(...),
    mode: str = Form("wc"),
    user: SessionUser = Depends(get_current_user),
    settings: AppSettings = Depends(get_settings),
):
    if not user.fastapi_token:
        raise HTTPException(status_code=401, detail="Unauthorized - No valid session token")
    if not settings.python_api_url:
        raise HTTPException(status_code=500, detail="Python API URL not configured")
    for item in documents:
        if item.size is not None:
            try:
                document_service.validate_upload(item.filename or "", item.size)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc))
    files = [
        document_service.UploadFile(
            filename=item.filename or "",
            content=await item.read(),
            content_type=item.content_type,
        )
        for item in documents
    ]
    try:
        return await run_in_threadpool(
            document_service.upload_documents,
            settings,
            user.fastapi_token,
            files,
            mode=mode,
            physician_id=user.physician_id or "",
            user_id=user.id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except document_service.UpstreamError as exc:
        if exc.payment_required:
            raise HTTPException(status_code=402, detail={"error": exc.message, "paymentRequired": True})
        raise HTTPException(status_code=exc.status_code, detail={"error": "Upload failed", "details": exc.message})
    except requests.RequestException:
        raise _server_error("document_upload_failed", "Upload failed")


@app.get("/api/get-failed-document")
def get_failed_documents(
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    user = _require_user(user, "Unauthorized: No valid session")
    if not user.physician_id:
        raise HTTPException(status_code=400, detail="Physician ID not found in session")
    docs, total = failed_documents(session, user.physician_id)
    if not docs:
        return {"message": "No failed documents found", "data": [], "totalDocuments": 0}
    return {"totalDocuments": total, "documents": [serialize_fail_doc(doc) for doc in docs]}


@app.patch("/api/get-failed-document/{document_id}")
def fix_failed_document(
    document_id: str,
    body: Dict[str, Any] = Body(...),
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    document = _scoped_document(session, document_id, user)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    try:
        apply_failed_document_fix(document, body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    session.commit()
    return {
        "success": True,
        "document": {
            "id": document.id,
            "patientName": document.patient_name,
            "claimNumber": document.claim_number,
            "dob": document.dob,
            "doi": document.doi,
            "status": document.status,
            "updatedAt": ensure_utc(document.updated_at),
        },
    }


@app.delete("/api/get-failed-document/{document_id}")
def delete_failed_document(
    document_id: str,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    failed = session.get(FailDoc, document_id)
    if failed is None or not _in_scope(user, failed.physician_id):
        raise HTTPException(status_code=404, detail="Document not found")
    session.delete(failed)
    session.commit()
    logger.info("failed_document_deleted", document_id=document_id)
    return {"success": True}


@app.patch("/api/update-document")
def update_document(
    request: Request,
    body: Dict[str, Any] = Body(...),
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    document_id = request.query_params.get("documentId")
    if not document_id:
        raise HTTPException(status_code=400, detail="Document ID is required")
    document = _scoped_document(session, document_id, user)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    try:
        update_document_identity(document, body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    session.commit()
    return {"success": True, "document": serialize_document(document)}


@app.post("/api/verify-document")
def verify_document(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    document_id = request.query_params.get("document_id")
    if not document_id:
        raise HTTPException(status_code=400, detail="Missing required parameter: document_id")
    document = _scoped_document(session, document_id, user)
    if document is None:
        raise HTTPException(status_code=404, detail="No document found for the provided document_id")
    document.status = "verified"
    session.commit()
    return {"success": True, "message": "1 document verified successfully."}


@app.get("/api/patient-documents")
def get_patient_documents(
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    user = _require_user(user, "Unauthorized access")
    return {"documents": latest_documents(session, user.physician_id)}


class PatientUpdateRequest(BaseModel):
    originalPatient: Optional[Dict[str, Any]] = None
    updatedData: Optional[Dict[str, Any]] = None


@app.post("/api/patients/update")
def update_patient(
    payload: PatientUpdateRequest,
    user: Optional[SessionUser] = Depends(optional_user),
    session: Session = Depends(get_session),
):
    _require_user(user, "Unauthorized - Please sign in")
    if not payload.originalPatient or not payload.updatedData:
        raise HTTPException(status_code=400, detail="Missing required data")
    try:
        count = update_patient_documents(session, payload.originalPatient, payload.updatedData)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    session.commit()
    updated = payload.updatedData
    return {
        "success": True,
        "message": "Patient details updated successfully",
        "updatedCount": count,
        "patient": {
            "patientName": updated.get("patientName"),
            "dob": updated.get("dob"),
            "doi": updated.get("doi"),
            "claimNumber": updated.get("claimNumber"),
        },
    }


@app.get("/api/get-patient")
def get_patients(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    params = request.query_params
    physician_id = params.get("physicianId")
    if not physician_id:
        raise HTTPException(status_code=400, detail="Physician ID is required")

    def _int(name: str, default: int) -> int:
        try:
            return int(params.get(name) or default)
        except ValueError:
            return default

    return page_patient_documents(
        session,
        physician_id,
        page=_int("page", 1),
        limit=_int("limit", 10),
        search=params.get("search") or "",
        status=params.get("status") or "all",
    )


@app.get("/api/get-patient/{document_id}")
def get_patient(
    document_id: str,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    detail = get_document_detail(session, document_id, physician_id=user.physician_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return detail


# ---------------------------------------------------------------------------
# Intake links
# ---------------------------------------------------------------------------


class TokenRequest(BaseModel):
    token: Optional[str] = None


def _intake_secret(settings: AppSettings) -> str:
    if not settings.intake_jwt_secret:
        logger.error("intake_jwt_secret_missing")
        raise HTTPException(status_code=500, detail="Server configuration error")
    return settings.intake_jwt_secret


@app.post("/api/generate-link")
def create_intake_link(
    body: Dict[str, Any] = Body(...),
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
):
    secret = _intake_secret(settings)
    try:
        link_request = LinkRequest.from_body(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not link_request.physician_id:
        link_request.physician_id = user.physician_id
    try:
        result = generate_link(session, link_request, secret)
        session.commit()
    except Exception:
        raise _server_error("intake_link_failed", "Failed to generate token")
    logger.info("intake_link_generated", action=result["action"], patient=hash_identifier(link_request.patient))
    return result


def _decode_intake_token(token: str, settings: AppSettings, *, include_expiry: bool) -> Dict[str, Any]:
    try:
        claims = decode_token(token, _intake_secret(settings))
    except ExpiredIntakeToken:
        raise HTTPException(status_code=401, detail={"valid": False, "error": "Token has expired", "expired": True})
    except InvalidIntakeToken:
        raise HTTPException(status_code=401, detail={"valid": False, "error": "Invalid token"})
    return {"valid": True, "patientData": patient_data(claims, include_expiry=include_expiry)}


@app.post("/api/decrypt-token")
def decrypt_token(payload: TokenRequest, settings: AppSettings = Depends(get_settings)):
    if not payload.token:
        raise HTTPException(status_code=400, detail="Token is required")
    return _decode_intake_token(payload.token, settings, include_expiry=True)


@app.get("/api/decrypt-token")
def decrypt_token_query(request: Request, settings: AppSettings = Depends(get_settings)):
    token = request.query_params.get("token")
    if not token:
        raise HTTPException(status_code=400, detail="Token parameter is required")
    return _decode_intake_token(token, settings, include_expiry=False)


# ---------------------------------------------------------------------------
# Intake questionnaires
# ---------------------------------------------------------------------------


@app.get("/api/submit-quiz")
def get_submission(request: Request, session: Session = Depends(get_session)):
    params = request.query_params
    patient_name = params.get("patientName")
    if not patient_name:
        raise HTTPException(status_code=400, detail="Patient Name is required")
    quiz = latest_quiz(session, patient_name, params.get("dob"), params.get("doi"))
    if quiz is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    return serialize_quiz(quiz)


@app.post("/api/submit-quiz", status_code=201)
def submit_quiz(body: Dict[str, Any] = Body(...), session: Session = Depends(get_session)):
    patient_name = body.get("patientName")
    language = body.get("language")
    if not patient_name or not language:
        raise HTTPException(status_code=400, detail="Patient Name and Language are required")
    try:
        quiz = create_quiz(session, body)
        documents = dated_patient_documents(session, patient_name, body.get("dob"), body.get("claimNumber"))
        refresh_document_adl(session, body, language, documents)
        session.commit()
    except Exception:
        raise _server_error("quiz_submission_failed")
    logger.info("quiz_submitted", patient=hash_identifier(patient_name), documents=len(documents))
    return {"success": True, "submission": serialize_quiz(quiz)}


@app.put("/api/submit-quiz")
def resubmit_quiz(
    request: Request,
    body: Dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
):
    params = request.query_params
    patient_name = params.get("patientName")
    if not patient_name:
        raise HTTPException(status_code=400, detail="Patient Name is required")
    dob = params.get("dob")
    quiz = latest_quiz(session, patient_name, dob, params.get("doi"))
    if quiz is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    try:
        update_quiz(quiz, body)
        documents = dated_patient_documents(session, patient_name, dob)
        refresh_document_adl(session, body, quiz.lang, documents, update=True)
        session.commit()
    except Exception:
        raise _server_error("quiz_update_failed")
    return {"success": True, "submission": serialize_quiz(quiz)}


@app.get("/api/patient-intakes")
def get_patient_intakes(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    query = intake_query_params(request.query_params)
    timestamp = utc_now()
    if not query["patientName"]:
        raise HTTPException(
            status_code=400,
            detail={"success": False, "error": "Patient Name is required", "timestamp": timestamp},
        )
    quizzes = find_patient_intakes(session, query["patientName"], query["dob"], query["claimNumber"])
    data = [serialize_quiz(quiz) for quiz in quizzes]
    return {
        "success": True,
        "data": data,
        "total": len(data),
        "timestamp": timestamp,
        "query": {**query, "matchCount": len(data)},
    }


@app.post("/api/patient-intakes")
def create_patient_intake(body: Dict[str, Any] = Body(...), session: Session = Depends(get_session)):
    if not body.get("patientName"):
        raise HTTPException(status_code=400, detail={"success": False, "error": "Patient Name is required"})
    try:
        quiz = create_quiz(session, body, default_adl=False)
        session.commit()
    except Exception:
        raise _server_error("patient_intake_create_failed", "Failed to create patient intake", success=False)
    return {
        "success": True,
        "data": serialize_quiz(quiz),
        "message": "Patient intake created successfully",
        "timestamp": utc_now(),
    }


def _patient_lookup(params: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    lookup = intake_query_params(params)
    if not lookup["patientName"]:
        raise HTTPException(status_code=400, detail="Patient Name is required")
    return lookup


@app.get("/api/patient-intake-update")
def get_patient_intake_update(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    lookup = _patient_lookup(request.query_params)
    update = latest_intake_update(session, lookup["patientName"], lookup["dob"], lookup["claimNumber"])
    if update is None:
        return {"success": True, "data": None, "message": "No intake updates found for this patient"}
    return {"success": True, "data": serialize_intake_update(update)}


@app.get("/api/questionnaire-chips")
def get_questionnaire_chips(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    lookup = _patient_lookup(request.query_params)
    update = latest_intake_update(session, lookup["patientName"], lookup["dob"], lookup["claimNumber"])
    quiz = latest_quiz(session, lookup["patientName"], lookup["dob"])
    chips = questionnaire_chips(
        serialize_intake_update(update) if update is not None else None,
        serialize_quiz(quiz) if quiz is not None else None,
    )
    return {"success": True, "chips": chips}


# ---------------------------------------------------------------------------
# Treatment history
# ---------------------------------------------------------------------------


class SummaryRequest(BaseModel):
    context: Optional[str] = None
    maxWords: Optional[int] = None


@app.get("/api/treatment-history")
def get_treatment_history(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    params = request.query_params
    physician_id = params.get("physicianId")
    if not physician_id:
        raise HTTPException(status_code=400, detail="Missing required parameter: physicianId")
    patient_name, dob, claim_number = params.get("patient_name"), params.get("dob"), params.get("claim_number")
    if not has_lookup_keys(patient_name, dob, claim_number):
        raise HTTPException(
            status_code=400,
            detail="Minimum requirements: either (patient_name + dob) OR claim_number",
        )
    try:
        return treatment_history(
            session, physician_id, patient_name=patient_name, dob=dob, claim_number=claim_number
        )
    except Exception as exc:
        raise _server_error("treatment_history_failed", details=str(exc))


@app.post("/api/openai-summary")
def openai_summary(payload: SummaryRequest, user: SessionUser = Depends(get_current_user)):
    if not payload.context:
        raise HTTPException(status_code=400, detail="Context is required")
    try:
        events = summary_events(payload.context, payload.maxWords)
    except MissingAPIKeyError as exc:
        logger.error("openai_key_missing")
        raise HTTPException(status_code=500, detail=str(exc))
    except Exception:
        raise _server_error("summary_failed", "Failed to generate summary")
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    plan: Optional[str] = None
    price: Any = None


@app.post("/api/checkout_sessions")
def create_checkout(
    payload: CheckoutRequest,
    user: SessionUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
):
    physician_id = user.physician_id or user.id
    try:
        result = billing.create_checkout_session(
            session, settings, physician_id=physician_id, plan=payload.plan, price=payload.price
        )
        session.commit()
    except billing.BillingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        raise _server_error("checkout_session_failed", "Failed to create checkout session")
    return result


@app.post("/api/webhook")
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
):
    signature = request.headers.get("stripe-signature")
    payload = await request.body()
    if not signature:
        logger.warning("webhook_signature_missing")
        raise HTTPException(status_code=400, detail="No signature")
    try:
        event = billing.construct_event(payload, signature, settings)
    except billing.WebhookSignatureError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        billing.handle_event(session, event)
        session.commit()
    except Exception as exc:
        raise _server_error("webhook_processing_failed", str(exc))
    return {"received": True}


@app.get("/api/subscription")
def get_subscription(user: SessionUser = Depends(get_current_user), session: Session = Depends(get_session)):
    subscription = billing.active_subscription(session, user.physician_id or user.id)
    return {"subscription": billing.serialize_subscription(subscription)}


# ---------------------------------------------------------------------------
# Google Workspace aliases
# ---------------------------------------------------------------------------


class AliasRequest(BaseModel):
    email: Optional[str] = None
    alias: Optional[str] = None


def _directory_service(settings: AppSettings):
    try:
        return workspace.build_directory_service(settings)
    except Exception:
        raise _server_error("workspace_client_failed")


@app.post("/api/create-alias")
def create_workspace_alias(
    payload: AliasRequest,
    user: SessionUser = Depends(get_current_user),
    settings: AppSettings = Depends(get_settings),
):
    try:
        workspace.validate_alias_request(payload.email, payload.alias, settings.google_workspace_domain)
        return workspace.create_alias(_directory_service(settings), payload.email, payload.alias)
    except workspace.WorkspaceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.as_detail())


@app.get("/api/create-alias")
def list_workspace_aliases(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    settings: AppSettings = Depends(get_settings),
):
    email = request.query_params.get("email")
    if not email:
        raise HTTPException(status_code=400, detail="Email parameter is required")
    try:
        return workspace.list_aliases(_directory_service(settings), email)
    except workspace.WorkspaceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.as_detail())


# ---------------------------------------------------------------------------
# Document-processing progress
# ---------------------------------------------------------------------------


class ProgressEventRequest(BaseModel):
    userId: str
    event: str
    data: Dict[str, Any] = {}


@app.websocket("/ws/progress")
async def progress_socket(websocket: WebSocket):
    token = websocket.query_params.get("token") or _bearer_token(websocket.headers.get("authorization"))
    user: Optional[SessionUser] = None
    if token:
        try:
            user = decode_session_token(token)
        except (SessionTokenError, RuntimeError):
            user = None
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await progress_hub.handle(websocket, user.id)


@app.post("/api/progress/events")
async def publish_progress(
    payload: ProgressEventRequest,
    request: Request,
    settings: AppSettings = Depends(get_settings),
):
    token = _bearer_token(request.headers.get("authorization"))
    if not constant_time_equals(token, settings.progress_service_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        delivered = await progress_hub.publish(payload.userId, payload.event, payload.data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"delivered": delivered}


@app.get("/api/progress/{task_id}")
def get_progress(task_id: str, user: SessionUser = Depends(get_current_user)):
    state = progress_hub.latest(task_id, user.id)
    if state is None:
        raise HTTPException(status_code=404, detail="No progress recorded for this task")
    return state
