"""SQLAlchemy models for the Kebilo workflow schema."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class UserRole(str, enum.Enum):
    """Roles a Kebilo account can hold."""

    PHYSICIAN = "Physician"
    STAFF = "Staff"
    ATTORNEY = "Attorney"


class User(Base):
    __tablename__ = "users"

    id = sa.Column(String, primary_key=True, default=_new_id)
    email = sa.Column(String, nullable=False, unique=True, index=True)
    password_hash = sa.Column(String, nullable=True)
    first_name = sa.Column(String, nullable=True)
    last_name = sa.Column(String, nullable=True)
    role = sa.Column(String, nullable=False, default=UserRole.STAFF.value)
    physician_id = sa.Column(String, ForeignKey("users.id"), nullable=True, index=True)
    phone_number = sa.Column(String, nullable=True)
    image = sa.Column(String, nullable=True)
    failed_login_attempts = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    account_locked_until = sa.Column(DateTime(timezone=True), nullable=True)
    last_login = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Document(Base):
    __tablename__ = "documents"

    id = sa.Column(String, primary_key=True, default=_new_id)
    patient_name = sa.Column(String, nullable=True, index=True)
    dob = sa.Column(String, nullable=True)
    doi = sa.Column(String, nullable=True)
    claim_number = sa.Column(String, nullable=True, index=True)
    status = sa.Column(String, nullable=True)
    mode = sa.Column(String, nullable=True)
    physician_id = sa.Column(String, nullable=True, index=True)
    file_name = sa.Column(String, nullable=True)
    gcs_file_link = sa.Column(Text, nullable=True)
    blob_path = sa.Column(Text, nullable=True)
    report_date = sa.Column(DateTime(timezone=True), nullable=True)
    ur_denial_reason = sa.Column(Text, nullable=True)
    brief_summary = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    document_summary = sa.orm.relationship(
        "DocumentSummary", uselist=False, back_populates="document", cascade="all, delete-orphan"
    )
    adl = sa.orm.relationship("ADL", uselist=False, back_populates="document", cascade="all, delete-orphan")
    body_part_snapshots = sa.orm.relationship(
        "BodyPartSnapshot", back_populates="document", cascade="all, delete-orphan"
    )
    alerts = sa.orm.relationship("Alert", back_populates="document", cascade="all, delete-orphan")

    __table_args__ = (
        sa.Index("idx_documents_physician_created", "physician_id", "created_at"),
    )


class DocumentSummary(Base):
    __tablename__ = "document_summaries"

    id = sa.Column(String, primary_key=True, default=_new_id)
    document_id = sa.Column(String, ForeignKey("documents.id"), nullable=False, unique=True)
    type = sa.Column(String, nullable=True)
    date = sa.Column(DateTime(timezone=True), nullable=True)
    summary = sa.Column(Text, nullable=True)

    document = sa.orm.relationship(Document, back_populates="document_summary")


class ADL(Base):
    __tablename__ = "adls"

    id = sa.Column(String, primary_key=True, default=_new_id)
    document_id = sa.Column(String, ForeignKey("documents.id"), nullable=False, unique=True)
    adls_affected = sa.Column(Text, nullable=True)
    work_restrictions = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    document = sa.orm.relationship(Document, back_populates="adl")


class BodyPartSnapshot(Base):
    __tablename__ = "body_part_snapshots"

    id = sa.Column(String, primary_key=True, default=_new_id)
    document_id = sa.Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    body_part = sa.Column(String, nullable=True)
    dx = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    document = sa.orm.relationship(Document, back_populates="body_part_snapshots")


class Alert(Base):
    __tablename__ = "alerts"

    id = sa.Column(String, primary_key=True, default=_new_id)
    document_id = sa.Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    alert_type = sa.Column(String, nullable=True)
    title = sa.Column(String, nullable=True)
    date = sa.Column(DateTime(timezone=True), nullable=True)
    status = sa.Column(String, nullable=True)
    description = sa.Column(Text, nullable=True)
    is_resolved = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    resolved_at = sa.Column(DateTime(timezone=True), nullable=True)
    resolved_by = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    document = sa.orm.relationship(Document, back_populates="alerts")


class Task(Base):
    __tablename__ = "tasks"

    id = sa.Column(String, primary_key=True, default=_new_id)
    description = sa.Column(Text, nullable=False)
    department = sa.Column(String, nullable=True, index=True)
    status = sa.Column(String, nullable=False, default="Pending")
    due_date = sa.Column(DateTime(timezone=True), nullable=True)
    patient = sa.Column(String, nullable=True)
    claim_number = sa.Column(String, nullable=True)
    reason = sa.Column(Text, nullable=True)
    type = sa.Column(String, nullable=True)
    assignee = sa.Column(String, nullable=True)
    priority = sa.Column(String, nullable=True)
    actions = sa.Column(sa.JSON, nullable=False, default=list)
    quick_notes = sa.Column(sa.JSON, nullable=True)
    source_document = sa.Column(String, nullable=True)
    document_id = sa.Column(String, ForeignKey("documents.id"), nullable=True, index=True)
    physician_id = sa.Column(String, nullable=True, index=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    document = sa.orm.relationship(Document)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = sa.Column(String, primary_key=True, default=_new_id)
    physician_id = sa.Column(String, nullable=False, index=True)
    plan = sa.Column(String, nullable=False)
    amount_total = sa.Column(Integer, nullable=False)
    status = sa.Column(String, nullable=False, default="active")
    stripe_customer_id = sa.Column(String, nullable=True)
    stripe_subscription_id = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = sa.Column(String, primary_key=True, default=_new_id)
    stripe_session_id = sa.Column(String, nullable=False, unique=True, index=True)
    physician_id = sa.Column(String, nullable=False, index=True)
    plan = sa.Column(String, nullable=False)
    amount = sa.Column(Integer, nullable=False)
    status = sa.Column(String, nullable=False, default="pending")
    expires_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class TreatmentHistory(Base):
    __tablename__ = "treatment_histories"

    id = sa.Column(String, primary_key=True, default=_new_id)
    patient_name = sa.Column(String, nullable=True)
    dob = sa.Column(String, nullable=True)
    claim_number = sa.Column(String, nullable=True)
    physician_id = sa.Column(String, nullable=False, index=True)
    history_data = sa.Column(sa.JSON, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PatientQuiz(Base):
    __tablename__ = "patient_quizzes"

    id = sa.Column(String, primary_key=True, default=_new_id)
    patient_name = sa.Column(String, nullable=False, index=True)
    dob = sa.Column(String, nullable=True)
    doi = sa.Column(String, nullable=True)
    claim_number = sa.Column(String, nullable=True)
    lang = sa.Column(String, nullable=False, default="en")
    body_areas = sa.Column(Text, nullable=True)
    new_appointments = sa.Column(sa.JSON, nullable=True)
    refill = sa.Column(sa.JSON, nullable=True)
    adl = sa.Column(sa.JSON, nullable=True)
    therapies = sa.Column(sa.JSON, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class PatientIntakeUpdate(Base):
    __tablename__ = "patient_intake_updates"

    id = sa.Column(String, primary_key=True, default=_new_id)
    patient_name = sa.Column(String, nullable=False, index=True)
    dob = sa.Column(String, nullable=True)
    claim_number = sa.Column(String, nullable=True)
    document_id = sa.Column(String, ForeignKey("documents.id"), nullable=True)
    generated_points = sa.Column(sa.JSON, nullable=True)
    adl_effect_points = sa.Column(sa.JSON, nullable=True)
    intake_patient_points = sa.Column(sa.JSON, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    document = sa.orm.relationship(Document)


class IntakeLink(Base):
    __tablename__ = "intake_links"

    id = sa.Column(String, primary_key=True, default=_new_id)
    token = sa.Column(Text, nullable=False)
    patient_name = sa.Column(String, nullable=False)
    date_of_birth = sa.Column(DateTime(timezone=True), nullable=False)
    claim_number = sa.Column(String, nullable=True)
    visit_type = sa.Column(String, nullable=True)
    language = sa.Column(String, nullable=True)
    mode = sa.Column(String, nullable=True)
    body_parts = sa.Column(Text, nullable=True)
    expires_in_days = sa.Column(Integer, nullable=False, default=7)
    require_auth = sa.Column(Boolean, nullable=False, default=True)
    expires_at = sa.Column(DateTime(timezone=True), nullable=True)
    physician_id = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.Index("idx_intake_links_patient", "patient_name", "date_of_birth"),
    )


class WorkflowStats(Base):
    __tablename__ = "workflow_stats"

    id = sa.Column(String, primary_key=True, default=_new_id)
    date = sa.Column(DateTime(timezone=True), nullable=False, index=True)
    referrals_processed = sa.Column(Integer, nullable=False, default=0)
    rfas_monitored = sa.Column(Integer, nullable=False, default=0)
    qme_upcoming = sa.Column(Integer, nullable=False, default=0)
    payer_disputes = sa.Column(Integer, nullable=False, default=0)
    external_docs = sa.Column(Integer, nullable=False, default=0)
    intakes_created = sa.Column(Integer, nullable=False, default=0)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class FailDoc(Base):
    __tablename__ = "fail_docs"

    id = sa.Column(String, primary_key=True, default=_new_id)
    reason = sa.Column(Text, nullable=True)
    dob = sa.Column(String, nullable=True)
    doi = sa.Column(String, nullable=True)
    claim_number = sa.Column(String, nullable=True)
    patient_name = sa.Column(String, nullable=True)
    document_text = sa.Column(Text, nullable=True)
    physician_id = sa.Column(String, nullable=True, index=True)
    gcs_file_link = sa.Column(Text, nullable=True)
    file_name = sa.Column(String, nullable=True)
    file_hash = sa.Column(String, nullable=True)
    blob_path = sa.Column(Text, nullable=True)
    summary = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = sa.Column(String, primary_key=True, default=_new_id)
    user_id = sa.Column(String, nullable=True, index=True)
    email = sa.Column(String, nullable=True)
    action = sa.Column(Text, nullable=False)
    path = sa.Column(String, nullable=True)
    method = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


__all__ = [
    "ADL",
    "Alert",
    "AuditLog",
    "Base",
    "BodyPartSnapshot",
    "CheckoutSession",
    "Document",
    "DocumentSummary",
    "FailDoc",
    "IntakeLink",
    "PatientIntakeUpdate",
    "PatientQuiz",
    "Subscription",
    "Task",
    "TreatmentHistory",
    "User",
    "UserRole",
    "WorkflowStats",
]
