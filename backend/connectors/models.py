"""
Canonical Pydantic record models shared by the record store, the CRM
connector and the reconciliation engine.

Each syncable record mirrors the business columns of the corresponding
SQLAlchemy model plus the ``ExternalRef`` columns (external_id,
last_synced_at, last_sync_error) and ``provenance``.  The record store
converts between the two; services only ever see these models.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator

from config import settings

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SyncEntity(StrEnum):
    TASK = "task"
    VISIT_TARGET = "visit_target"
    CUSTOMER = "customer"
    SALES_SUBMISSION = "sales_submission"


class ApprovalStatus(StrEnum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class Provenance(StrEnum):
    APP = "app"
    EXTERNAL = "external"


class TaskType(StrEnum):
    CALL = "Call"
    VISIT = "Visit"
    EMAIL = "Email"
    QUOTE_FOLLOW_UP = "QuoteFollowUp"
    SAMPLE_FEEDBACK = "SampleFeedback"
    ORDER_CHECK = "OrderCheck"


class TaskPriority(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class DerivedStatus(StrEnum):
    OVERDUE = "Overdue"
    TODAY = "Today"
    UPCOMING = "Upcoming"
    COMPLETED = "Completed"


class VisitStatus(StrEnum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


# ---------------------------------------------------------------------------
# Actors and references
# ---------------------------------------------------------------------------


class ActorRef(BaseModel):
    """The local user on whose behalf an operation runs."""

    id: uuid.UUID
    email: str | None = None
    name: str | None = None
    role: str = "salesman"

    @property
    def is_elevated(self) -> bool:
        return self.role in settings.ELEVATED_ROLES


class ExternalRef(BaseModel):
    """Link between a local record and its CRM counterpart."""

    external_id: str | None = None
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None


class SyncableRecord(BaseModel):
    """Base for every record that carries an ExternalRef and provenance."""

    # Fields recomputed by ``before_save``; the store writes them alongside
    # any patch so that partial updates keep them consistent.
    derived_fields: ClassVar[tuple[str, ...]] = ()

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    external_id: str | None = None
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    provenance: Provenance | None = None
    created_by: uuid.UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("provenance", mode="before")
    @classmethod
    def _blank_provenance_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def external_ref(self) -> ExternalRef:
        return ExternalRef(
            external_id=self.external_id,
            last_synced_at=self.last_synced_at,
            last_sync_error=self.last_sync_error,
        )

    def before_save(self, now: datetime | None = None) -> None:
        """Hook run by the record store before every insert or update."""
        now = now or datetime.now(timezone.utc)
        if self.created_at is None:
            self.created_at = now
        self.updated_at = now


class ApprovableRecord(SyncableRecord):
    """Approval metadata shared by tasks, visit targets and sales submissions."""

    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: uuid.UUID | None = None
    approved_at: datetime | None = None
    rejected_by: uuid.UUID | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None


# ---------------------------------------------------------------------------
# Entity records
# ---------------------------------------------------------------------------


class TaskRecord(ApprovableRecord):
    """A follow-up task."""

    derived_fields: ClassVar[tuple[str, ...]] = ("derived_status",)

    type: TaskType = TaskType.CALL
    priority: TaskPriority = TaskPriority.MEDIUM
    derived_status: DerivedStatus = DerivedStatus.UPCOMING
    subject: str | None = None
    description: str | None = None
    notes: str | None = None
    due_date: datetime
    completed_date: datetime | None = None

    owner_id: uuid.UUID
    customer_id: uuid.UUID | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    visit_target_id: uuid.UUID | None = None

    external_owner_id: str | None = None
    external_owner_name: str | None = None
    external_owner_email: str | None = None
    external_contact_id: str | None = None
    external_contact_name: str | None = None
    external_contact_email: str | None = None
    external_company_id: str | None = None
    external_company_name: str | None = None
    external_company_domain: str | None = None
    external_status: str | None = None

    def before_save(self, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        super().before_save(now)
        self.derived_status = derive_task_status(
            self.due_date, self.derived_status, now.date()
        )


class VisitTargetRecord(ApprovableRecord):
    """A planned visit."""

    name: str
    description: str | None = None
    salesman_id: uuid.UUID
    status: VisitStatus = VisitStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None
    visit_date: datetime | None = None
    notes: str | None = None


class CustomerRecord(SyncableRecord):
    """A customer contact; ``email`` is the dedup key."""

    name: str | None = None
    first_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    pincode: str | None = None
    status: str = "Not Visited"
    assigned_salesman_id: uuid.UUID | None = None

    def before_save(self, now: datetime | None = None) -> None:
        super().before_save(now)
        self.email = normalize_email(self.email)


class SalesSubmissionRecord(ApprovableRecord):
    """A claimed sale; pushed to the CRM as an order once approved."""

    salesman_id: uuid.UUID
    customer_id: uuid.UUID | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    sales_amount: Decimal = Decimal("0")
    sales_date: datetime
    description: str | None = None
    admin_notes: str | None = None


class SalesTargetRecord(BaseModel):
    """A salesman's goal over a date window."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    salesman_id: uuid.UUID
    target_name: str
    target_type: str = "Revenue"
    target_value: Decimal = Decimal("0")
    period: str | None = None
    start_date: datetime
    end_date: datetime
    current_progress: Decimal = Decimal("0")
    status: str = "Active"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def derive_task_status(
    due_date: datetime,
    current: DerivedStatus | None,
    today: date,
) -> DerivedStatus:
    """Overdue / Today / Upcoming from the due date; Completed is terminal."""
    if current == DerivedStatus.COMPLETED:
        return DerivedStatus.COMPLETED
    if due_date.tzinfo is None:
        due_day = due_date.date()
    else:
        due_day = due_date.astimezone(timezone.utc).date()
    if due_day < today:
        return DerivedStatus.OVERDUE
    if due_day == today:
        return DerivedStatus.TODAY
    return DerivedStatus.UPCOMING


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL_PATTERN.match(email.strip()) is not None


def merge_provenance(existing: Provenance | str | None) -> Provenance:
    """Provenance is sticky: once claimed by the app, imports never change it.

    Unset (or empty) provenance means the record was never claimed and
    becomes external on first import.
    """
    if existing == Provenance.APP:
        return Provenance.APP
    return Provenance.EXTERNAL


# Fields an import pass owns.  Everything else on an existing task (notes,
# approval state, provenance, local customer link) is local-only.
IMPORT_AUTHORITATIVE_TASK_FIELDS: tuple[str, ...] = (
    "subject",
    "description",
    "type",
    "priority",
    "due_date",
    "owner_id",
    "customer_id",
    "customer_name",
    "customer_email",
    "customer_phone",
    "external_owner_id",
    "external_owner_name",
    "external_owner_email",
    "external_contact_id",
    "external_contact_name",
    "external_contact_email",
    "external_company_id",
    "external_company_name",
    "external_company_domain",
    "external_status",
)

IMPORT_AUTHORITATIVE_CUSTOMER_FIELDS: tuple[str, ...] = (
    "name",
    "first_name",
    "phone",
    "company",
    "address",
    "city",
    "state",
    "pincode",
)


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _merge_fields(
    existing: Optional[BaseModel],
    incoming: BaseModel,
    fields: tuple[str, ...],
) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for field in fields:
        value = getattr(incoming, field)
        if not _has_value(value):
            continue
        if existing is None or value != getattr(existing, field):
            patch[field] = value
    return patch


# Pushed to the CRM in a lossy form (unmapped types, Urgent as HIGH); a task
# the app created or a visit-target companion keeps its local values.
LOCAL_TASK_CLASSIFICATION_FIELDS: tuple[str, ...] = ("type", "priority")


def merge_imported_task(
    existing: Optional[TaskRecord],
    incoming: TaskRecord,
    keep: frozenset[str] = frozenset(),
) -> dict[str, Any]:
    """Patch to apply to ``existing`` for a re-imported task.

    Only import-authoritative fields with non-empty incoming values are
    included; provenance is carried through ``merge_provenance``.  With no
    existing record the patch holds every non-empty authoritative field and
    no provenance, so a concurrent insert keeps whatever the winner claimed.

    ``keep`` names fields the importer only filled with a fallback (the
    acting user as owner, ``now`` as due date); an existing record keeps
    its own values for them.
    """
    patch = _merge_fields(existing, incoming, IMPORT_AUTHORITATIVE_TASK_FIELDS)
    if existing is not None:
        locked = set(keep)
        if existing.provenance == Provenance.APP or existing.visit_target_id is not None:
            locked.update(LOCAL_TASK_CLASSIFICATION_FIELDS)
        for field in locked:
            patch.pop(field, None)

        provenance = merge_provenance(existing.provenance)
        if provenance != existing.provenance:
            patch["provenance"] = provenance
    return patch


def merge_imported_customer(
    existing: Optional[CustomerRecord],
    incoming: CustomerRecord,
) -> dict[str, Any]:
    """Patch for a re-imported contact; status and app provenance are kept."""
    patch = _merge_fields(existing, incoming, IMPORT_AUTHORITATIVE_CUSTOMER_FIELDS)
    if _has_value(incoming.external_id) and (
        existing is None or incoming.external_id != existing.external_id
    ):
        patch["external_id"] = incoming.external_id
    if existing is not None:
        provenance = merge_provenance(existing.provenance)
        if provenance != existing.provenance:
            patch["provenance"] = provenance
    return patch
