"""
Reconciliation engine: batched, idempotent pull and push passes between the
local record store and the CRM.

Pull (CRM -> local):
  - ``pull``           tasks, upserted by ``external_id``
  - ``pull_contacts``  contacts, upserted into customers by normalized email

Push (local -> CRM):
  - ``push`` / ``push_one``  approved tasks (as CRM tasks) and sales
    submissions (as CRM orders), then associated to the customer's contact
  - ``push_customers``       customers as CRM contacts

Every pass is a single sequential loop over one bounded batch.  Item errors
are caught, counted and logged with the item's identifiers; they never abort
the pass.  Repeating a pass without external changes creates nothing new:
pull upserts by key, push only creates when no ``external_id`` is stored.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from config import get_sync_page_size
from connectors.base import CRMConnector, ExternalAPIError, ListFilter
from connectors.models import (
    ActorRef,
    ApprovableRecord,
    ApprovalStatus,
    CustomerRecord,
    DerivedStatus,
    Provenance,
    SalesSubmissionRecord,
    SyncableRecord,
    SyncEntity,
    TaskPriority,
    TaskRecord,
    TaskType,
    is_valid_email,
    merge_imported_customer,
    merge_imported_task,
    normalize_email,
)
from services.association_resolution import AssociationResolver, association_ids
from services.owner_resolution import OwnerResolver, owner_display_name
from services.record_store import PushMode, RecordStore
from services.sync_errors import (
    ASSOCIATION_FAILED_MESSAGE,
    NO_CONTACT_MESSAGE,
    ConsistencyViolation,
    RecordValidationError,
    is_association_error,
)
from services.timestamps import as_utc, parse_timestamp, to_epoch_millis, utcnow

logger = logging.getLogger(__name__)

PUSHABLE_ENTITIES: frozenset[SyncEntity] = frozenset(
    {SyncEntity.TASK, SyncEntity.SALES_SUBMISSION}
)

# CRM object type each pushable entity becomes
_CRM_OBJECT_TYPES: dict[SyncEntity, str] = {
    SyncEntity.TASK: "tasks",
    SyncEntity.SALES_SUBMISSION: "orders",
}

_HS_TASK_TYPES: dict[TaskType, str] = {
    TaskType.CALL: "CALL",
    TaskType.EMAIL: "EMAIL",
}

_HS_TASK_PRIORITIES: dict[TaskPriority, str] = {
    TaskPriority.LOW: "LOW",
    TaskPriority.MEDIUM: "MEDIUM",
    TaskPriority.HIGH: "HIGH",
    TaskPriority.URGENT: "HIGH",
}


# ---------------------------------------------------------------------------
# Filters and results
# ---------------------------------------------------------------------------


class PullFilter(BaseModel):
    limit: Optional[int] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    @model_validator(mode="after")
    def check_window(self) -> "PullFilter":
        if (self.window_start is None) != (self.window_end is None):
            raise ValueError("window_start and window_end must be given together")
        if self.window_start is not None and self.window_end is not None:
            if as_utc(self.window_start) > as_utc(self.window_end):
                raise ValueError("window_start must not be after window_end")
        return self


class PullResult(BaseModel):
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0


class PushFilter(BaseModel):
    mode: PushMode = PushMode.DEFAULT
    limit: Optional[int] = None


class PushFailure(BaseModel):
    record_id: str
    message: str


class PushResult(BaseModel):
    attempted: int = 0
    synced: int = 0
    skipped: int = 0
    failed: list[PushFailure] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------


def map_task_type(raw: Optional[str]) -> TaskType:
    value = (raw or "").strip().lower()
    if "email" in value:
        return TaskType.EMAIL
    if "visit" in value or "meeting" in value:
        return TaskType.VISIT
    return TaskType.CALL


def map_task_priority(raw: Optional[str]) -> TaskPriority:
    value = (raw or "").strip().lower()
    if "urgent" in value:
        return TaskPriority.URGENT
    if "high" in value:
        return TaskPriority.HIGH
    if "low" in value:
        return TaskPriority.LOW
    return TaskPriority.MEDIUM


def is_completed_status(raw: Optional[str]) -> bool:
    return "complete" in (raw or "").lower()


def _text(props: dict[str, Any], field: str) -> Optional[str]:
    """A property as stripped text; structured values are malformed."""
    value = props.get(field)
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise RecordValidationError(field, f"expected text, got {type(value).__name__}")
    text = str(value).strip()
    return text or None


def task_properties(record: TaskRecord) -> dict[str, Any]:
    """CRM task properties for a local task."""
    properties: dict[str, Any] = {
        "hs_task_subject": record.subject or f"{record.type} follow-up",
        "hs_task_body": record.description or "",
        "hs_task_status": (
            "COMPLETED" if record.derived_status == DerivedStatus.COMPLETED else "NOT_STARTED"
        ),
        "hs_task_priority": _HS_TASK_PRIORITIES.get(record.priority, "MEDIUM"),
        "hs_task_type": _HS_TASK_TYPES.get(record.type, "TODO"),
        "hs_timestamp": to_epoch_millis(record.due_date),
    }
    if record.external_owner_id:
        properties["hubspot_owner_id"] = record.external_owner_id
    return properties


def order_properties(record: SalesSubmissionRecord) -> dict[str, Any]:
    """CRM order properties for a sales submission."""
    label = record.customer_name or record.customer_email or "Customer"
    return {
        "hs_order_name": f"Sales - {label} - {record.sales_date:%Y-%m-%d}",
        "hs_total_price": str(record.sales_amount),
        "hs_external_order_id": str(record.id),
        "hs_external_created_date": to_epoch_millis(record.sales_date),
    }


def contact_properties(customer: CustomerRecord) -> dict[str, Any]:
    """CRM contact properties for a customer."""
    name = (customer.name or "").strip()
    first, _, last = name.partition(" ")
    properties: dict[str, Any] = {
        "email": normalize_email(customer.email),
        "firstname": customer.first_name or first or None,
        "lastname": last.strip() or None,
        "phone": customer.phone,
        "company": customer.company,
        "address": customer.address,
        "city": customer.city,
        "state": customer.state,
        "zip": customer.pincode,
    }
    # hs_lead_status options are portal-specific; NEW is always present
    if customer.status == "Active":
        properties["hs_lead_status"] = "NEW"
    return {k: v for k, v in properties.items() if v not in (None, "")}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Runs pull and push passes over a record store and a CRM connector."""

    def __init__(self, store: RecordStore, connector: CRMConnector) -> None:
        self._store = store
        self._connector = connector

    # ------------------------------------------------------------------
    # Pull: tasks
    # ------------------------------------------------------------------

    async def pull(self, actor: ActorRef, pull_filter: Optional[PullFilter] = None) -> PullResult:
        pull_filter = pull_filter or PullFilter()
        limit = get_sync_page_size(pull_filter.limit)
        result = PullResult()

        items = await self._connector.list_tasks(
            ListFilter(
                limit=limit,
                window_start=pull_filter.window_start,
                window_end=pull_filter.window_end,
            )
        )
        items = items[:limit]
        result.fetched = len(items)
        logger.info("[Reconciliation] Pull fetched %d CRM tasks", result.fetched)

        # Per-pass caches live on the resolvers
        owners = OwnerResolver(self._store, self._connector)
        associations = AssociationResolver(self._connector)

        for item in items:
            external_id = str(item.get("id") or "").strip()
            if not external_id:
                result.skipped += 1
                logger.warning("[Reconciliation] Skipping CRM task without id")
                continue

            try:
                incoming, keep = await self._build_task(
                    external_id, item, actor, owners, associations
                )
                created = await self._upsert_task(incoming, actor, keep)
            except ConsistencyViolation as exc:
                result.skipped += 1
                logger.error(
                    "[Reconciliation] Consistency violation importing task %s: %s",
                    external_id, exc,
                    extra={"external_id": external_id, "field": exc.field},
                )
                continue
            except Exception as exc:
                result.skipped += 1
                logger.warning(
                    "[Reconciliation] Failed to import task %s: %s",
                    external_id, exc,
                    extra={"external_id": external_id, "field": getattr(exc, "field", None)},
                )
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1

        logger.info(
            "[Reconciliation] Pull done: created=%d updated=%d skipped=%d",
            result.created, result.updated, result.skipped,
        )
        return result

    async def _build_task(
        self,
        external_id: str,
        item: dict[str, Any],
        actor: ActorRef,
        owners: OwnerResolver,
        associations: AssociationResolver,
    ) -> tuple[TaskRecord, frozenset[str]]:
        """Canonical record for a CRM task, plus the fields filled by fallback."""
        props: dict[str, Any] = item.get("properties") or {}
        now = utcnow()
        fallback_fields: set[str] = set()

        due_date = parse_timestamp(props.get("hs_timestamp") or props.get("hs_createdate"))
        if due_date is None:
            due_date = now
            fallback_fields.add("due_date")
        external_status = _text(props, "hs_task_status")

        # Owner
        external_owner_id = _text(props, "hubspot_owner_id")
        owner = await owners.fetch_owner(external_owner_id)
        owner_email: Optional[str] = (owner or {}).get("email") or None
        owner_name = owner_display_name(owner)
        local_owner = await owners.match(external_owner_id, owner_email, owner_name)
        if local_owner is None:
            local_owner = actor
            fallback_fields.add("owner_id")

        # Contact / company
        contact = await associations.resolve_contact(association_ids(item, "contacts"))
        company = await associations.resolve_company(
            contact.contact_id,
            contact.company_property,
            association_ids(item, "companies"),
            contact.company_ids,
        )

        customer_id: Optional[uuid.UUID] = None
        if contact.email:
            customer = await self._store.find_one(SyncEntity.CUSTOMER, email=contact.email)
            if customer is not None:
                customer_id = customer.id

        completed = is_completed_status(external_status)
        record = TaskRecord(
            external_id=external_id,
            type=map_task_type(_text(props, "hs_task_type")),
            priority=map_task_priority(_text(props, "hs_task_priority")),
            derived_status=DerivedStatus.COMPLETED if completed else DerivedStatus.UPCOMING,
            subject=_text(props, "hs_task_subject"),
            description=_text(props, "hs_task_body"),
            due_date=due_date,
            completed_date=now if completed else None,
            owner_id=local_owner.id,
            customer_id=customer_id,
            customer_name=contact.name,
            customer_email=contact.email,
            customer_phone=contact.phone,
            external_owner_id=external_owner_id,
            external_owner_name=owner_name,
            external_owner_email=owner_email,
            external_contact_id=contact.contact_id,
            external_contact_name=contact.name,
            external_contact_email=contact.email,
            external_company_id=company.company_id,
            external_company_name=company.company_name,
            external_company_domain=company.company_domain,
            external_status=external_status,
            approval_status=ApprovalStatus.APPROVED,
            approved_by=actor.id,
            approved_at=now,
            provenance=Provenance.EXTERNAL,
            last_synced_at=now,
        )
        return record, frozenset(fallback_fields)

    async def _upsert_task(
        self,
        incoming: TaskRecord,
        actor: ActorRef,
        keep: frozenset[str] = frozenset(),
    ) -> bool:
        existing = await self._store.find_one(SyncEntity.TASK, external_id=incoming.external_id)
        assert existing is None or isinstance(existing, TaskRecord)

        patch = merge_imported_task(existing, incoming, keep)
        if existing is not None and is_completed_status(incoming.external_status):
            patch.update(self._completion_patch(existing, actor))
        patch["last_synced_at"] = incoming.last_synced_at

        _, created = await self._store.upsert_by_key(
            SyncEntity.TASK, "external_id", incoming, patch
        )
        return created

    @staticmethod
    def _completion_patch(existing: TaskRecord, actor: ActorRef) -> dict[str, Any]:
        """Completed externally: mark complete and approve a pending task."""
        now = utcnow()
        patch: dict[str, Any] = {"derived_status": DerivedStatus.COMPLETED}
        if existing.completed_date is None:
            patch["completed_date"] = now
        if existing.approval_status == ApprovalStatus.PENDING:
            patch.update(
                {
                    "approval_status": ApprovalStatus.APPROVED,
                    "approved_by": actor.id,
                    "approved_at": now,
                }
            )
        return patch

    # ------------------------------------------------------------------
    # Pull: contacts
    # ------------------------------------------------------------------

    async def pull_contacts(
        self,
        actor: ActorRef,
        pull_filter: Optional[PullFilter] = None,
    ) -> PullResult:
        pull_filter = pull_filter or PullFilter()
        limit = get_sync_page_size(pull_filter.limit)
        result = PullResult()

        items = (await self._connector.list_contacts(ListFilter(limit=limit)))[:limit]
        result.fetched = len(items)

        for item in items:
            external_id = str(item.get("id") or "").strip()
            try:
                incoming = self._build_customer(external_id, item)
                if incoming is None:
                    result.skipped += 1
                    continue
                existing = await self._store.find_one(SyncEntity.CUSTOMER, email=incoming.email)
                assert existing is None or isinstance(existing, CustomerRecord)
                patch = merge_imported_customer(existing, incoming)
                patch["last_synced_at"] = incoming.last_synced_at
                _, created = await self._store.upsert_by_key(
                    SyncEntity.CUSTOMER, "email", incoming, patch
                )
            except ConsistencyViolation as exc:
                result.skipped += 1
                logger.error(
                    "[Reconciliation] Consistency violation importing contact %s: %s",
                    external_id, exc,
                    extra={"external_id": external_id, "field": exc.field},
                )
                continue
            except Exception as exc:
                result.skipped += 1
                logger.warning(
                    "[Reconciliation] Failed to import contact %s: %s",
                    external_id, exc,
                    extra={"external_id": external_id, "field": getattr(exc, "field", None)},
                )
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1

        logger.info(
            "[Reconciliation] Contact pull by %s: fetched=%d created=%d updated=%d skipped=%d",
            actor.id, result.fetched, result.created, result.updated, result.skipped,
        )
        return result

    @staticmethod
    def _build_customer(external_id: str, item: dict[str, Any]) -> Optional[CustomerRecord]:
        props: dict[str, Any] = item.get("properties") or {}
        email = normalize_email(_text(props, "email"))
        if not is_valid_email(email):
            return None

        first = _text(props, "firstname")
        last = _text(props, "lastname")
        name = " ".join(part for part in (first, last) if part) or email
        return CustomerRecord(
            external_id=external_id or None,
            name=name,
            first_name=first,
            email=email,
            phone=_text(props, "phone"),
            company=_text(props, "company"),
            address=_text(props, "address"),
            city=_text(props, "city"),
            state=_text(props, "state"),
            pincode=_text(props, "zip"),
            provenance=Provenance.EXTERNAL,
            last_synced_at=utcnow(),
        )

    # ------------------------------------------------------------------
    # Push: tasks and sales submissions
    # ------------------------------------------------------------------

    async def push(self, entity: SyncEntity, push_filter: Optional[PushFilter] = None) -> PushResult:
        entity = SyncEntity(entity)
        if entity not in PUSHABLE_ENTITIES:
            raise RecordValidationError("entity", f"{entity} cannot be pushed")
        push_filter = push_filter or PushFilter()
        limit = get_sync_page_size(push_filter.limit)
        result = PushResult()

        candidates = await self._store.find_push_candidates(entity, push_filter.mode, limit)
        logger.info(
            "[Reconciliation] Push %s (%s): %d candidates",
            entity, push_filter.mode, len(candidates),
        )
        for record in candidates:
            assert isinstance(record, ApprovableRecord)
            await self._push_record(entity, record, result)

        logger.info(
            "[Reconciliation] Push %s done: attempted=%d synced=%d failed=%d",
            entity, result.attempted, result.synced, len(result.failed),
        )
        return result

    async def push_one(self, entity: SyncEntity, record_id: uuid.UUID) -> PushResult:
        """Push a single record if it is approved and still needs it."""
        entity = SyncEntity(entity)
        if entity not in PUSHABLE_ENTITIES:
            raise RecordValidationError("entity", f"{entity} cannot be pushed")
        result = PushResult()

        record = await self._store.find_one(entity, id=record_id)
        if record is None:
            result.failed.append(PushFailure(record_id=str(record_id), message="Record not found"))
            return result
        assert isinstance(record, ApprovableRecord)

        needs_push = record.external_id is None or is_association_error(record.last_sync_error)
        if record.approval_status != ApprovalStatus.APPROVED or not needs_push:
            result.skipped += 1
            return result

        await self._push_record(entity, record, result)
        return result

    async def _push_record(
        self,
        entity: SyncEntity,
        record: ApprovableRecord,
        result: PushResult,
    ) -> None:
        result.attempted += 1
        now = utcnow()
        try:
            contact_id = await self._resolve_contact_for(record)

            external_id = record.external_id
            if not external_id:
                external_id = await self._create_external(entity, record)
                # Persist immediately so a later failure can never cause a
                # second create for the same record
                await self._store.update(
                    entity,
                    record.id,
                    {"external_id": external_id, "last_synced_at": now, "last_sync_error": None},
                )

            error: Optional[str] = None
            if contact_id:
                associated = await self._connector.associate(
                    _CRM_OBJECT_TYPES[entity], external_id, "contacts", contact_id
                )
                if not associated:
                    error = ASSOCIATION_FAILED_MESSAGE
            else:
                error = NO_CONTACT_MESSAGE

            patch: dict[str, Any] = {"last_synced_at": now, "last_sync_error": error}
            if entity == SyncEntity.TASK and contact_id:
                patch["external_contact_id"] = contact_id
            await self._store.update(entity, record.id, patch)
        except ConsistencyViolation as exc:
            logger.error(
                "[Reconciliation] Consistency violation pushing %s %s: %s",
                entity, record.id, exc,
                extra={"record_id": str(record.id), "field": exc.field},
            )
            await self._record_failure(entity, record, str(exc), result)
            return
        except Exception as exc:
            logger.warning(
                "[Reconciliation] Failed to push %s %s: %s",
                entity, record.id, exc,
                extra={"record_id": str(record.id), "external_id": record.external_id},
            )
            await self._record_failure(entity, record, str(exc), result)
            return

        if error:
            logger.info("[Reconciliation] %s %s synced with warning: %s", entity, record.id, error)
        result.synced += 1

    async def _record_failure(
        self,
        entity: SyncEntity,
        record: SyncableRecord,
        message: str,
        result: PushResult,
    ) -> None:
        result.failed.append(PushFailure(record_id=str(record.id), message=message))
        try:
            await self._store.update(
                entity, record.id, {"last_sync_error": message, "last_synced_at": utcnow()}
            )
        except Exception as exc:
            logger.error(
                "[Reconciliation] Could not record sync error on %s %s: %s",
                entity, record.id, exc,
            )

    async def _create_external(self, entity: SyncEntity, record: ApprovableRecord) -> str:
        if entity == SyncEntity.TASK:
            assert isinstance(record, TaskRecord)
            created = await self._connector.create_task(task_properties(record))
        else:
            assert isinstance(record, SalesSubmissionRecord)
            created = await self._connector.create_order(order_properties(record))
        external_id = str(created.get("id") or "").strip()
        if not external_id or external_id == "None":
            raise ExternalAPIError(None, f"CRM returned no id for new {entity}")
        return external_id

    async def _resolve_contact_for(self, record: ApprovableRecord) -> Optional[str]:
        """CRM contact id for the record's customer, creating the contact if needed."""
        if isinstance(record, TaskRecord) and record.external_contact_id:
            return record.external_contact_id

        customer: Optional[CustomerRecord] = None
        customer_id: Optional[uuid.UUID] = getattr(record, "customer_id", None)
        if customer_id is not None:
            found = await self._store.find_one(SyncEntity.CUSTOMER, id=customer_id)
            if isinstance(found, CustomerRecord):
                customer = found

        email = normalize_email(getattr(record, "customer_email", None))
        if not email and customer is not None:
            email = customer.email
        if not is_valid_email(email):
            return None
        assert email is not None

        if customer is not None and customer.external_id and customer.email == email:
            return customer.external_id

        contact = await self._connector.search_contact_by_email(email)
        if contact is None:
            source = customer or CustomerRecord(
                name=getattr(record, "customer_name", None),
                email=email,
                phone=getattr(record, "customer_phone", None),
            )
            contact = await self._connector.create_or_update_contact(contact_properties(source))
        contact_id = str(contact.get("id") or "").strip() or None

        if contact_id and customer is not None and customer.external_id is None:
            await self._store.update(
                SyncEntity.CUSTOMER,
                customer.id,
                {"external_id": contact_id, "last_synced_at": utcnow()},
            )
        return contact_id

    # ------------------------------------------------------------------
    # Push: customers
    # ------------------------------------------------------------------

    async def push_customers(self, push_filter: Optional[PushFilter] = None) -> PushResult:
        push_filter = push_filter or PushFilter()
        limit = get_sync_page_size(push_filter.limit)
        result = PushResult()

        candidates = await self._store.find_push_candidates(
            SyncEntity.CUSTOMER, push_filter.mode, limit
        )
        for customer in candidates:
            assert isinstance(customer, CustomerRecord)
            if not is_valid_email(customer.email):
                result.skipped += 1
                continue

            result.attempted += 1
            try:
                contact = await self._connector.create_or_update_contact(
                    contact_properties(customer)
                )
                contact_id = str(contact.get("id") or "").strip()
                if not contact_id:
                    raise ExternalAPIError(None, "CRM returned no contact id")
                await self._store.update(
                    SyncEntity.CUSTOMER,
                    customer.id,
                    {
                        "external_id": contact_id,
                        "last_synced_at": utcnow(),
                        "last_sync_error": None,
                    },
                )
            except ConsistencyViolation as exc:
                logger.error(
                    "[Reconciliation] Consistency violation pushing customer %s: %s",
                    customer.id, exc,
                    extra={"record_id": str(customer.id), "field": exc.field},
                )
                await self._record_failure(SyncEntity.CUSTOMER, customer, str(exc), result)
                continue
            except Exception as exc:
                logger.warning(
                    "[Reconciliation] Failed to push customer %s: %s",
                    customer.id, exc,
                    extra={"record_id": str(customer.id)},
                )
                await self._record_failure(SyncEntity.CUSTOMER, customer, str(exc), result)
                continue
            result.synced += 1

        logger.info(
            "[Reconciliation] Customer push done: attempted=%d synced=%d skipped=%d failed=%d",
            result.attempted, result.synced, result.skipped, len(result.failed),
        )
        return result
