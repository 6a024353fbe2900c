"""
Approval workflow for tasks, visit targets and sales submissions.

States: Pending, Approved, Rejected.

    create          -> Pending (Approved for elevated actors / imports)
    Pending         -> Approved (approve) | Rejected (reject, reason required)
    Approved        -> Pending (reopen)
    Rejected        -> Pending (reopen)

Repeating a transition into the current state is a no-op with no side
effects.  Approved <-> Rejected directly is refused.

Side effects of an approval run after the local commit and never reach the
caller: visit targets get their companion Visit task, tasks and sales
submissions get pushed to the CRM, and sales submissions add their amount to
the salesman's active revenue targets.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from connectors.models import (
    ActorRef,
    ApprovableRecord,
    ApprovalStatus,
    Provenance,
    SalesSubmissionRecord,
    SyncEntity,
    TaskPriority,
    TaskRecord,
    TaskType,
    VisitTargetRecord,
)
from services.record_store import RecordStore
from services.side_effects import SideEffectDispatcher
from services.sync_errors import (
    ConsistencyViolation,
    InvalidTransitionError,
    RecordNotFoundError,
    RecordValidationError,
)
from services.timestamps import utcnow

logger = logging.getLogger(__name__)

APPROVABLE_ENTITIES: frozenset[SyncEntity] = frozenset(
    {SyncEntity.TASK, SyncEntity.VISIT_TARGET, SyncEntity.SALES_SUBMISSION}
)

_CLEARED_APPROVAL: dict[str, Any] = {"approved_by": None, "approved_at": None}
_CLEARED_REJECTION: dict[str, Any] = {
    "rejected_by": None,
    "rejected_at": None,
    "rejection_reason": None,
}


def initial_status(actor: ActorRef, provenance: Provenance) -> ApprovalStatus:
    """Status a newly created record enters with."""
    if provenance == Provenance.EXTERNAL:
        return ApprovalStatus.APPROVED
    if actor.is_elevated:
        return ApprovalStatus.APPROVED
    return ApprovalStatus.PENDING


def companion_priority(priority: Optional[str]) -> TaskPriority:
    """Visit-target priority -> task priority (unknown values become Medium)."""
    try:
        return TaskPriority(priority) if priority else TaskPriority.MEDIUM
    except ValueError:
        return TaskPriority.MEDIUM


class ApprovalWorkflow:
    """State machine over the record store with side-effect fan-out."""

    def __init__(self, store: RecordStore, dispatcher: SideEffectDispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _create(
        self,
        entity: SyncEntity,
        record: ApprovableRecord,
        actor: ActorRef,
    ) -> ApprovableRecord:
        status = initial_status(actor, Provenance.APP)
        now = utcnow()
        update: dict[str, Any] = {
            "created_by": actor.id,
            "provenance": Provenance.APP,
            "approval_status": status,
            **_CLEARED_APPROVAL,
            **_CLEARED_REJECTION,
        }
        if status == ApprovalStatus.APPROVED:
            update.update({"approved_by": actor.id, "approved_at": now})

        stored = await self._store.insert(entity, record.model_copy(update=update))
        logger.info(
            "[Approvals] Created %s %s as %s by %s",
            entity, stored.id, status, actor.id,
        )
        if status == ApprovalStatus.APPROVED:
            await self._after_approval(entity, stored, actor)
        return stored

    async def create_task(self, record: TaskRecord, actor: ActorRef) -> TaskRecord:
        return await self._create(SyncEntity.TASK, record, actor)

    async def create_visit_target(
        self,
        record: VisitTargetRecord,
        actor: ActorRef,
    ) -> VisitTargetRecord:
        return await self._create(SyncEntity.VISIT_TARGET, record, actor)

    async def create_sales_submission(
        self,
        record: SalesSubmissionRecord,
        actor: ActorRef,
    ) -> SalesSubmissionRecord:
        return await self._create(SyncEntity.SALES_SUBMISSION, record, actor)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _load(self, entity: SyncEntity, record_id: uuid.UUID) -> ApprovableRecord:
        if entity not in APPROVABLE_ENTITIES:
            raise RecordValidationError("entity", f"{entity} has no approval workflow")
        record = await self._store.find_one(entity, id=record_id)
        if record is None:
            raise RecordNotFoundError(str(entity), record_id)
        return record

    async def approve(
        self,
        entity: SyncEntity,
        record_id: uuid.UUID,
        actor: ActorRef,
    ) -> ApprovableRecord:
        record = await self._load(entity, record_id)
        if record.approval_status == ApprovalStatus.APPROVED:
            logger.info("[Approvals] %s %s already approved, nothing to do", entity, record_id)
            return record
        if record.approval_status == ApprovalStatus.REJECTED:
            raise InvalidTransitionError(str(entity), record_id, record.approval_status, "approve")

        updated = await self._store.update(
            entity,
            record_id,
            {
                "approval_status": ApprovalStatus.APPROVED,
                "approved_by": actor.id,
                "approved_at": utcnow(),
                **_CLEARED_REJECTION,
            },
        )
        logger.info("[Approvals] %s %s approved by %s", entity, record_id, actor.id)
        await self._after_approval(entity, updated, actor)
        return updated

    async def reject(
        self,
        entity: SyncEntity,
        record_id: uuid.UUID,
        actor: ActorRef,
        reason: Optional[str],
    ) -> ApprovableRecord:
        if not reason or not reason.strip():
            raise RecordValidationError("rejection_reason", "A rejection reason is required")

        record = await self._load(entity, record_id)
        if record.approval_status == ApprovalStatus.REJECTED:
            logger.info("[Approvals] %s %s already rejected, nothing to do", entity, record_id)
            return record
        if record.approval_status == ApprovalStatus.APPROVED:
            raise InvalidTransitionError(str(entity), record_id, record.approval_status, "reject")

        updated = await self._store.update(
            entity,
            record_id,
            {
                "approval_status": ApprovalStatus.REJECTED,
                "rejected_by": actor.id,
                "rejected_at": utcnow(),
                "rejection_reason": reason.strip(),
                **_CLEARED_APPROVAL,
            },
        )
        logger.info("[Approvals] %s %s rejected by %s", entity, record_id, actor.id)
        return updated

    async def reopen(
        self,
        entity: SyncEntity,
        record_id: uuid.UUID,
        actor: ActorRef,
    ) -> ApprovableRecord:
        record = await self._load(entity, record_id)
        if record.approval_status == ApprovalStatus.PENDING:
            return record

        updated = await self._store.update(
            entity,
            record_id,
            {
                "approval_status": ApprovalStatus.PENDING,
                **_CLEARED_APPROVAL,
                **_CLEARED_REJECTION,
            },
        )
        logger.info(
            "[Approvals] %s %s reopened by %s (was %s)",
            entity, record_id, actor.id, record.approval_status,
        )
        return updated

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _after_approval(
        self,
        entity: SyncEntity,
        record: ApprovableRecord,
        actor: ActorRef,
    ) -> None:
        if entity == SyncEntity.VISIT_TARGET:
            self._dispatcher.schedule_companion_task(record.id, actor.id)
            return

        self._dispatcher.schedule_push(entity, record.id)

        if entity == SyncEntity.SALES_SUBMISSION:
            assert isinstance(record, SalesSubmissionRecord)
            try:
                await self._store.increment_revenue_targets(
                    record.salesman_id, record.sales_date, record.sales_amount
                )
            except Exception as exc:
                logger.error(
                    "[Approvals] Failed to update sales targets for submission %s: %s",
                    record.id, exc,
                    extra={"record_id": str(record.id), "salesman_id": str(record.salesman_id)},
                )

    async def ensure_companion_task(
        self,
        visit_target_id: uuid.UUID,
        actor: ActorRef,
    ) -> Optional[TaskRecord]:
        """Create the Visit task for an approved visit target unless one exists.

        Returns the companion task (new or existing), or None when the visit
        target is gone.  A push is scheduled only for a newly created task.
        """
        target = await self._store.find_one(SyncEntity.VISIT_TARGET, id=visit_target_id)
        if target is None:
            logger.warning("[Approvals] Visit target %s not found for companion task", visit_target_id)
            return None
        assert isinstance(target, VisitTargetRecord)

        existing = await self._store.find_one(
            SyncEntity.TASK, visit_target_id=target.id, type=TaskType.VISIT
        )
        if existing is not None:
            return existing

        now = utcnow()
        task = TaskRecord(
            type=TaskType.VISIT,
            priority=companion_priority(target.priority),
            subject=f"Visit: {target.name}",
            description=target.description,
            due_date=target.visit_date or now,
            owner_id=target.salesman_id,
            visit_target_id=target.id,
            approval_status=ApprovalStatus.APPROVED,
            approved_by=actor.id,
            approved_at=now,
            provenance=Provenance.APP,
            created_by=actor.id,
        )
        try:
            stored = await self._store.insert(SyncEntity.TASK, task)
        except ConsistencyViolation:
            # Lost a race with a concurrent job; the winner's task stands.
            return await self._store.find_one(
                SyncEntity.TASK, visit_target_id=target.id, type=TaskType.VISIT
            )

        logger.info(
            "[Approvals] Created companion task %s for visit target %s",
            stored.id, target.id,
        )
        self._dispatcher.schedule_push(SyncEntity.TASK, stored.id)
        return stored
