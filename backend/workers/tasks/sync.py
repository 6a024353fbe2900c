"""
Reconciliation tasks for Celery workers.

Scheduled passes (see ``workers.celery_app``) and the on-demand jobs the
approval workflow enqueues after a commit: pushing a newly approved record
and creating the companion Visit task for an approved visit target.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_engine() -> Any:
    from connectors.hubspot import HubSpotConnector
    from services.reconciliation import ReconciliationEngine
    from services.record_store import SqlRecordStore

    return ReconciliationEngine(SqlRecordStore(), HubSpotConnector())


def _build_workflow() -> Any:
    from services.approvals import ApprovalWorkflow
    from services.record_store import SqlRecordStore
    from services.side_effects import CelerySideEffectDispatcher

    return ApprovalWorkflow(SqlRecordStore(), CelerySideEffectDispatcher())


async def _with_timeout(coro: Any) -> Any:
    """Bound one pass by SYNC_PASS_TIMEOUT_SECONDS."""
    from config import settings

    return await asyncio.wait_for(coro, timeout=settings.SYNC_PASS_TIMEOUT_SECONDS)


async def _load_actor(actor_id: Optional[str]) -> Any:
    """Actor for a background pass; falls back to the configured system actor."""
    from config import settings
    from connectors.models import ActorRef
    from services.record_store import SqlRecordStore

    raw_id = actor_id or settings.SYNC_SYSTEM_ACTOR_ID
    if not raw_id:
        return None
    actor_uuid = UUID(str(raw_id))
    actor = await SqlRecordStore().get_actor(actor_uuid)
    return actor or ActorRef(id=actor_uuid)


def _parse_window(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


async def _pull_tasks(
    actor_id: Optional[str],
    limit: Optional[int],
    window_start: Optional[str],
    window_end: Optional[str],
) -> dict[str, Any]:
    from services.reconciliation import PullFilter

    actor = await _load_actor(actor_id)
    if actor is None:
        logger.warning("[Sync] No actor given and SYNC_SYSTEM_ACTOR_ID is unset, skipping pull")
        return {"status": "skipped", "reason": "no actor configured"}

    pull_filter = PullFilter(
        limit=limit,
        window_start=_parse_window(window_start),
        window_end=_parse_window(window_end),
    )
    result = await _with_timeout(_build_engine().pull(actor, pull_filter))
    return {"status": "completed", **result.model_dump()}


async def _pull_contacts(actor_id: Optional[str], limit: Optional[int]) -> dict[str, Any]:
    from services.reconciliation import PullFilter

    actor = await _load_actor(actor_id)
    if actor is None:
        logger.warning("[Sync] No actor given and SYNC_SYSTEM_ACTOR_ID is unset, skipping contact pull")
        return {"status": "skipped", "reason": "no actor configured"}

    result = await _with_timeout(_build_engine().pull_contacts(actor, PullFilter(limit=limit)))
    return {"status": "completed", **result.model_dump()}


async def _push_records(entity: str, mode: str, limit: Optional[int]) -> dict[str, Any]:
    from services.reconciliation import PushFilter

    push_filter = PushFilter(mode=mode, limit=limit)
    result = await _with_timeout(_build_engine().push(entity, push_filter))
    return {"status": "completed", "entity": entity, **result.model_dump()}


async def _push_pending(mode: str) -> dict[str, Any]:
    from services.reconciliation import PUSHABLE_ENTITIES

    results: dict[str, Any] = {}
    for entity in sorted(PUSHABLE_ENTITIES):
        try:
            results[str(entity)] = await _push_records(str(entity), mode, None)
        except Exception as e:
            logger.error("[Sync] Push of %s (%s) failed: %s", entity, mode, e)
            results[str(entity)] = {"status": "failed", "error": str(e)}
    return {"mode": mode, "results": results}


@celery_app.task(bind=True, name="workers.tasks.sync.pull_tasks")
def pull_tasks(
    self: Any,
    actor_id: Optional[str] = None,
    limit: Optional[int] = None,
    window_start: Optional[str] = None,
    window_end: Optional[str] = None,
) -> dict[str, Any]:
    """
    Celery task to import CRM tasks.

    Args:
        actor_id: UUID of the user the import runs as (defaults to SYNC_SYSTEM_ACTOR_ID)
        limit: Batch size, capped at SYNC_PAGE_SIZE
        window_start: ISO-8601 lower bound on the CRM due timestamp
        window_end: ISO-8601 upper bound on the CRM due timestamp

    Returns:
        Dict with pull counts
    """
    logger.info(f"Task {self.request.id}: Pulling CRM tasks (actor={actor_id})")
    return run_async(_pull_tasks(actor_id, limit, window_start, window_end))


@celery_app.task(bind=True, name="workers.tasks.sync.pull_contacts")
def pull_contacts(
    self: Any,
    actor_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> dict[str, Any]:
    """Celery task to import CRM contacts as customers."""
    logger.info(f"Task {self.request.id}: Pulling CRM contacts (actor={actor_id})")
    return run_async(_pull_contacts(actor_id, limit))


@celery_app.task(bind=True, name="workers.tasks.sync.push_records")
def push_records(
    self: Any,
    entity: str,
    mode: str = "default",
    limit: Optional[int] = None,
) -> dict[str, Any]:
    """Celery task to push one batch of approved records of ``entity``."""
    logger.info(f"Task {self.request.id}: Pushing {entity} records (mode={mode})")
    return run_async(_push_records(entity, mode, limit))


@celery_app.task(bind=True, name="workers.tasks.sync.push_pending_records")
def push_pending_records(self: Any) -> dict[str, Any]:
    """Beat task: push approved tasks and sales submissions not yet in the CRM."""
    logger.info(f"Task {self.request.id}: Pushing records missing a CRM reference")
    return run_async(_push_pending("only_missing_external_ref"))


@celery_app.task(bind=True, name="workers.tasks.sync.retry_failed_associations")
def retry_failed_associations(self: Any) -> dict[str, Any]:
    """Beat task: re-run association for records whose last push left an association error."""
    logger.info(f"Task {self.request.id}: Retrying failed CRM associations")
    return run_async(_push_pending("only_association_error"))


@celery_app.task(bind=True, name="workers.tasks.sync.push_record")
def push_record(self: Any, entity: str, record_id: str) -> dict[str, Any]:
    """
    Celery task to push a single record right after it was approved.

    Args:
        entity: 'task' or 'sales_submission'
        record_id: UUID of the local record

    Returns:
        Dict with the push result for the record
    """
    logger.info(f"Task {self.request.id}: Pushing {entity} {record_id}")

    async def _push_one() -> dict[str, Any]:
        result = await _with_timeout(_build_engine().push_one(entity, UUID(record_id)))
        return {"status": "completed", "entity": entity, "record_id": record_id, **result.model_dump()}

    return run_async(_push_one())


@celery_app.task(bind=True, name="workers.tasks.sync.push_customers")
def push_customers(self: Any, mode: str = "default", limit: Optional[int] = None) -> dict[str, Any]:
    """Celery task to push customers to the CRM as contacts."""
    logger.info(f"Task {self.request.id}: Pushing customers (mode={mode})")

    async def _push() -> dict[str, Any]:
        from services.reconciliation import PushFilter

        result = await _with_timeout(
            _build_engine().push_customers(PushFilter(mode=mode, limit=limit))
        )
        return {"status": "completed", **result.model_dump()}

    return run_async(_push())


async def _ensure_companion_task(visit_target_id: str, actor_id: str) -> dict[str, Any]:
    actor = await _load_actor(actor_id)
    task = await _build_workflow().ensure_companion_task(UUID(visit_target_id), actor)
    if task is None:
        return {"status": "skipped", "visit_target_id": visit_target_id}
    return {"status": "completed", "visit_target_id": visit_target_id, "task_id": str(task.id)}


@celery_app.task(bind=True, name="workers.tasks.sync.ensure_companion_task")
def ensure_companion_task(self: Any, visit_target_id: str, actor_id: str) -> dict[str, Any]:
    """Celery task to create the Visit task for an approved visit target."""
    logger.info(f"Task {self.request.id}: Ensuring companion task for visit target {visit_target_id}")
    return run_async(_ensure_companion_task(visit_target_id, actor_id))
