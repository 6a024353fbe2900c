"""
Sync trigger endpoints for the CRM reconciliation passes.

Endpoints:
- POST /api/sync/pull            - Import CRM tasks
- POST /api/sync/pull-contacts   - Import CRM contacts as customers
- POST /api/sync/push            - Push approved tasks / sales submissions
- POST /api/sync/push-customers  - Push customers as CRM contacts

Each pass runs inline, bounded by SYNC_PASS_TIMEOUT_SECONDS.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_connector, get_current_actor, get_record_store
from config import settings
from connectors.base import CRMConnector
from connectors.models import ActorRef, SyncEntity
from services.reconciliation import (
    PullFilter,
    PullResult,
    PushFilter,
    PushResult,
    ReconciliationEngine,
)
from services.record_store import RecordStore
from services.sync_errors import RecordValidationError

router = APIRouter()
logger = logging.getLogger(__name__)

T = TypeVar("T")


class PushRequest(PushFilter):
    """Request body for a push pass."""

    entity: SyncEntity = SyncEntity.TASK


def get_engine(
    store: RecordStore = Depends(get_record_store),
    connector: CRMConnector = Depends(get_connector),
) -> ReconciliationEngine:
    return ReconciliationEngine(store, connector)


async def _run_pass(name: str, coro: Awaitable[T]) -> T:
    try:
        return await asyncio.wait_for(coro, timeout=settings.SYNC_PASS_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(
            "[Sync] %s pass timed out after %ss", name, settings.SYNC_PASS_TIMEOUT_SECONDS
        )
        raise HTTPException(status_code=504, detail=f"{name} pass timed out")


@router.post("/pull", response_model=PullResult)
async def pull_tasks(
    body: PullFilter,
    actor: ActorRef = Depends(get_current_actor),
    engine: ReconciliationEngine = Depends(get_engine),
) -> PullResult:
    """Import CRM tasks into local tasks."""
    logger.info("[Sync] Pull requested by %s", actor.id)
    return await _run_pass("pull", engine.pull(actor, body))


@router.post("/pull-contacts", response_model=PullResult)
async def pull_contacts(
    body: PullFilter,
    actor: ActorRef = Depends(get_current_actor),
    engine: ReconciliationEngine = Depends(get_engine),
) -> PullResult:
    """Import CRM contacts into local customers."""
    logger.info("[Sync] Contact pull requested by %s", actor.id)
    return await _run_pass("pull-contacts", engine.pull_contacts(actor, body))


@router.post("/push", response_model=PushResult)
async def push_records(
    body: PushRequest,
    actor: ActorRef = Depends(get_current_actor),
    engine: ReconciliationEngine = Depends(get_engine),
) -> PushResult:
    """Push approved records of one entity to the CRM."""
    logger.info("[Sync] Push of %s (%s) requested by %s", body.entity, body.mode, actor.id)
    push_filter = PushFilter(mode=body.mode, limit=body.limit)
    try:
        return await _run_pass("push", engine.push(body.entity, push_filter))
    except RecordValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)


@router.post("/push-customers", response_model=PushResult)
async def push_customers(
    body: PushFilter,
    actor: ActorRef = Depends(get_current_actor),
    engine: ReconciliationEngine = Depends(get_engine),
) -> PushResult:
    """Push customers to the CRM as contacts."""
    logger.info("[Sync] Customer push requested by %s", actor.id)
    return await _run_pass("push-customers", engine.push_customers(body))
