"""
Approval endpoints for tasks, visit targets and sales submissions.

Endpoints:
- POST /api/{tasks|visit-targets|sales-submissions}/{record_id}/approve
- POST /api/{tasks|visit-targets|sales-submissions}/{record_id}/reject
- POST /api/{tasks|visit-targets|sales-submissions}/{record_id}/reopen

Side effects of an approval (CRM push, companion Visit task, revenue target
progress) are dispatched in the background; the response only reflects the
local state change.
"""
from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.dependencies import get_current_actor, get_dispatcher, get_record_store
from connectors.models import ActorRef, ApprovableRecord, SyncEntity
from services.approvals import ApprovalWorkflow
from services.record_store import RecordStore
from services.side_effects import SideEffectDispatcher
from services.sync_errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    RecordValidationError,
)

router = APIRouter()
logger = logging.getLogger(__name__)

# URL collection -> entity
_COLLECTIONS: dict[str, SyncEntity] = {
    "tasks": SyncEntity.TASK,
    "visit-targets": SyncEntity.VISIT_TARGET,
    "sales-submissions": SyncEntity.SALES_SUBMISSION,
}


class RejectRequest(BaseModel):
    """Request body for rejecting a record."""

    reason: Optional[str] = None


class ApprovalResponse(BaseModel):
    """Approval state of a record after a transition."""

    id: str
    entity: str
    approval_status: str
    approved_by: Optional[str]
    approved_at: Optional[str]
    rejected_by: Optional[str]
    rejected_at: Optional[str]
    rejection_reason: Optional[str]


def get_workflow(
    store: RecordStore = Depends(get_record_store),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
) -> ApprovalWorkflow:
    return ApprovalWorkflow(store, dispatcher)


def _entity_for(collection: str) -> SyncEntity:
    entity = _COLLECTIONS.get(collection)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")
    return entity


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _to_response(entity: SyncEntity, record: ApprovableRecord) -> ApprovalResponse:
    return ApprovalResponse(
        id=str(record.id),
        entity=str(entity),
        approval_status=str(record.approval_status),
        approved_by=_optional_str(record.approved_by),
        approved_at=_optional_str(record.approved_at),
        rejected_by=_optional_str(record.rejected_by),
        rejected_at=_optional_str(record.rejected_at),
        rejection_reason=record.rejection_reason,
    )


async def _transition(action: str, coro: Any) -> ApprovableRecord:
    """Await an approval transition, mapping workflow errors to HTTP errors."""
    try:
        return await coro
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RecordValidationError as e:
        logger.info("[API] Rejected %s request: %s", action, e)
        raise HTTPException(status_code=422, detail=e.message)


@router.post("/{collection}/{record_id}/approve", response_model=ApprovalResponse)
async def approve_record(
    collection: str,
    record_id: UUID,
    actor: ActorRef = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> ApprovalResponse:
    """Approve a pending record."""
    entity = _entity_for(collection)
    record = await _transition("approve", workflow.approve(entity, record_id, actor))
    return _to_response(entity, record)


@router.post("/{collection}/{record_id}/reject", response_model=ApprovalResponse)
async def reject_record(
    collection: str,
    record_id: UUID,
    body: RejectRequest,
    actor: ActorRef = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> ApprovalResponse:
    """Reject a pending record; a reason is required."""
    entity = _entity_for(collection)
    record = await _transition("reject", workflow.reject(entity, record_id, actor, body.reason))
    return _to_response(entity, record)


@router.post("/{collection}/{record_id}/reopen", response_model=ApprovalResponse)
async def reopen_record(
    collection: str,
    record_id: UUID,
    actor: ActorRef = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> ApprovalResponse:
    """Return an approved or rejected record to pending."""
    entity = _entity_for(collection)
    record = await _transition("reopen", workflow.reopen(entity, record_id, actor))
    return _to_response(entity, record)
