"""
FastAPI dependencies shared by the sync and approval routes.

The acting user is named by the ``X-Actor-Id`` header and looked up in the
record store.  Services are built per request; tests override these
dependencies with in-memory fakes via ``app.dependency_overrides``.
"""
from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status

from connectors.base import CRMConnector
from connectors.hubspot import HubSpotConnector
from connectors.models import ActorRef
from services.record_store import RecordStore, SqlRecordStore
from services.side_effects import CelerySideEffectDispatcher, SideEffectDispatcher

logger = logging.getLogger(__name__)


def get_record_store() -> RecordStore:
    return SqlRecordStore()


def get_connector() -> CRMConnector:
    return HubSpotConnector()


def get_dispatcher() -> SideEffectDispatcher:
    return CelerySideEffectDispatcher()


def _parse_actor_id(x_actor_id: Optional[str]) -> UUID:
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    try:
        return UUID(x_actor_id.strip())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Actor-Id header",
        )


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    store: RecordStore = Depends(get_record_store),
) -> ActorRef:
    """
    Resolve the acting user from the ``X-Actor-Id`` header.

    Raises:
        HTTPException: 401 if the header is missing, 400 if it is not a UUID,
            404 if no such user exists
    """
    actor_id = _parse_actor_id(x_actor_id)
    actor = await store.get_actor(actor_id)
    if actor is None:
        logger.warning("[API] Unknown actor %s", actor_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return actor
