"""
Resolve a CRM owner to a local actor.

Resolution chain (first hit wins):
  1. Owner email  -> users.email (case-insensitive exact match)
  2. Owner name   -> users.name  (case-insensitive exact match)
  3. Fallback     -> the actor running the pass

External values are regex-escaped and anchored before they reach the
store's case-insensitive regex match, so an owner named ``a.b`` never
matches ``axb``.  The resolver never fails: lookup errors are logged as
``ResolutionFailure`` and fall through to the acting user.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from connectors.base import CRMConnector, ExternalAPIError
from connectors.models import ActorRef
from services.record_store import RecordStore
from services.sync_errors import ResolutionFailure

logger = logging.getLogger(__name__)


def exact_match_pattern(value: str) -> str:
    """Anchored, escaped regex matching ``value`` exactly."""
    return f"^{re.escape(value.strip())}$"


def owner_display_name(owner: Optional[dict[str, Any]]) -> Optional[str]:
    if not owner:
        return None
    full_name = f"{owner.get('firstName') or ''} {owner.get('lastName') or ''}".strip()
    return full_name or None


class OwnerResolver:
    """Maps CRM owners to local users.

    Build once per pass; owner details fetched from the CRM are cached for
    the lifetime of the resolver.
    """

    def __init__(self, store: RecordStore, connector: Optional[CRMConnector] = None) -> None:
        self._store = store
        self._connector = connector
        self._owner_cache: dict[str, Optional[dict[str, Any]]] = {}

    async def fetch_owner(self, owner_id: Optional[str]) -> Optional[dict[str, Any]]:
        """Owner details for ``owner_id``; failures are cached as None."""
        if not owner_id or self._connector is None:
            return None
        if owner_id in self._owner_cache:
            return self._owner_cache[owner_id]

        owner: Optional[dict[str, Any]] = None
        try:
            owner = await self._connector.fetch_owner_by_id(owner_id)
        except ExternalAPIError as exc:
            logger.warning("[OwnerResolver] Could not fetch owner %s: %s", owner_id, exc)
        self._owner_cache[owner_id] = owner
        return owner

    async def match(
        self,
        external_owner_id: Optional[str],
        external_owner_email: Optional[str],
        external_owner_name: Optional[str],
    ) -> Optional[ActorRef]:
        """Email or name match only; None when neither finds a local user."""
        try:
            if external_owner_email and external_owner_email.strip():
                match = await self._store.find_user_matching(
                    "email", exact_match_pattern(external_owner_email)
                )
                if match is not None:
                    return match

            if external_owner_name and external_owner_name.strip():
                match = await self._store.find_user_matching(
                    "name", exact_match_pattern(external_owner_name)
                )
                if match is not None:
                    return match
        except Exception as exc:
            failure = ResolutionFailure(
                f"owner lookup failed for {external_owner_id or external_owner_email}: {exc}"
            )
            logger.warning(
                "[OwnerResolver] %s", failure,
                extra={"external_owner_id": external_owner_id},
            )
        return None

    async def resolve(
        self,
        external_owner_id: Optional[str],
        external_owner_email: Optional[str],
        external_owner_name: Optional[str],
        current_actor: ActorRef,
    ) -> ActorRef:
        match = await self.match(external_owner_id, external_owner_email, external_owner_name)
        return match if match is not None else current_actor
