"""
Resolve which CRM contact and company a task belongs to.

Company data arrives from several weakly reliable sources, tried in order:
  1. The contact's own company association (looked up for name/domain)
  2. The contact's flat ``company`` text property
  3. A company association attached directly to the task
  4. The contact ``company`` property again, keeping any partial id
     from a lookup that failed

Every CRM lookup is individually fault-tolerant: a failure logs a warning
and the cascade moves on.  Lookups are cached for the lifetime of the
resolver (one pass).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from connectors.base import CRMConnector, ExternalAPIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactResolution:
    """First associated contact of a CRM object."""

    contact_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_property: Optional[str] = None
    company_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompanyResolution:
    """Result of the company cascade."""

    company_id: Optional[str] = None
    company_name: Optional[str] = None
    company_domain: Optional[str] = None


def association_ids(obj: dict[str, Any], to_type: str) -> list[str]:
    """IDs from a v3 ``associations.{to_type}.results`` block."""
    block = (obj.get("associations") or {}).get(to_type) or {}
    ids: list[str] = []
    for item in block.get("results") or []:
        assoc_id = str(item.get("id") or "").strip()
        if assoc_id and assoc_id not in ids:
            ids.append(assoc_id)
    return ids


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class AssociationResolver:
    """Contact/company resolution with per-pass caches."""

    def __init__(self, connector: CRMConnector) -> None:
        self._connector = connector
        self._contact_cache: dict[str, Optional[dict[str, Any]]] = {}
        self._company_cache: dict[str, Optional[dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _lookup_contact(self, contact_id: str) -> Optional[dict[str, Any]]:
        if contact_id in self._contact_cache:
            return self._contact_cache[contact_id]
        contact: Optional[dict[str, Any]] = None
        try:
            contact = await self._connector.fetch_contact(contact_id)
        except ExternalAPIError as exc:
            logger.warning("[AssociationResolver] Contact %s lookup failed: %s", contact_id, exc)
        self._contact_cache[contact_id] = contact
        return contact

    async def _lookup_company(self, company_id: str) -> Optional[dict[str, Any]]:
        if company_id in self._company_cache:
            return self._company_cache[company_id]
        company: Optional[dict[str, Any]] = None
        try:
            company = await self._connector.fetch_company(company_id)
        except ExternalAPIError as exc:
            logger.warning("[AssociationResolver] Company %s lookup failed: %s", company_id, exc)
        self._company_cache[company_id] = company
        return company

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def resolve_contact(self, contact_ids: Sequence[str]) -> ContactResolution:
        """Resolve the first associated contact; empty on any failure."""
        if not contact_ids:
            return ContactResolution()

        contact_id = str(contact_ids[0])
        contact = await self._lookup_contact(contact_id)
        if contact is None:
            return ContactResolution()

        props: dict[str, Any] = contact.get("properties") or {}
        first = _clean(props.get("firstname")) or ""
        last = _clean(props.get("lastname")) or ""
        email = _clean(props.get("email"))
        return ContactResolution(
            contact_id=contact_id,
            name=f"{first} {last}".strip() or email,
            email=email.lower() if email else None,
            phone=_clean(props.get("phone")),
            company_property=_clean(props.get("company")),
            company_ids=tuple(association_ids(contact, "companies")),
        )

    async def _company_from_ids(
        self,
        company_ids: Sequence[str],
    ) -> tuple[Optional[CompanyResolution], Optional[str]]:
        """(complete resolution, partial id) from the first id in ``company_ids``."""
        if not company_ids:
            return None, None
        company_id = str(company_ids[0])
        company = await self._lookup_company(company_id)
        if company is not None:
            props: dict[str, Any] = company.get("properties") or {}
            name = _clean(props.get("name"))
            if name:
                return (
                    CompanyResolution(
                        company_id=company_id,
                        company_name=name,
                        company_domain=_clean(props.get("domain")),
                    ),
                    company_id,
                )
        return None, company_id

    async def resolve_company(
        self,
        contact_id: Optional[str],
        contact_company_property: Optional[str],
        direct_company_ids: Sequence[str],
        contact_company_ids: Sequence[str],
    ) -> CompanyResolution:
        company_property = _clean(contact_company_property)

        # 1. contact's own company association
        resolved, partial_id = await self._company_from_ids(contact_company_ids)
        if resolved is not None:
            return resolved

        # 2. contact's flat company property
        if company_property:
            return CompanyResolution(company_id=partial_id, company_name=company_property)

        # 3. company associated directly to the task
        resolved, direct_partial = await self._company_from_ids(direct_company_ids)
        if resolved is not None:
            return resolved
        partial_id = partial_id or direct_partial

        # 4. whatever partial data is left
        if partial_id:
            logger.debug(
                "[AssociationResolver] Only partial company data for contact %s (company %s)",
                contact_id, partial_id,
            )
        return CompanyResolution(company_id=partial_id, company_name=company_property)
