"""
HubSpot connector implementation.

Responsibilities:
- Authenticate with HubSpot using a private-app / OAuth access token
- Search, fetch and create contacts, companies, tasks and orders
- Resolve v4 association type ids and link objects
- Handle rate limits (429 with Retry-After)
"""

import asyncio
from email.utils import parsedate_to_datetime
import logging
import math
from typing import Any, Optional

import httpx

from config import settings, to_iso8601
from connectors.base import CRMConnector, ExternalAPIError, ListFilter
from services.timestamps import as_utc, to_epoch_millis, utcnow

logger = logging.getLogger(__name__)

# objectTypeIds accepted by the v4 associations API
HUBSPOT_OBJECT_TYPE_IDS: dict[str, str] = {
    "contacts": "0-1",
    "companies": "0-2",
    "deals": "0-3",
    "tickets": "0-5",
    "tasks": "0-27",
    "orders": "0-123",
}

TASK_PROPERTIES: list[str] = [
    "hs_task_subject",
    "hs_task_body",
    "hs_task_status",
    "hs_task_priority",
    "hs_task_type",
    "hs_timestamp",
    "hs_createdate",
    "hubspot_owner_id",
]

CONTACT_PROPERTIES: list[str] = [
    "email",
    "firstname",
    "lastname",
    "phone",
    "company",
    "address",
    "city",
    "state",
    "zip",
]

COMPANY_PROPERTIES: list[str] = ["name", "domain"]

# HubSpot caps list/search pages at 100 objects
MAX_PAGE_SIZE = 100


DEFAULT_RETRY_AFTER_SECONDS = 10.0


def retry_after_seconds(header: Optional[str]) -> float:
    """Delay from a Retry-After header: delta-seconds or an HTTP-date."""
    if not header or not header.strip():
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        delay = float(header)
    except ValueError:
        pass
    else:
        return max(delay, 0.0) if math.isfinite(delay) else DEFAULT_RETRY_AFTER_SECONDS
    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        logger.debug("[HubSpot] Unparseable Retry-After %r", header)
        return DEFAULT_RETRY_AFTER_SECONDS
    return max((as_utc(retry_at) - utcnow()).total_seconds(), 0.0)


def object_type_id(object_type: str) -> str:
    """Map a plural object name to its v4 objectTypeId; ids pass through."""
    key = object_type.strip().lower()
    return HUBSPOT_OBJECT_TYPE_IDS.get(key, object_type)


class HubSpotConnector(CRMConnector):
    """Connector for HubSpot CRM."""

    source_system = "hubspot"

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize connector.

        Args:
            access_token: HubSpot token; defaults to settings.HUBSPOT_ACCESS_TOKEN
            api_base: API root; defaults to settings.HUBSPOT_API_BASE
            transport: Optional httpx transport (used by tests)
        """
        self._token: Optional[str] = access_token or settings.HUBSPOT_ACCESS_TOKEN
        self._api_base: str = (api_base or settings.HUBSPOT_API_BASE).rstrip("/")
        self._transport = transport
        # "{from}->{to}" -> associationTypeId (None when HubSpot has no label)
        self._association_type_cache: dict[str, Optional[int]] = {}

    def _get_headers(self) -> dict[str, str]:
        """Get authorization headers for HubSpot API."""
        if not self._token:
            raise ExternalAPIError(None, "HubSpot access token is not configured")
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> dict[str, Any]:
        """Make an authenticated request to HubSpot API with 429 retry."""
        headers: dict[str, str] = self._get_headers()
        url: str = f"{self._api_base}{endpoint}"
        max_retries: int = settings.HUBSPOT_MAX_RETRIES

        for attempt in range(max_retries + 1):
            async with httpx.AsyncClient(transport=self._transport) as client:
                try:
                    response: httpx.Response = await client.request(
                        method=method,
                        url=url,
                        headers=headers,
                        params=params,
                        json=json_data,
                        timeout=settings.HUBSPOT_REQUEST_TIMEOUT_SECONDS,
                    )
                except httpx.HTTPError as exc:
                    raise ExternalAPIError(None, f"HubSpot request failed: {exc}") from exc

            # Retry on 429 rate limit
            if response.status_code == 429 and attempt < max_retries:
                retry_after: float = retry_after_seconds(response.headers.get("Retry-After"))
                wait_secs: float = min(retry_after, 30.0)
                logger.warning(
                    "[HubSpot] 429 rate limited on %s, retrying in %ss (attempt %d/%d)",
                    endpoint, wait_secs, attempt + 1, max_retries,
                )
                await asyncio.sleep(wait_secs)
                continue

            # If error, try to get detailed error message from HubSpot
            if response.status_code >= 400:
                error_detail: str = ""
                try:
                    error_body: dict[str, Any] = response.json()
                    # HubSpot error format: {"message": "...", "errors": [...]}
                    error_detail = error_body.get("message", "")
                    if error_body.get("errors"):
                        error_details: list[str] = [
                            e.get("message", str(e)) for e in error_body["errors"]
                        ]
                        error_detail = f"{error_detail}: {'; '.join(error_details)}"
                except ValueError:
                    error_detail = response.text[:500] if response.text else ""
                raise ExternalAPIError(response.status_code, error_detail)

            if not response.content:
                return {}
            return response.json()

        raise ExternalAPIError(429, f"HubSpot rate limit not lifted after {max_retries} retries")

    async def _get_or_none(
        self,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """GET that maps 404 to None."""
        try:
            return await self._make_request("GET", endpoint, params=params)
        except ExternalAPIError as exc:
            if exc.status_code == 404:
                return None
            raise

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def search_contact_by_email(self, email: str) -> Optional[dict[str, Any]]:
        """
        Search for a contact by email address.

        HubSpot stores emails lower-cased, so the needle is lower-cased too.
        """
        needle: str = email.strip().lower()
        if not needle:
            return None
        data = await self._make_request(
            "POST",
            "/crm/v3/objects/contacts/search",
            json_data={
                "filterGroups": [
                    {
                        "filters": [
                            {
                                "propertyName": "email",
                                "operator": "EQ",
                                "value": needle,
                            }
                        ]
                    }
                ],
                "properties": CONTACT_PROPERTIES,
                "limit": 1,
            },
        )
        results = data.get("results", [])
        if results:
            return {
                "id": str(results[0].get("id")),
                "properties": results[0].get("properties", {}),
            }
        return None

    async def create_or_update_contact(self, properties: dict[str, Any]) -> dict[str, Any]:
        """
        Create a contact, or update the one that already has this email.

        Args:
            properties: Contact properties (email, firstname, lastname, phone, company, ...)

        Returns:
            Contact data with HubSpot ID
        """
        clean: dict[str, Any] = {
            k: v for k, v in properties.items() if v is not None and v != ""
        }
        email: Optional[str] = clean.get("email")
        existing: Optional[dict[str, Any]] = None
        if email:
            existing = await self.search_contact_by_email(email)

        if existing:
            data = await self._make_request(
                "PATCH",
                f"/crm/v3/objects/contacts/{existing['id']}",
                json_data={"properties": clean},
            )
            logger.info("[HubSpot] Updated contact %s", existing["id"])
        else:
            data = await self._make_request(
                "POST",
                "/crm/v3/objects/contacts",
                json_data={"properties": clean},
            )
            logger.info("[HubSpot] Created contact %s", data.get("id"))

        return {
            "id": str(data.get("id") or (existing or {}).get("id")),
            "properties": data.get("properties", {}),
        }

    async def fetch_contact(self, contact_id: str) -> Optional[dict[str, Any]]:
        data = await self._get_or_none(
            f"/crm/v3/objects/contacts/{contact_id}",
            params={
                "properties": ",".join(CONTACT_PROPERTIES),
                "associations": "companies",
            },
        )
        if data is None:
            return None
        return {
            "id": str(data.get("id", contact_id)),
            "properties": data.get("properties", {}),
            "associations": data.get("associations", {}),
        }

    async def list_contacts(self, list_filter: ListFilter) -> list[dict[str, Any]]:
        data = await self._make_request(
            "GET",
            "/crm/v3/objects/contacts",
            params={
                "limit": min(list_filter.limit, MAX_PAGE_SIZE),
                "properties": ",".join(CONTACT_PROPERTIES),
            },
        )
        results: list[dict[str, Any]] = data.get("results", [])
        logger.info("[HubSpot] /crm/v3/objects/contacts returned %d results", len(results))
        return results

    # ------------------------------------------------------------------
    # Companies / owners
    # ------------------------------------------------------------------

    async def fetch_company(self, company_id: str) -> Optional[dict[str, Any]]:
        data = await self._get_or_none(
            f"/crm/v3/objects/companies/{company_id}",
            params={"properties": ",".join(COMPANY_PROPERTIES)},
        )
        if data is None:
            return None
        return {
            "id": str(data.get("id", company_id)),
            "properties": data.get("properties", {}),
        }

    async def fetch_owner_by_id(self, owner_id: str) -> Optional[dict[str, Any]]:
        """
        Fetch a single HubSpot owner.

        Requires the ``crm.objects.owners.read`` scope.
        """
        data = await self._get_or_none(f"/crm/v3/owners/{owner_id}")
        if not data or not data.get("id"):
            return None
        return {
            "id": str(data.get("id")),
            "email": data.get("email"),
            "firstName": data.get("firstName"),
            "lastName": data.get("lastName"),
        }

    # ------------------------------------------------------------------
    # Tasks / orders
    # ------------------------------------------------------------------

    async def list_tasks(self, list_filter: ListFilter) -> list[dict[str, Any]]:
        """
        List one page of tasks.

        With a window, the search API filters on ``hs_timestamp`` (the due
        date) so all tasks of a day are included regardless of creation time.
        """
        limit: int = min(list_filter.limit, MAX_PAGE_SIZE)
        if list_filter.has_window:
            assert list_filter.window_start is not None
            assert list_filter.window_end is not None
            data = await self._make_request(
                "POST",
                "/crm/v3/objects/tasks/search",
                json_data={
                    "filterGroups": [
                        {
                            "filters": [
                                {
                                    "propertyName": "hs_timestamp",
                                    "operator": "BETWEEN",
                                    "value": to_epoch_millis(list_filter.window_start),
                                    "highValue": to_epoch_millis(list_filter.window_end),
                                }
                            ]
                        }
                    ],
                    "properties": TASK_PROPERTIES,
                    "limit": limit,
                    "associations": ["contacts", "companies"],
                },
            )
            total = data.get("total")
            results: list[dict[str, Any]] = data.get("results", [])
            if isinstance(total, int) and total > len(results) and len(results) == limit:
                logger.warning(
                    "[HubSpot] %d tasks match window %s..%s but only %d were fetched",
                    total,
                    to_iso8601(list_filter.window_start),
                    to_iso8601(list_filter.window_end),
                    limit,
                )
            return results

        data = await self._make_request(
            "GET",
            "/crm/v3/objects/tasks",
            params={
                "limit": limit,
                "properties": ",".join(TASK_PROPERTIES),
                "associations": "contacts,companies",
            },
        )
        return data.get("results", [])

    async def create_task(self, properties: dict[str, Any]) -> dict[str, Any]:
        data = await self._make_request(
            "POST",
            "/crm/v3/objects/tasks",
            json_data={"properties": properties},
        )
        logger.info("[HubSpot] Created task %s", data.get("id"))
        return {
            "id": str(data.get("id")),
            "properties": data.get("properties", {}),
        }

    async def create_order(self, properties: dict[str, Any]) -> dict[str, Any]:
        data = await self._make_request(
            "POST",
            "/crm/v3/objects/orders",
            json_data={"properties": properties},
        )
        logger.info("[HubSpot] Created order %s", data.get("id"))
        return {
            "id": str(data.get("id")),
            "properties": data.get("properties", {}),
        }

    # ------------------------------------------------------------------
    # Associations
    # ------------------------------------------------------------------

    async def get_association_type_id(self, from_type: str, to_type: str) -> Optional[int]:
        """Look up (and cache) the default association type between two object types."""
        from_id: str = object_type_id(from_type)
        to_id: str = object_type_id(to_type)
        key: str = f"{from_id}->{to_id}"
        if key in self._association_type_cache:
            return self._association_type_cache[key]

        try:
            data = await self._make_request(
                "GET", f"/crm/v4/associations/{from_id}/{to_id}/labels"
            )
        except ExternalAPIError as exc:
            logger.warning(
                "[HubSpot] Could not load association labels for %s: %s", key, exc
            )
            self._association_type_cache[key] = None
            return None

        results: list[dict[str, Any]] = data.get("results", [])
        type_id: Optional[int] = None
        for label in results:
            if label.get("category") == "HUBSPOT_DEFINED":
                type_id = label.get("typeId")
                break
        if type_id is None and results:
            type_id = results[0].get("typeId")
        self._association_type_cache[key] = type_id
        return type_id

    async def associate(
        self,
        from_type: str,
        from_id: str,
        to_type: str,
        to_id: str,
    ) -> bool:
        if not from_id or not to_id:
            return False

        type_id = await self.get_association_type_id(from_type, to_type)
        if not type_id:
            logger.warning(
                "[HubSpot] No associationTypeId for %s->%s, skipping association",
                from_type, to_type,
            )
            return False

        try:
            await self._make_request(
                "PUT",
                f"/crm/v4/objects/{object_type_id(from_type)}/{from_id}"
                f"/associations/{object_type_id(to_type)}/{to_id}",
                json_data=[
                    {
                        "associationCategory": "HUBSPOT_DEFINED",
                        "associationTypeId": type_id,
                    }
                ],
            )
        except ExternalAPIError as exc:
            logger.warning(
                "[HubSpot] Error associating %s:%s -> %s:%s: %s",
                from_type, from_id, to_type, to_id, exc,
            )
            return False
        return True
