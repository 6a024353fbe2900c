"""
Base CRM connector interface.

The reconciliation engine talks to the CRM only through this interface so
that passes can run against HubSpot in production and an in-memory fake in
tests.  CRM objects travel as plain dicts in the CRM's own shape
(``{"id": ..., "properties": {...}, "associations": {...}}``).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


class ExternalAPIError(RuntimeError):
    """Raised when the CRM rejects a request or cannot be reached."""

    def __init__(self, status_code: Optional[int], message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"CRM API error ({self.status_code}): {self.message}"


@dataclass(frozen=True)
class ListFilter:
    """Bounds for a single CRM list call."""

    limit: int = 100
    # Inclusive window on the task due timestamp; both ends or neither
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    @property
    def has_window(self) -> bool:
        return self.window_start is not None and self.window_end is not None


class CRMConnector(ABC):
    """Abstract base class for CRM connectors."""

    # Override in subclasses
    source_system: str = "unknown"

    # --- contacts -----------------------------------------------------

    @abstractmethod
    async def search_contact_by_email(self, email: str) -> Optional[dict[str, Any]]:
        """Return the contact whose email matches (case-insensitive), or None."""
        pass

    @abstractmethod
    async def create_or_update_contact(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Create a contact, or update the existing one with the same email."""
        pass

    @abstractmethod
    async def fetch_contact(self, contact_id: str) -> Optional[dict[str, Any]]:
        """Fetch a contact with its company associations; None if missing."""
        pass

    @abstractmethod
    async def list_contacts(self, list_filter: ListFilter) -> list[dict[str, Any]]:
        """List one page of contacts."""
        pass

    # --- companies / owners -------------------------------------------

    @abstractmethod
    async def fetch_company(self, company_id: str) -> Optional[dict[str, Any]]:
        """Fetch a company (name, domain); None if missing."""
        pass

    @abstractmethod
    async def fetch_owner_by_id(self, owner_id: str) -> Optional[dict[str, Any]]:
        """Fetch owner details (id, email, firstName, lastName); None if missing."""
        pass

    # --- tasks / orders -----------------------------------------------

    @abstractmethod
    async def list_tasks(self, list_filter: ListFilter) -> list[dict[str, Any]]:
        """List one page of tasks with contact and company associations."""
        pass

    @abstractmethod
    async def create_task(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Create a task object and return it (must include ``id``)."""
        pass

    @abstractmethod
    async def create_order(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Create an order object and return it (must include ``id``)."""
        pass

    # --- associations -------------------------------------------------

    @abstractmethod
    async def associate(
        self,
        from_type: str,
        from_id: str,
        to_type: str,
        to_id: str,
    ) -> bool:
        """Link two CRM objects.  Returns False when the link could not be made."""
        pass
