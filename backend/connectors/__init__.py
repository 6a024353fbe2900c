"""CRM connectors package."""
from connectors.base import CRMConnector, ExternalAPIError, ListFilter
from connectors.hubspot import HubSpotConnector

__all__ = [
    "CRMConnector",
    "ExternalAPIError",
    "HubSpotConnector",
    "ListFilter",
]
