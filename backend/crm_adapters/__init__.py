"""
CRM Adapter Factory.
Builds the adapter the sync engine talks to from a CRM type and its decrypted
connection credentials.
"""

from .base import CRMAdapter, CRMPage
from .hubspot_adapter import HubSpotAdapter


def create_adapter(crm_type: str, credentials: dict) -> CRMAdapter:
    """
    Args:
        crm_type: CRM type string; only 'hubspot' is supported
        credentials: Decrypted credentials dict from the crm_connections table

    Raises:
        ValueError: unsupported CRM type or no access token
    """
    if crm_type != "hubspot":
        raise ValueError(f"Unsupported CRM type: {crm_type}")

    from hubspot_crm import HubSpotCRM
    access_token = credentials.get("access_token", "")
    if not access_token:
        raise ValueError("HubSpot account not connected")
    return HubSpotAdapter(HubSpotCRM(access_token=access_token))


__all__ = [
    "CRMAdapter",
    "CRMPage",
    "HubSpotAdapter",
    "create_adapter",
]
