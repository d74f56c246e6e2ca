# /flowbot/services/hubspot_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, Optional

from flowbot.config.settings import settings
from flowbot.utils.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class HubSpotError(Exception):
    """The HubSpot API rejected a request or is not configured."""


class HubSpotService:
    """CrmClient port on the HubSpot CRM v3 objects API."""

    def __init__(self, access_token: Optional[str], api_url: str = "https://api.hubapi.com", http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")
        self.circuit_breaker = CircuitBreaker("hubspot")
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=30.0, connect=5.0)
        )

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.access_token:
            raise HubSpotError("HubSpot access token is not configured")

        url = f"{self.api_url}{path}"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        resp = await self.resilient_api_call(self.http_client.request, method, url, json=payload, headers=headers)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message", resp.text)
            except ValueError:
                detail = resp.text
            raise HubSpotError(f"HubSpot {method} {path} failed: {resp.status_code} - {detail}")
        return resp.json() if resp.content else {}

    @staticmethod
    def _flatten(record: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": record.get("id"), **(record.get("properties") or {})}

    # --- Contacts ---

    async def create_contact(self, properties: Dict[str, Any]) -> Dict[str, Any]:
        record = await self._request("POST", "/crm/v3/objects/contacts", {"properties": properties})
        logger.info(f"HubSpot contact created: {record.get('id')}")
        return self._flatten(record)

    async def update_contact(self, contact_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        record = await self._request("PATCH", f"/crm/v3/objects/contacts/{contact_id}", {"properties": properties})
        logger.info(f"HubSpot contact updated: {contact_id}")
        return self._flatten(record)

    async def find_contact_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Searches contacts by exact email; returns the first match or None."""
        payload = {
            "filterGroups": [{"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}],
            "properties": ["email", "firstname", "lastname", "phone", "lifecyclestage"],
            "limit": 1,
        }
        data = await self._request("POST", "/crm/v3/objects/contacts/search", payload)
        results = data.get("results") or []
        return self._flatten(results[0]) if results else None

    # --- Deals ---

    async def create_deal(self, properties: Dict[str, Any]) -> Dict[str, Any]:
        record = await self._request("POST", "/crm/v3/objects/deals", {"properties": properties})
        logger.info(f"HubSpot deal created: {record.get('id')}")
        return self._flatten(record)

    async def close(self):
        await self.http_client.aclose()


# Globally accessible instance
hubspot_service = HubSpotService(settings.hubspot_access_token, settings.hubspot_api_url)
