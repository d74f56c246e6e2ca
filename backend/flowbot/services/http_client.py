# /flowbot/services/http_client.py

import httpx
import logging
from typing import Any, Dict, Optional

from flowbot.services.ports import HttpResponse, TransportError

logger = logging.getLogger(__name__)


class HttpxClient:
    """HttpClient port on httpx. Timeouts and connection problems surface as TransportError."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(follow_redirects=True)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = 10.0,
    ) -> HttpResponse:
        kwargs: Dict[str, Any] = {"headers": headers or {}, "timeout": timeout}
        if body is not None and method.upper() not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        try:
            response = await self.client.request(method.upper(), url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {url} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        return HttpResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            data=self._parse_body(response),
            headers=dict(response.headers),
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        if "json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except ValueError:
                logger.warning(f"Response from {response.request.url} declared JSON but could not be parsed")
        return response.text

    async def close(self):
        await self.client.aclose()
