# /flowbot/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Any, Dict, List, Optional

from flowbot.config.settings import settings
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import message_counter

logger = logging.getLogger(__name__)

TEXT_BODY_LIMIT = 4096
CAPTION_LIMIT = 1024
BUTTON_TITLE_LIMIT = 20
MAX_REPLY_BUTTONS = 3


def normalize_phone(phone: str) -> str:
    clean_phone = re.sub(r"[^\d+]", "", phone or "")
    if not clean_phone.startswith("+"):
        clean_phone = "+" + clean_phone.lstrip("+")
    return clean_phone


class WhatsAppService:
    """
    MessageSender backed by the WhatsApp Cloud API.

    Every send returns the message id (wamid) on success and None on any
    failure; errors are logged, never raised to the executors.
    """

    def __init__(
        self,
        access_token: str,
        phone_id: str,
        base_url: str = "https://graph.facebook.com/v18.0",
        template_language: str = "es",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.phone_id = phone_id
        self.base_url = base_url.rstrip("/")
        self.template_language = template_language
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: dict) -> Optional[str]:
        """Generic method to send a request to the WhatsApp messages API."""
        message_type = payload.get("type", "unknown")
        try:
            to_phone = payload.get("to")
            if not to_phone or to_phone == "+":
                logger.error(f"send_whatsapp_request_invalid_phone: {to_phone}")
                message_counter.labels(status="invalid", message_type=message_type).inc()
                return None

            url = f"{self.base_url}/{self.phone_id}/messages"
            headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                message_id = response.json().get("messages", [{}])[0].get("id")
                logger.info(f"WhatsApp {message_type} message sent to {to_phone}, wamid: {message_id}")
                message_counter.labels(status="sent", message_type=message_type).inc()
                return message_id

            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            message_counter.labels(status="failed", message_type=message_type).inc()
            return None
        except Exception as e:
            logger.error(f"whatsapp_send_error to {payload.get('to', 'unknown')}: {e}", exc_info=True)
            message_counter.labels(status="error", message_type=message_type).inc()
            return None

    def _base_payload(self, to: str, message_type: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(to),
            "type": message_type,
        }

    async def send_text(self, to: str, text: str) -> Optional[str]:
        payload = self._base_payload(to, "text")
        payload["text"] = {"body": text[:TEXT_BODY_LIMIT]}
        return await self.send_whatsapp_request(payload)

    async def send_template(self, to: str, template_name: str, body_params: List[str], language: Optional[str] = None) -> Optional[str]:
        """Sends a pre-approved WhatsApp message template with positional body parameters."""
        components = []
        if body_params:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": str(p)} for p in body_params]
            })
        payload = self._base_payload(to, "template")
        payload["template"] = {
            "name": template_name,
            "language": {"code": language or self.template_language},
            "components": components,
        }
        return await self.send_whatsapp_request(payload)

    async def send_media(self, to: str, media_type: str, media_url: str, caption: Optional[str] = None) -> Optional[str]:
        if media_type not in ("image", "video", "audio", "document"):
            logger.error(f"Unsupported WhatsApp media type: {media_type}")
            return None
        media: Dict[str, Any] = {"link": media_url}
        if caption and media_type != "audio":
            media["caption"] = caption[:CAPTION_LIMIT]
        payload = self._base_payload(to, media_type)
        payload[media_type] = media
        return await self.send_whatsapp_request(payload)

    async def send_buttons(self, to: str, text: str, buttons: List[Dict[str, Any]]) -> Optional[str]:
        """Sends a message with up to 3 quick reply buttons."""
        replies = [
            {
                "type": "reply",
                "reply": {
                    "id": str(button.get("id") or f"option_{index + 1}"),
                    "title": str(button.get("title") or button.get("text") or "")[:BUTTON_TITLE_LIMIT],
                },
            }
            for index, button in enumerate(buttons[:MAX_REPLY_BUTTONS])
        ]
        payload = self._base_payload(to, "interactive")
        payload["interactive"] = {
            "type": "button",
            "body": {"text": text[:CAPTION_LIMIT]},
            "action": {"buttons": replies},
        }
        return await self.send_whatsapp_request(payload)

    async def send_location_request(self, to: str, text: str) -> Optional[str]:
        payload = self._base_payload(to, "interactive")
        payload["interactive"] = {
            "type": "location_request_message",
            "body": {"text": text[:CAPTION_LIMIT]},
            "action": {"name": "send_location"},
        }
        return await self.send_whatsapp_request(payload)

    async def send_flow(self, to: str, flow_id: str, body: str, cta: str, flow_token: str) -> Optional[str]:
        payload = self._base_payload(to, "interactive")
        payload["interactive"] = {
            "type": "flow",
            "body": {"text": body[:CAPTION_LIMIT]},
            "action": {
                "name": "flow",
                "parameters": {
                    "flow_message_version": "3",
                    "flow_id": flow_id,
                    "flow_cta": cta[:BUTTON_TITLE_LIMIT],
                    "flow_token": flow_token,
                },
            },
        }
        return await self.send_whatsapp_request(payload)

    async def close(self):
        await self.http_client.aclose()


# Globally accessible instance
whatsapp_service = WhatsAppService(
    settings.whatsapp_access_token,
    settings.whatsapp_phone_id,
    settings.whatsapp_api_base_url,
    settings.whatsapp_template_language,
)
