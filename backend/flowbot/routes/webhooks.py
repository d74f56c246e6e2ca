# /flowbot/routes/webhooks.py

import json
import structlog
from typing import Any, Dict, Optional, Tuple
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from flowbot.config.settings import settings
from flowbot.services.conversation_service import ConversationService
from flowbot.utils.dependencies import get_conversation_service, verify_webhook_signature
from flowbot.utils.metrics import response_time_histogram

# WhatsApp Cloud API webhook: verify-token handshake and inbound message
# dispatch into the flow engine.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


def extract_inbound(message: Dict[str, Any]) -> Optional[Tuple[str, Any]]:
    """
    Maps a WhatsApp message object to (text, structured input).

    Button and list replies carry {"id", "title"} as input with the title as
    text; locations and WhatsApp Flow submissions carry their payload as input.
    Unsupported types (media, reactions, ...) return None.
    """
    message_type = message.get("type")
    if message_type == "text":
        return message.get("text", {}).get("body", ""), None
    if message_type == "button":
        button = message.get("button", {})
        return button.get("text", ""), {"id": button.get("payload"), "title": button.get("text")}
    if message_type == "interactive":
        interactive = message.get("interactive", {})
        kind = interactive.get("type")
        if kind in ("button_reply", "list_reply"):
            reply = interactive.get(kind, {})
            return reply.get("title", ""), {"id": reply.get("id"), "title": reply.get("title")}
        if kind == "nfm_reply":
            raw = interactive.get("nfm_reply", {}).get("response_json") or "{}"
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                payload = {"raw": raw}
            return "", payload
        return None
    if message_type == "location":
        location = message.get("location", {})
        return location.get("name") or "", location
    return None


async def dispatch_inbound(service: ConversationService, address: str, text: str, user_input: Any, profile_name: Optional[str]):
    try:
        thread = await service.handle_inbound(address, text, user_input, profile_name)
    except Exception as e:
        log.error("Inbound message dispatch failed", address=address, error=str(e), exc_info=True)
        return
    if thread is not None:
        log.info("Inbound message processed", thread_id=thread.id, status=thread.status.value)


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
async def handle_whatsapp_webhook(
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_webhook_signature),
    service: ConversationService = Depends(get_conversation_service)
):
    """Queues every supported inbound message for the engine and acknowledges immediately."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        queued = 0
        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                if change.get("field") != "messages":
                    log.debug("Ignoring non-message change", change=change)
                    continue

                value = change.get("value", {})
                incoming_phone_id = value.get("metadata", {}).get("phone_number_id")
                expected_phone_id = settings.whatsapp_phone_id
                if incoming_phone_id and expected_phone_id and incoming_phone_id != expected_phone_id:
                    log.info("Ignored event for different phone ID.", incoming_id=incoming_phone_id, expected_id=expected_phone_id)
                    continue

                profiles = {c.get("wa_id"): (c.get("profile") or {}).get("name") for c in value.get("contacts", [])}
                for message in value.get("messages", []):
                    inbound = extract_inbound(message)
                    address = message.get("from")
                    if inbound is None or not address:
                        log.info("Ignoring unsupported inbound message", type=message.get("type"))
                        continue
                    text, user_input = inbound
                    background_tasks.add_task(dispatch_inbound, service, address, text, user_input, profiles.get(address))
                    queued += 1

        log.info("Webhook processing complete.", queued=queued)
        return JSONResponse({"status": "success", "queued": queued})
