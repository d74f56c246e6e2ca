# /flowbot/utils/dependencies.py

import hmac
import hashlib
import structlog
from fastapi import Request, HTTPException

from flowbot.config.settings import settings
from flowbot.services.conversation_service import ConversationService
from flowbot.workflows.engine import FlowEngine

log = structlog.get_logger(__name__)


def get_engine(request: Request) -> FlowEngine:
    return request.app.state.engine


def get_conversation_service(request: Request) -> ConversationService:
    return request.app.state.conversation_service


def signature_is_valid(payload: bytes, signature: str, secret: str) -> bool:
    if not signature or not signature.startswith("sha256=") or not secret:
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature[7:])


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not signature_is_valid(body, signature, settings.whatsapp_app_secret):
        log.error("Invalid webhook signature.", signature=signature[:50])
        raise HTTPException(status_code=403, detail="Invalid signature")
    log.info("Webhook signature verified successfully.")
    return body
