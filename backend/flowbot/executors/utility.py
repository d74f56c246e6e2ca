# /flowbot/executors/utility.py

import asyncio
import hashlib
import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from flowbot.config.settings import settings
from flowbot.models.execution import NodeExecutionContext, NodeExecutionResult
from flowbot.services.ports import HttpClient, MessageSender, ResponseGenerator, TransportError
from flowbot.utils.templating import render_template, render_value, to_text

logger = logging.getLogger(__name__)

META_GRAPH_URL = "https://graph.facebook.com/v18.0"


def _continue(context: NodeExecutionContext, output: Dict[str, Any], variables: Optional[Dict[str, Any]] = None) -> NodeExecutionResult:
    return NodeExecutionResult(
        success=True,
        output=output,
        next_node_id=context.config.get("nextNodeId"),
        variables=variables,
    )


# ==================== Timing ====================

class TypingExecutor:
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        duration = int(context.config.get("duration") or 2000)
        await asyncio.sleep(duration / 1000)
        return _continue(context, {"typingDuration": duration})


class TimeoutExecutor:
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        delay = int(context.config.get("delay") or 5000)
        await asyncio.sleep(delay / 1000)
        return _continue(context, {
            "delayed": delay,
            "timeoutAction": context.config.get("timeoutAction", "continue"),
        })


# ==================== Data and CRM ====================

class CustomerStageExecutor:
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        stage = context.config.get("stage")
        if not stage:
            return NodeExecutionResult.failure("Customer stage node has no stage configured")
        previous = context.get_variable("customerStage")
        now = datetime.utcnow().isoformat()
        return _continue(
            context,
            {"previousStage": previous, "newStage": stage, "updatedAt": now},
            {"customerStage": stage, "stageUpdatedAt": now},
        )


class TagExecutor:
    """add/remove/set on the userTags list, keeping first-seen order without duplicates."""

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        action = data.get("action", "add")
        tags = [to_text(tag) for tag in data.get("tags") or []]
        current: List[str] = list(context.get_variable("userTags") or [])

        if action == "remove":
            updated = [tag for tag in current if tag not in tags]
        elif action == "set":
            updated = list(dict.fromkeys(tags))
        elif action == "add":
            updated = list(dict.fromkeys(current + tags))
        else:
            return NodeExecutionResult.failure(f"Unsupported tag action: {action}")

        return _continue(context, {"action": action, "tags": tags, "userTags": updated}, {"userTags": updated})


class AssignmentExecutor:
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        assignments = context.config.get("assignments") or {}
        if isinstance(assignments, list):
            assignments = {item.get("variable"): item.get("value") for item in assignments if item.get("variable")}
        values = {key: render_value(value, context.variables) for key, value in assignments.items()}
        return _continue(context, {"assigned": values}, values)


# ==================== AI and automation ====================

TRANSFORMS = {
    "upper": str.upper,
    "lower": str.lower,
    "title": str.title,
    "trim": str.strip,
    "digits": lambda text: re.sub(r"\D", "", text),
    "none": lambda text: text,
}


class FormatterExecutor:
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        transform = data.get("transform", "none")
        if transform not in TRANSFORMS:
            return NodeExecutionResult.failure(f"Unsupported formatter transform: {transform}")

        if data.get("template") is not None:
            source = render_template(to_text(data["template"]), context.variables)
        else:
            source = to_text(context.get_variable(data.get("inputVariable", "")))

        formatted = TRANSFORMS[transform](source)
        variable = data.get("outputVariable") or "formattedValue"
        return _continue(context, {"input": source, "output": formatted, "transform": transform}, {variable: formatted})


class RecognitionExecutor:
    """
    Keyword and regex intent recognition on the user's message.

    Intents are tried in order; the first one with a matching keyword (case
    insensitive substring) or pattern wins and may route to its own node.
    """

    branching = True

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        message = to_text(context.user_message or context.get_variable("lastMessage"))
        lowered = message.lower()

        matched = None
        for intent in data.get("intents") or []:
            keywords = [to_text(k).lower() for k in intent.get("keywords") or []]
            if any(keyword and keyword in lowered for keyword in keywords):
                matched = intent
                break
            pattern = intent.get("pattern")
            if pattern:
                try:
                    if re.search(pattern, message, re.IGNORECASE):
                        matched = intent
                        break
                except re.error:
                    logger.warning(f"Invalid intent pattern in node {context.node_id}: {pattern}")

        name = matched.get("name") if matched else data.get("fallbackIntent", "unknown")
        variable = data.get("outputVariable") or "intent"
        next_node_id = (matched or {}).get("nextNodeId") or data.get("nextNodeId")
        return NodeExecutionResult(
            success=True,
            output={"intent": name, "recognized": matched is not None, "message": message},
            next_node_id=next_node_id,
            variables={variable: name},
        )


class AIResponseExecutor:
    def __init__(self, generator: Optional[ResponseGenerator], sender: MessageSender):
        self.generator = generator
        self.sender = sender

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        variable = data.get("outputVariable") or "aiResponse"
        prompt = render_template(to_text(data.get("prompt")), context.variables)
        message = context.user_message or prompt

        try:
            if self.generator is None:
                raise RuntimeError("No response generator available")
            reply = await self.generator.generate_response(
                message, context=context.store.snapshot(), system_prompt=data.get("systemPrompt") or prompt or None
            )
        except Exception as e:
            fallback = data.get("fallbackMessage")
            if not fallback:
                logger.error(f"AI response failed for node {context.node_id}: {e}", exc_info=True)
                return NodeExecutionResult.failure(f"AI response failed: {e}")
            logger.warning(f"AI response failed for node {context.node_id}, using fallback: {e}")
            reply = render_template(to_text(fallback), context.variables)

        if data.get("sendMessage", True):
            recipient = context.address
            message_id = None
            if recipient:
                try:
                    message_id = await self.sender.send_text(recipient, reply)
                except Exception as e:
                    logger.error(f"AI response send failed for node {context.node_id}: {e}", exc_info=True)
            if message_id is None:
                return NodeExecutionResult.failure("Failed to send AI response")

        return _continue(context, {"response": reply}, {variable: reply})


# ==================== Integrations ====================

class MetaConversionsExecutor:
    """Reports a conversion event to the Meta Conversions API with a hashed phone number."""

    def __init__(self, http_client: HttpClient):
        self.http_client = http_client

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        pixel_id = data.get("pixelId") or settings.meta_pixel_id
        access_token = data.get("accessToken") or settings.meta_access_token
        if not pixel_id or not access_token:
            return NodeExecutionResult.failure("Meta Conversions API is not configured")

        phone = re.sub(r"\D", "", to_text(context.get_variable("phoneNumber") or context.address))
        event = {
            "event_name": data.get("eventName") or "Lead",
            "event_time": int(time.time()),
            "action_source": "business_messaging",
            "messaging_channel": "whatsapp",
            "user_data": {"ph": [hashlib.sha256(phone.encode()).hexdigest()] if phone else []},
        }
        custom_data = render_value(data.get("customData") or {}, context.variables)
        if data.get("value") is not None:
            custom_data["value"] = data["value"]
            custom_data["currency"] = data.get("currency", "USD")
        if custom_data:
            event["custom_data"] = custom_data

        try:
            response = await self.http_client.request(
                "POST",
                f"{META_GRAPH_URL}/{pixel_id}/events?access_token={access_token}",
                headers={"Content-Type": "application/json"},
                body={"data": [event]},
            )
        except TransportError as e:
            logger.error(f"Meta conversion event failed: {e}")
            return NodeExecutionResult.failure(f"Meta Conversions API request failed: {e}")

        if not 200 <= response.status < 300:
            return NodeExecutionResult.failure(f"Meta Conversions API returned {response.status}", output=response.data)
        return _continue(context, {"eventName": event["event_name"], "response": response.data})


class SmartonExecutor:
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        return _continue(context, {
            "acknowledged": True,
            "action": context.config.get("action"),
            "timestamp": datetime.utcnow().isoformat(),
        })
