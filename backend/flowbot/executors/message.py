# /flowbot/executors/message.py

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Dict, Optional

from flowbot.models.execution import NodeExecutionContext, NodeExecutionResult
from flowbot.services.ports import MessageSender
from flowbot.utils.templating import render_template, to_text

logger = logging.getLogger(__name__)

FORMAT_EMOJIS = ["✨", "🤖", "💬", "👋", "😊"]


def apply_formatting(text: str, formatting: Optional[Dict[str, Any]]) -> str:
    """WhatsApp markdown: *bold*, _italic_, plus an optional trailing emoji."""
    if not formatting:
        return text
    if formatting.get("bold"):
        text = f"*{text}*"
    if formatting.get("italic"):
        text = f"_{text}_"
    if formatting.get("emoji"):
        text = f"{text} {random.choice(FORMAT_EMOJIS)}"
    return text


class MessageExecutor:
    """
    Sends a rendered text message to the thread's address.

    Never names a next node: continuation is decided by the flow graph, so a
    message node with no outgoing edge ends the conversation.
    """

    def __init__(self, sender: MessageSender):
        self.sender = sender

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        text = render_template(to_text(data.get("message")), self.template_variables(context))

        if data.get("typing") and data.get("delay"):
            await asyncio.sleep(float(data["delay"]) / 1000)

        text = apply_formatting(text, data.get("formatting"))
        recipient = context.address
        if not recipient:
            return NodeExecutionResult.failure("Thread has no address to send the message to")

        message_id = await self._deliver(context, recipient, text)
        if message_id is None:
            return NodeExecutionResult.failure(f"Failed to send message to {recipient}")

        context.log({
            "messageType": data.get("messageType", "text"),
            "content": text,
            "phoneNumber": recipient,
            "messageId": message_id,
        })
        return NodeExecutionResult(
            success=True,
            output={
                "messageSent": text,
                "timestamp": datetime.utcnow().isoformat(),
                "recipient": recipient,
                "messageId": message_id,
            },
        )

    def template_variables(self, context: NodeExecutionContext) -> Dict[str, Any]:
        return context.variables

    async def _deliver(self, context: NodeExecutionContext, recipient: str, text: str) -> Optional[str]:
        try:
            return await self.sender.send_text(recipient, text)
        except Exception as e:
            logger.error(f"Message send failed for node {context.node_id}: {e}", exc_info=True)
            return None


class EnhancedMessageExecutor(MessageExecutor):
    """Text, template and media messages, with built-in now/date/time/userId tokens."""

    def template_variables(self, context: NodeExecutionContext) -> Dict[str, Any]:
        now = datetime.now()
        builtins = {
            "now": now.isoformat(timespec="seconds"),
            "date": now.strftime("%Y-%m-%d"),
            "time": now.strftime("%H:%M:%S"),
            "userId": context.get_variable("userId"),
        }
        return {**builtins, **context.variables}

    async def _deliver(self, context: NodeExecutionContext, recipient: str, text: str) -> Optional[str]:
        data = context.config
        message_type = data.get("messageType", "text")
        variables = self.template_variables(context)
        try:
            if message_type == "template":
                params = [render_template(to_text(p), variables) for p in data.get("templateParams", [])]
                return await self.sender.send_template(
                    recipient, data.get("templateName", ""), params, data.get("language")
                )
            if message_type == "media":
                return await self.sender.send_media(
                    recipient,
                    data.get("mediaType", "image"),
                    render_template(to_text(data.get("mediaUrl")), variables),
                    text or None,
                )
            return await self.sender.send_text(recipient, text)
        except Exception as e:
            logger.error(f"{message_type} message send failed for node {context.node_id}: {e}", exc_info=True)
            return None
