# /flowbot/executors/interactive.py

# Nodes that prompt the user and suspend the thread until the reply arrives.
# The first execution sends the prompt and returns waiting_for_input; the next
# inbound message re-enters the same node, which stores the reply and routes on.

import logging
from typing import Any, Dict, List, Optional

from flowbot.models.execution import NodeExecutionContext, NodeExecutionResult
from flowbot.services.ports import MessageSender
from flowbot.utils.templating import render_template, to_text

logger = logging.getLogger(__name__)


def reply_value(context: NodeExecutionContext) -> Any:
    return context.user_input if context.user_input is not None else context.user_message


class PromptingExecutor:
    def __init__(self, sender: MessageSender):
        self.sender = sender

    def prompt_text(self, context: NodeExecutionContext, key: str = "text") -> str:
        data = context.config
        template = data.get(key) or data.get("message") or ""
        return render_template(to_text(template), context.variables)

    async def deliver(self, context: NodeExecutionContext, send) -> Optional[str]:
        recipient = context.address
        if not recipient:
            return None
        try:
            return await send(recipient)
        except Exception as e:
            logger.error(f"Prompt send failed for node {context.node_id}: {e}", exc_info=True)
            return None

    def waiting(self, output: Dict[str, Any], variables: Optional[Dict[str, Any]] = None) -> NodeExecutionResult:
        return NodeExecutionResult(success=True, output=output, waiting_for_input=True, variables=variables)


class ButtonsExecutor(PromptingExecutor):
    """Quick-reply buttons. The reply matches a button by id, title or 1-based position."""

    branching = True

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        buttons: List[Dict[str, Any]] = data.get("buttons") or []

        if context.is_reply_to_self():
            reply = reply_value(context)
            button = self.match_button(buttons, reply)
            value = (button.get("title") or button.get("text") or button.get("id")) if button else reply
            variable = data.get("outputVariable") or "buttonResponse"
            next_node_id = (button or {}).get("nextNodeId") or data.get("nextNodeId")
            return NodeExecutionResult(
                success=True,
                output={"buttonSelected": value, "buttonId": (button or {}).get("id"), "matched": button is not None},
                next_node_id=next_node_id,
                variables={variable: value},
            )

        text = self.prompt_text(context)
        message_id = await self.deliver(context, lambda to: self.sender.send_buttons(to, text, buttons))
        if message_id is None:
            return NodeExecutionResult.failure("Failed to send button message")
        return self.waiting({"messageSent": text, "buttons": len(buttons), "messageId": message_id})

    @staticmethod
    def match_button(buttons: List[Dict[str, Any]], reply: Any) -> Optional[Dict[str, Any]]:
        if isinstance(reply, dict):
            reply = reply.get("id") or reply.get("title")
        text = to_text(reply).strip().lower()
        if not text:
            return None
        for button in buttons:
            if text in (to_text(button.get("id")).lower(), to_text(button.get("title") or button.get("text")).lower()):
                return button
        if text.isdigit() and 1 <= int(text) <= len(buttons):
            return buttons[int(text) - 1]
        return None


class SurveyExecutor(PromptingExecutor):
    """Asks each question in turn; answers land in surveyResponses keyed by question id."""

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        questions: List[Dict[str, Any]] = data.get("questions") or []
        variable = data.get("outputVariable") or "surveyResponses"

        if context.is_reply_to_self():
            index = int(context.get_variable("surveyQuestionIndex") or 0)
            responses = dict(context.get_variable(variable) or {})
            if index < len(questions):
                question = questions[index]
                responses[question.get("id") or f"q{index + 1}"] = reply_value(context)
                index += 1
        else:
            index, responses = 0, {}

        if index >= len(questions):
            return NodeExecutionResult(
                success=True,
                output={"surveyCompleted": True, "responses": responses},
                next_node_id=data.get("nextNodeId"),
                variables={variable: responses, "surveyCompleted": True, "surveyQuestionIndex": index},
            )

        question = questions[index]
        text = render_template(to_text(question.get("text") or question.get("question")), context.variables)
        message_id = await self.deliver(context, lambda to: self.sender.send_text(to, text))
        if message_id is None:
            return NodeExecutionResult.failure(f"Failed to send survey question {index + 1}")
        return self.waiting(
            {"question": text, "questionIndex": index, "totalQuestions": len(questions)},
            {variable: responses, "surveyQuestionIndex": index, "surveyCompleted": False},
        )


class LocationExecutor(PromptingExecutor):
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        if context.is_reply_to_self():
            location = reply_value(context)
            variable = data.get("outputVariable") or "userLocation"
            return NodeExecutionResult(
                success=True,
                output={"locationReceived": location},
                next_node_id=data.get("nextNodeId"),
                variables={variable: location},
            )

        text = self.prompt_text(context) or "Please share your location"
        message_id = await self.deliver(context, lambda to: self.sender.send_location_request(to, text))
        if message_id is None:
            return NodeExecutionResult.failure("Failed to send location request")
        return self.waiting({"messageSent": text, "messageId": message_id})


class WhatsAppFlowExecutor(PromptingExecutor):
    """Sends a WhatsApp Flow (native form) and stores the submitted payload."""

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        if context.is_reply_to_self():
            payload = reply_value(context)
            variable = data.get("outputVariable") or "flowResponse"
            return NodeExecutionResult(
                success=True,
                output={"flowResponse": payload},
                next_node_id=data.get("nextNodeId"),
                variables={variable: payload},
            )

        flow_id = data.get("flowId")
        if not flow_id:
            return NodeExecutionResult.failure("WhatsApp Flow node has no flowId configured")
        body = self.prompt_text(context, "body")
        cta = to_text(data.get("cta") or "Open")
        flow_token = to_text(data.get("flowToken") or context.thread_id)
        message_id = await self.deliver(
            context, lambda to: self.sender.send_flow(to, flow_id, body, cta, flow_token)
        )
        if message_id is None:
            return NodeExecutionResult.failure(f"Failed to send WhatsApp Flow {flow_id}")
        return self.waiting({"flowId": flow_id, "messageSent": body, "messageId": message_id})
