# /flowbot/services/ai_service.py

import json
import logging
from openai import AsyncOpenAI
from typing import Any, Dict, Optional

from flowbot.config.settings import settings
from flowbot.services.ports import Classification
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import ai_requests_counter

# OpenAI-backed ConditionClassifier (ai-mode condition nodes) and
# ResponseGenerator (aiResponse nodes). Both raise when no client is
# configured or the model call fails; the calling executors decide the fallback.

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM_PROMPT = (
    "You evaluate a condition in a WhatsApp chatbot conversation. "
    "Given the condition, the user's latest message and the conversation variables, "
    'answer with JSON: {"result": true|false, "confidence": 0.0-1.0, "reasoning": "short explanation"}.'
)

DEFAULT_ASSISTANT_PROMPT = "You are a helpful WhatsApp assistant. Answer briefly and in the user's language."


class AIServiceError(Exception):
    pass


def _parse_result(value: Any) -> bool:
    """Accepts a JSON boolean or the strings "true"/"false"; anything else is a failed classification."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise AIServiceError(f"Classifier returned an unusable result: {value!r}")


class AIService:
    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini", client: Optional[AsyncOpenAI] = None):
        if client is not None:
            self.openai_client = client
        elif api_key:
            self.openai_client = AsyncOpenAI(api_key=api_key)
        else:
            self.openai_client = None
        self.model = model
        self.openai_breaker = CircuitBreaker("openai")

    def _require_client(self) -> AsyncOpenAI:
        if not self.openai_client:
            raise AIServiceError("OpenAI API key is not configured")
        return self.openai_client

    async def classify(self, message: str, variables: Dict[str, Any], prompt: str) -> Classification:
        """Generates a JSON yes/no judgement for a condition using OpenAI's JSON mode."""
        client = self._require_client()
        serializable_variables = json.loads(json.dumps(variables, default=str))
        user_content = (
            f"Condition: {prompt}\n\n"
            f"User message: {message}\n\n"
            f"Variables: {json.dumps(serializable_variables)}"
        )

        try:
            response = await self.openai_breaker.call(
                client.chat.completions.create,
                model=self.model,
                response_format={"type": "json_object"},
                temperature=0,
                messages=[
                    {"role": "system", "content": CLASSIFIER_SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
            )
            data = json.loads(response.choices[0].message.content)
        except Exception as e:
            ai_requests_counter.labels(model="openai-json", status="error").inc()
            logger.error(f"OpenAI condition classification failed: {e}")
            raise AIServiceError(f"Classification failed: {e}") from e

        if not isinstance(data, dict):
            ai_requests_counter.labels(model="openai-json", status="error").inc()
            raise AIServiceError("Classifier reply is not a JSON object")
        try:
            result = _parse_result(data.get("result"))
        except AIServiceError:
            ai_requests_counter.labels(model="openai-json", status="error").inc()
            raise

        ai_requests_counter.labels(model="openai-json", status="success").inc()
        return Classification(
            result=result,
            confidence=float(data.get("confidence") or 0.0),
            reasoning=str(data.get("reasoning") or ""),
        )

    async def generate_response(self, message: str, context: Optional[Dict[str, Any]] = None, system_prompt: Optional[str] = None) -> str:
        client = self._require_client()
        serializable_context = json.loads(json.dumps(context, default=str)) if context else {}
        messages = [{"role": "system", "content": system_prompt or DEFAULT_ASSISTANT_PROMPT}]
        if serializable_context:
            messages.append({"role": "system", "content": f"Conversation variables: {json.dumps(serializable_context)}"})
        messages.append({"role": "user", "content": message})

        try:
            response = await self.openai_breaker.call(
                client.chat.completions.create,
                model=self.model, messages=messages, max_tokens=300, temperature=0.7
            )
        except Exception as e:
            ai_requests_counter.labels(model="openai", status="error").inc()
            logger.error(f"OpenAI response generation failed: {e}")
            raise AIServiceError(f"Response generation failed: {e}") from e

        ai_requests_counter.labels(model="openai", status="success").inc()
        return (response.choices[0].message.content or "").strip()


# Globally accessible instance
ai_service = AIService(settings.openai_api_key, settings.openai_model)
