# /flowbot/services/ports.py

"""
Interfaces the engine and executors depend on.

Real adapters (WhatsApp Cloud API, httpx, HubSpot, MongoDB, OpenAI, Redis)
implement these at startup; tests inject fakes or AsyncMocks.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from flowbot.models.conversation import ConversationThread


class TransportError(Exception):
    """Timeout or network failure while talking to an external service."""


@dataclass
class HttpResponse:
    status: int
    status_text: str = ""
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Classification:
    result: bool
    confidence: float = 0.0
    reasoning: str = ""


@runtime_checkable
class MessageSender(Protocol):
    async def send_text(self, to: str, text: str) -> Optional[str]: ...

    async def send_template(self, to: str, template_name: str, body_params: List[str], language: Optional[str] = None) -> Optional[str]: ...

    async def send_media(self, to: str, media_type: str, media_url: str, caption: Optional[str] = None) -> Optional[str]: ...

    async def send_buttons(self, to: str, text: str, buttons: List[Dict[str, Any]]) -> Optional[str]: ...

    async def send_location_request(self, to: str, text: str) -> Optional[str]: ...

    async def send_flow(self, to: str, flow_id: str, body: str, cta: str, flow_token: str) -> Optional[str]: ...


@runtime_checkable
class HttpClient(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = 10.0,
    ) -> HttpResponse: ...


@runtime_checkable
class CrmClient(Protocol):
    async def create_contact(self, properties: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update_contact(self, contact_id: str, properties: Dict[str, Any]) -> Dict[str, Any]: ...

    async def create_deal(self, properties: Dict[str, Any]) -> Dict[str, Any]: ...

    async def find_contact_by_email(self, email: str) -> Optional[Dict[str, Any]]: ...


@runtime_checkable
class QueryExecutor(Protocol):
    async def select(self, table: str, predicates: Dict[str, Any]) -> List[Dict[str, Any]]: ...

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update(self, table: str, predicates: Dict[str, Any], values: Dict[str, Any]) -> int: ...

    async def delete(self, table: str, predicates: Dict[str, Any]) -> int: ...


@runtime_checkable
class ConditionClassifier(Protocol):
    async def classify(self, message: str, variables: Dict[str, Any], prompt: str) -> Classification: ...


@runtime_checkable
class ResponseGenerator(Protocol):
    async def generate_response(self, message: str, context: Optional[Dict[str, Any]] = None, system_prompt: Optional[str] = None) -> str: ...


@runtime_checkable
class ThreadRepository(Protocol):
    async def save_thread(self, thread: ConversationThread) -> Any: ...

    async def load_thread(self, thread_id: str) -> Optional[ConversationThread]: ...

    async def find_active_thread_id(self, address: str) -> Optional[str]: ...

    async def delete_thread(self, thread_id: str) -> Any: ...
