# backend/tests/unit/test_services.py
import json

import httpx
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from flowbot.config.settings import settings
from flowbot.executors.condition import ConditionExecutor
from flowbot.models.conversation import ConversationThread, ThreadStatus
from flowbot.services.ai_service import AIService, AIServiceError
from flowbot.services.conversation_service import ConversationService
from flowbot.services.flow_service import load_flows_from_dir
from flowbot.services.http_client import HttpxClient
from flowbot.services.hubspot_service import HubSpotError, HubSpotService
from flowbot.services.ports import TransportError
from flowbot.services.thread_repository import RedisThreadRepository
from flowbot.services.whatsapp_service import WhatsAppService, normalize_phone
from flowbot.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from flowbot.workflows.engine import FlowEngine
from flowbot.workflows.registry import EngineRuntime
from flowbot.workflows.store import ThreadStore


# --- WhatsAppService Tests ---

@pytest.fixture
def whatsapp():
    return WhatsAppService(settings.whatsapp_access_token, settings.whatsapp_phone_id, http_client=AsyncMock())


def api_ok(wamid="wamid_123"):
    return AsyncMock(return_value=MagicMock(status_code=200, json=lambda: {"messages": [{"id": wamid}]}))


def test_normalize_phone():
    assert normalize_phone("52 (55) 1234-5678") == "+525512345678"
    assert normalize_phone("+15551234567") == "+15551234567"


@pytest.mark.asyncio
async def test_whatsapp_send_text_success(mocker, whatsapp):
    """Test successful message sending."""
    mock_response = api_ok()
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    wamid = await whatsapp.send_text("15551234567", "Hello World")

    assert wamid == "wamid_123"
    mock_response.assert_awaited_once()
    url = mock_response.await_args.args[1]
    payload = mock_response.await_args.kwargs["json"]
    assert url.endswith(f"/{settings.whatsapp_phone_id}/messages")
    assert payload["to"] == "+15551234567"
    assert payload["text"] == {"body": "Hello World"}


@pytest.mark.asyncio
async def test_whatsapp_send_failure_returns_none(mocker, whatsapp):
    error = MagicMock(status_code=400, json=lambda: {"error": {"message": "Invalid parameter"}})
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', AsyncMock(return_value=error))

    assert await whatsapp.send_text("+15551234567", "Hi") is None


@pytest.mark.asyncio
async def test_whatsapp_network_error_returns_none(mocker, whatsapp):
    mocker.patch(
        'flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call',
        AsyncMock(side_effect=httpx.ConnectError("refused")),
    )
    assert await whatsapp.send_text("+15551234567", "Hi") is None


@pytest.mark.asyncio
async def test_whatsapp_buttons_are_capped(mocker, whatsapp):
    mock_response = api_ok()
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)
    buttons = [{"id": f"b{i}", "title": "A very long button title indeed"} for i in range(5)]

    await whatsapp.send_buttons("+15551234567", "Pick one", buttons)

    action = mock_response.await_args.kwargs["json"]["interactive"]["action"]
    assert len(action["buttons"]) == 3
    assert all(len(b["reply"]["title"]) <= 20 for b in action["buttons"])


@pytest.mark.asyncio
async def test_whatsapp_template_uses_default_language(mocker, whatsapp):
    mock_response = api_ok()
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    await whatsapp.send_template("+15551234567", "order_update", ["Ana", 7])

    template = mock_response.await_args.kwargs["json"]["template"]
    assert template["language"] == {"code": settings.whatsapp_template_language}
    assert template["components"][0]["parameters"] == [{"type": "text", "text": "Ana"}, {"type": "text", "text": "7"}]


@pytest.mark.asyncio
async def test_whatsapp_rejects_unknown_media_type(mocker, whatsapp):
    mock_response = api_ok()
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    assert await whatsapp.send_media("+15551234567", "sticker", "https://x.test/a.webp") is None
    mock_response.assert_not_awaited()


# --- HttpxClient Tests ---

@pytest.mark.asyncio
async def test_httpx_client_parses_json():
    def handler(request):
        assert request.headers["x-api-key"] == "k"
        assert json.loads(request.content) == {"name": "Ana"}
        return httpx.Response(201, json={"id": 1})

    client = HttpxClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    response = await client.request("post", "https://api.test/users", headers={"x-api-key": "k"}, body={"name": "Ana"})

    assert response.status == 201
    assert response.status_text == "Created"
    assert response.data == {"id": 1}
    await client.close()


@pytest.mark.asyncio
async def test_httpx_client_text_and_empty_bodies():
    responses = iter([httpx.Response(200, text="plain"), httpx.Response(204)])
    client = HttpxClient(httpx.AsyncClient(transport=httpx.MockTransport(lambda request: next(responses))))

    assert (await client.request("GET", "https://api.test/a")).data == "plain"
    assert (await client.request("DELETE", "https://api.test/b")).data is None


@pytest.mark.asyncio
async def test_httpx_client_timeout_is_transport_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = HttpxClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(TransportError):
        await client.request("GET", "https://slow.test")


# --- HubSpotService Tests ---

@pytest.mark.asyncio
async def test_hubspot_create_contact_flattens_record():
    def handler(request):
        assert request.headers["authorization"] == "Bearer hs-token"
        assert request.url.path == "/crm/v3/objects/contacts"
        return httpx.Response(201, json={"id": "501", "properties": {"email": "ana@example.com"}})

    service = HubSpotService("hs-token", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    contact = await service.create_contact({"email": "ana@example.com"})

    assert contact == {"id": "501", "email": "ana@example.com"}


@pytest.mark.asyncio
async def test_hubspot_search_without_results():
    service = HubSpotService(
        "hs-token",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"results": []}))),
    )
    assert await service.find_contact_by_email("nobody@example.com") is None


@pytest.mark.asyncio
async def test_hubspot_error_status_raises():
    service = HubSpotService(
        "hs-token",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(409, json={"message": "Contact already exists"})
        )),
    )
    with pytest.raises(HubSpotError, match="Contact already exists"):
        await service.create_contact({"email": "ana@example.com"})


@pytest.mark.asyncio
async def test_hubspot_requires_token():
    with pytest.raises(HubSpotError):
        await HubSpotService(None, http_client=AsyncMock()).create_deal({"dealname": "x"})


# --- AIService Tests ---

def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.mark.asyncio
async def test_ai_service_classifies_condition():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=completion('{"result": true, "confidence": 0.8, "reasoning": "asks for price"}')
    )
    service = AIService(client=client)

    classification = await service.classify("¿cuánto cuesta?", {"userId": "u1"}, "Is the user asking about price?")

    assert classification.result is True
    assert classification.confidence == 0.8
    assert client.chat.completions.create.await_args.kwargs["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_ai_service_accepts_string_booleans():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion('{"result": "false", "confidence": 0.9}'))

    classification = await AIService(client=client).classify("hola", {}, "Is the user angry?")

    assert classification.result is False


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ['{"result": "maybe"}', '{"confidence": 0.5}', '{"result": 1}', '["true"]'])
async def test_ai_service_rejects_unusable_results(content):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion(content))

    with pytest.raises(AIServiceError):
        await AIService(client=client).classify("hola", {}, "Is the user angry?")


@pytest.mark.asyncio
async def test_unusable_ai_result_falls_back_to_simple_rules(make_context):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion('{"result": "no idea"}'))
    executor = ConditionExecutor(AIService(client=client))
    context = make_context({
        "mode": "ai",
        "aiPrompt": "Is the user an adult?",
        "rules": [{"field": "age", "operator": "greater_than", "value": "18"}],
        "trueNodeId": "adult",
        "falseNodeId": "minor",
    }, variables={"age": 12}, node_type="condition")

    result = await executor.execute(context)

    assert result.next_node_id == "minor"
    assert result.output["evaluationDetails"]["mode"] == "ai_fallback"


@pytest.mark.asyncio
async def test_ai_service_generates_response():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion("  Hola Ana  "))
    service = AIService(client=client)

    reply = await service.generate_response("hola", context={"name": "Ana"}, system_prompt="Be brief")

    assert reply == "Hola Ana"
    messages = client.chat.completions.create.await_args.kwargs["messages"]
    assert messages[0] == {"role": "system", "content": "Be brief"}
    assert messages[-1] == {"role": "user", "content": "hola"}


@pytest.mark.asyncio
async def test_ai_service_errors_raise():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion("not json"))

    with pytest.raises(AIServiceError):
        await AIService(client=client).classify("x", {}, "?")
    with pytest.raises(AIServiceError):
        await AIService().generate_response("hola")


# --- RedisThreadRepository Tests ---

@pytest.fixture
def thread():
    return ConversationThread(
        id="thread_abc",
        user_id="u1",
        address="+1555",
        current_node_id="start",
        metadata={"flowId": "f1", "flowVersion": 1},
        variables={"name": "Ana"},
    )


@pytest.mark.asyncio
async def test_redis_repository_round_trip(thread):
    client = AsyncMock()
    repository = RedisThreadRepository(client=client, ttl=60)

    assert await repository.save_thread(thread) is True
    snapshot_call, address_call = client.setex.await_args_list
    key, ttl, payload = snapshot_call.args
    assert (key, ttl) == ("flow_thread:thread_abc", 60)
    assert json.loads(payload)["currentNodeId"] == "start"
    assert address_call.args == ("flow_thread_addr:+1555", 60, "thread_abc")

    client.get.return_value = payload
    loaded = await repository.load_thread("thread_abc")
    assert loaded.variables == {"name": "Ana"}
    assert loaded.flow_id == "f1"
    assert loaded.status == ThreadStatus.ACTIVE


@pytest.mark.asyncio
async def test_redis_repository_address_index(thread):
    client = AsyncMock()
    repository = RedisThreadRepository(client=client, ttl=60)

    client.get.return_value = b"thread_abc"
    assert await repository.find_active_thread_id("+1555") == "thread_abc"
    client.get.assert_awaited_with("flow_thread_addr:+1555")

    thread.status = ThreadStatus.COMPLETED
    assert await repository.save_thread(thread) is True
    client.delete.assert_awaited_once_with("flow_thread_addr:+1555")
    assert client.setex.await_count == 1


@pytest.mark.asyncio
async def test_redis_repository_keeps_index_of_newer_thread(thread):
    client = AsyncMock()
    client.get.return_value = b"thread_newer"
    repository = RedisThreadRepository(client=client)

    thread.status = ThreadStatus.ERROR
    await repository.save_thread(thread)

    client.delete.assert_not_awaited()

    client.get.side_effect = ConnectionError("redis down")
    assert await repository.find_active_thread_id("+1555") is None


@pytest.mark.asyncio
async def test_redis_repository_tolerates_failures(thread):
    client = AsyncMock()
    client.setex.side_effect = ConnectionError("redis down")
    client.get.return_value = b"{not json"
    repository = RedisThreadRepository(client=client)

    assert await repository.save_thread(thread) is False
    assert await repository.load_thread("thread_abc") is None

    client.get.return_value = None
    assert await repository.load_thread("thread_missing") is None


# --- CircuitBreaker Tests ---

@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker("test", failure_threshold=2)
    failing = AsyncMock(side_effect=RuntimeError("boom"))

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(AsyncMock(return_value="ok"))
    assert failing.await_count == 2


# --- Flow loading ---

def test_load_flows_from_dir_skips_invalid_files(tmp_path):
    (tmp_path / "welcome.json").write_text(json.dumps({
        "id": "welcome",
        "name": "Welcome",
        "nodes": [{"id": "hello", "type": "message", "data": {"message": "Hola"}}],
        "startNodeId": "hello",
    }), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    (tmp_path / "duplicate.json").write_text(json.dumps({
        "id": "dup", "name": "Dup", "nodes": [{"id": "a", "type": "message"}, {"id": "a", "type": "message"}],
    }), encoding="utf-8")

    flows = load_flows_from_dir(str(tmp_path))

    assert [flow.id for flow in flows] == ["welcome"]
    assert flows[0].start_node_id == "hello"


def test_load_flows_from_missing_dir(tmp_path):
    assert load_flows_from_dir(str(tmp_path / "nope")) == []


# --- ConversationService Tests ---

def greeting_flow(make_flow):
    return make_flow([
        {"id": "menu", "type": "buttons", "data": {
            "text": "Hola {{name}}", "buttons": [{"id": "a", "title": "A"}], "nextNodeId": "done",
        }},
        {"id": "done", "type": "message", "data": {"message": "Elegiste {{buttonResponse}}"}},
    ], flow_id="welcome")


@pytest.mark.asyncio
async def test_conversation_service_starts_default_flow(engine, sender, make_flow):
    engine.register_flow(greeting_flow(make_flow))
    service = ConversationService(engine, default_flow_id="welcome")

    thread = await service.handle_inbound("+1555", "hola", profile_name="Ana")

    assert thread.variables["lastMessage"] == "hola"
    assert sender.sent[0]["text"] == "Hola Ana"
    assert thread.status == ThreadStatus.ACTIVE


@pytest.mark.asyncio
async def test_conversation_service_continues_active_thread(engine, sender, make_flow):
    engine.register_flow(greeting_flow(make_flow))
    service = ConversationService(engine, default_flow_id="welcome")
    first = await service.handle_inbound("+1555", "hola")

    second = await service.handle_inbound("+1555", "A", {"id": "a", "title": "A"})

    assert second.id == first.id
    assert second.status == ThreadStatus.ACTIVE
    assert second.current_node_id == "done"

    third = await service.handle_inbound("+1555", "ok")
    assert sender.texts[-1] == "Elegiste A"
    assert third.status == ThreadStatus.COMPLETED


@pytest.mark.asyncio
async def test_conversation_service_without_default_flow(engine):
    service = ConversationService(engine, default_flow_id="")
    assert await service.handle_inbound("+1555", "hola") is None


class DictRedis:
    """Just enough of redis.asyncio.Redis for the thread repository."""

    def __init__(self):
        self.data = {}

    async def setex(self, key, ttl, value):
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        self.data.pop(key, None)


@pytest.mark.asyncio
async def test_conversation_service_resumes_persisted_thread_after_restart(engine, sender, make_flow):
    engine.register_flow(greeting_flow(make_flow))
    repository = RedisThreadRepository(client=DictRedis())

    def restarted_service():
        runtime = EngineRuntime(executors=engine.runtime.executors, flows=engine.runtime.flows, threads=ThreadStore(repository))
        return ConversationService(FlowEngine(runtime), default_flow_id="welcome")

    first = await restarted_service().handle_inbound("+1555", "hola")
    second = await restarted_service().handle_inbound("+1555", "A", {"id": "a", "title": "A"})

    assert second.id == first.id
    assert second.current_node_id == "done"
    assert [step.node_id for step in second.history] == ["menu", "menu"]

    third = await restarted_service().handle_inbound("+1555", "ok")
    assert third.id == first.id
    assert third.status == ThreadStatus.COMPLETED
    assert await repository.find_active_thread_id("+1555") is None
