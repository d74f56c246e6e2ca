import itertools
import pytest
import tenacity
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load environment variables FIRST, before any flowbot imports, so Settings
# picks up the test configuration.
load_dotenv(dotenv_path="backend/.env.test")

from flowbot.main import app  # noqa: E402
from flowbot.executors.catalog import register_all_executors  # noqa: E402
from flowbot.models.conversation import ConversationStep  # noqa: E402
from flowbot.models.execution import NodeExecutionContext, VariableStore  # noqa: E402
from flowbot.models.flow import FlowDefinition  # noqa: E402
from flowbot.services.db_service import InMemoryQueryExecutor  # noqa: E402
from flowbot.services.ports import HttpResponse  # noqa: E402
from flowbot.workflows.engine import FlowEngine  # noqa: E402
from flowbot.workflows.registry import EngineRuntime  # noqa: E402


class FakeSender:
    """MessageSender that records every outbound message instead of calling WhatsApp."""

    def __init__(self):
        self.sent = []
        self._ids = itertools.count(1)

    def _record(self, kind, to, **payload):
        self.sent.append({"kind": kind, "to": to, **payload})
        return f"wamid.test{next(self._ids)}"

    @property
    def texts(self):
        return [message["text"] for message in self.sent if message["kind"] == "text"]

    async def send_text(self, to, text):
        return self._record("text", to, text=text)

    async def send_template(self, to, template_name, body_params, language=None):
        return self._record("template", to, template_name=template_name, body_params=body_params, language=language)

    async def send_media(self, to, media_type, media_url, caption=None):
        return self._record("media", to, media_type=media_type, media_url=media_url, caption=caption)

    async def send_buttons(self, to, text, buttons):
        return self._record("buttons", to, text=text, buttons=buttons)

    async def send_location_request(self, to, text):
        return self._record("location_request", to, text=text)

    async def send_flow(self, to, flow_id, body, cta, flow_token):
        return self._record("flow", to, flow_id=flow_id, body=body, cta=cta, flow_token=flow_token)


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def query_executor():
    return InMemoryQueryExecutor({
        "users": [
            {"id": 1, "name": "Juan", "phone": "+1555", "status": "active"},
            {"id": 2, "name": "Maria", "phone": "+1666", "status": "inactive"},
        ]
    })


@pytest.fixture
def http_client():
    client = AsyncMock()
    client.request.return_value = HttpResponse(status=200, status_text="OK", data={"ok": True}, headers={})
    return client


@pytest.fixture
def crm():
    return AsyncMock()


@pytest.fixture
def engine(sender, query_executor, http_client, crm):
    """An engine on a fresh runtime with every built-in executor and fake adapters."""
    flow_engine = FlowEngine(EngineRuntime())
    register_all_executors(
        flow_engine,
        sender=sender,
        http_client=http_client,
        query_executor=query_executor,
        crm=crm,
        webhook_wait=tenacity.wait_none(),
    )
    return flow_engine


@pytest.fixture
def make_flow():
    def _make_flow(nodes, edges=None, flow_id="f1", **kwargs):
        return FlowDefinition(id=flow_id, name=f"Flow {flow_id}", nodes=nodes, edges=edges or [], **kwargs)
    return _make_flow


@pytest.fixture
def make_context():
    """Builds a NodeExecutionContext for calling an executor directly."""
    def _make_context(config, variables=None, node_type="message", node_id="n1",
                      user_message=None, user_input=None, previous_step=None):
        values = {"address": "+15551234567", "phoneNumber": "+15551234567", "userId": "u1", **(variables or {})}
        return NodeExecutionContext(
            thread_id="thread_test",
            node_id=node_id,
            node_type=node_type,
            config=config,
            store=VariableStore(values),
            user_message=user_message,
            user_input=user_input,
            previous_step=previous_step,
        )
    return _make_context


@pytest.fixture
def waiting_step():
    """The history step a prompting node leaves behind when it suspends."""
    def _waiting_step(node_id="n1", node_type="buttons"):
        return ConversationStep(node_id=node_id, node_type=node_type, metadata={"waitingForInput": True})
    return _waiting_step


@pytest.fixture(scope="function")
def test_client(mocker, engine):
    """
    Provides a TestClient for API integration tests.
    The lifespan runs, but builds the test engine instead of real adapters.
    """
    mocker.patch("flowbot.utils.lifecycle.build_engine", return_value=(engine, []))

    with TestClient(app) as client:
        yield client
