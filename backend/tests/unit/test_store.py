# backend/tests/unit/test_store.py
import asyncio
from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock

from flowbot.models.conversation import ConversationThread, ThreadStatus
from flowbot.models.flow import FlowDefinition
from flowbot.workflows.registry import ExecutorRegistry, FlowRegistry
from flowbot.workflows.store import ThreadStore


def make_thread(thread_id, address="+1555", status=ThreadStatus.ACTIVE, user_id="u1", age_hours=0):
    stamp = datetime.utcnow() - timedelta(hours=age_hours)
    return ConversationThread(
        id=thread_id, user_id=user_id, address=address, status=status,
        current_node_id="n1", last_activity=stamp, started_at=stamp,
    )


# --- ThreadStore ---

@pytest.mark.asyncio
async def test_save_writes_through_to_repository():
    repository = AsyncMock()
    store = ThreadStore(repository)
    thread = make_thread("t1")

    await store.save(thread)

    assert store.get("t1") is thread
    repository.save_thread.assert_awaited_once_with(thread)


@pytest.mark.asyncio
async def test_load_falls_back_to_repository_and_caches():
    thread = make_thread("t1")
    repository = AsyncMock()
    repository.load_thread.return_value = thread
    store = ThreadStore(repository)

    assert await store.load("t1") is thread
    assert await store.load("t1") is thread
    repository.load_thread.assert_awaited_once_with("t1")
    assert "t1" in store


@pytest.mark.asyncio
async def test_concurrent_loads_return_the_same_copy():
    async def slow_load(thread_id):
        await asyncio.sleep(0.01)
        return make_thread(thread_id)

    repository = AsyncMock()
    repository.load_thread.side_effect = slow_load
    store = ThreadStore(repository)

    first, second = await asyncio.gather(store.load("t1"), store.load("t1"))

    assert first is second
    assert store.get("t1") is first


@pytest.mark.asyncio
async def test_repository_errors_do_not_break_the_store():
    repository = AsyncMock()
    repository.save_thread.side_effect = ConnectionError("redis down")
    repository.load_thread.side_effect = ConnectionError("redis down")
    store = ThreadStore(repository)

    await store.save(make_thread("t1"))

    assert store.get("t1") is not None
    assert await store.load("t2") is None


def test_lock_is_one_per_thread():
    store = ThreadStore()
    assert store.lock("t1") is store.lock("t1")
    assert store.lock("t1") is not store.lock("t2")


@pytest.mark.asyncio
async def test_find_active_by_address_prefers_latest_activity():
    store = ThreadStore()
    await store.save(make_thread("old", age_hours=2))
    await store.save(make_thread("new", age_hours=1))
    await store.save(make_thread("done", status=ThreadStatus.COMPLETED))
    await store.save(make_thread("other", address="+1666"))

    assert (await store.find_active_by_address("+1555")).id == "new"
    assert await store.find_active_by_address("+1777") is None


@pytest.mark.asyncio
async def test_find_active_by_address_reads_through_to_repository():
    repository = AsyncMock()
    repository.find_active_thread_id.return_value = "persisted"
    repository.load_thread.return_value = make_thread("persisted")
    store = ThreadStore(repository)

    thread = await store.find_active_by_address("+1555")

    assert thread.id == "persisted"
    assert store.get("persisted") is thread
    repository.find_active_thread_id.assert_awaited_once_with("+1555")

    repository.find_active_thread_id.return_value = "closed"
    repository.load_thread.return_value = make_thread("closed", address="+1666", status=ThreadStatus.COMPLETED)
    assert await store.find_active_by_address("+1666") is None


@pytest.mark.asyncio
async def test_sweep_removes_only_stale_inactive_threads():
    repository = AsyncMock()
    store = ThreadStore(repository)
    for thread in (
        make_thread("stale-done", status=ThreadStatus.COMPLETED, age_hours=30),
        make_thread("stale-error", status=ThreadStatus.ERROR, age_hours=30),
        make_thread("stale-active", age_hours=30),
        make_thread("fresh-done", status=ThreadStatus.COMPLETED, age_hours=1),
    ):
        await store.save(thread)

    removed = await store.sweep_inactive(24)

    assert sorted(removed) == ["stale-done", "stale-error"]
    assert len(store) == 2
    assert repository.delete_thread.await_count == 2


# --- Registries ---

def flow(version, name="Support"):
    return FlowDefinition(id="support", name=name, version=version, nodes=[{"id": "a", "type": "message"}])


def test_flow_registry_versions():
    registry = FlowRegistry()
    registry.register(flow(1))
    registry.register(flow(3))
    registry.register(flow(2))

    assert registry.get("support").version == 3
    assert registry.get("support", 1).version == 1
    assert registry.get("support", 9) is None
    assert registry.get("missing") is None
    assert registry.versions("support") == [1, 2, 3]
    assert [f.version for f in registry.list_latest()] == [3]
    assert "support" in registry


def test_flow_registry_replaces_same_version():
    registry = FlowRegistry()
    registry.register(flow(1, "Old"))
    registry.register(flow(1, "New"))
    assert registry.get("support").name == "New"


def test_executor_registry_last_registration_wins():
    registry = ExecutorRegistry()
    first, second = object(), object()
    registry.register("message", first)
    registry.register("message", second)
    registry.register("custom", first)

    assert registry.get("message") is second
    assert registry.get("unknown") is None
    assert registry.types() == ["custom", "message"]
    assert len(registry) == 2


# --- Flow definitions ---

def test_start_node_resolution():
    nodes = [{"id": "a", "type": "message"}, {"id": "b", "type": "message"}]
    edges = [{"source": "b", "target": "a"}]

    assert FlowDefinition(id="f", name="f", nodes=nodes, edges=edges).resolve_start_node() == "b"
    assert FlowDefinition(id="f", name="f", nodes=nodes, startNodeId="a").resolve_start_node() == "a"
    assert FlowDefinition(id="f", name="f", nodes=nodes).resolve_start_node("b") == "b"
    assert FlowDefinition(id="f", name="f", nodes=nodes).resolve_start_node("zzz") is None
    cyclic = [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}]
    assert FlowDefinition(id="f", name="f", nodes=nodes, edges=cyclic).resolve_start_node() is None


def test_default_successor_needs_exactly_one_edge():
    nodes = [{"id": n, "type": "message"} for n in "abc"]
    edges = [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}, {"source": "b", "target": "c"}]
    definition = FlowDefinition(id="f", name="f", nodes=nodes, edges=edges)

    assert definition.default_successor("a") == "b"
    assert definition.default_successor("b") is None
    assert definition.default_successor("c") is None


def test_default_successor_ignores_handle_edges():
    nodes = [{"id": n, "type": "message"} for n in "abc"]
    edges = [{"source": "a", "target": "b", "sourceHandle": "true"}, {"source": "b", "target": "c", "sourceHandle": "yes"},
             {"source": "b", "target": "a"}]
    definition = FlowDefinition(id="f", name="f", nodes=nodes, edges=edges)

    assert definition.default_successor("a") is None
    assert definition.default_successor("b") == "a"


def test_duplicate_node_ids_are_rejected():
    with pytest.raises(ValueError):
        FlowDefinition(id="f", name="f", nodes=[{"id": "a", "type": "message"}, {"id": "a", "type": "buttons"}])
