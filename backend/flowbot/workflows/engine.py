# /flowbot/workflows/engine.py

"""
Conversation flow execution engine.

Drives one conversation thread through a flow graph:
- starts threads on a flow's start node
- feeds inbound user messages to the node the thread is waiting on
- runs the node's executor and applies its result (advance, wait, finish, fail)
- keeps running nodes that need no user input ("auto-chaining") in a loop
- appends one history step per node execution and persists the thread

Only the engine mutates a thread. Every external call holds the thread's lock,
so concurrent messages for the same thread are processed one after the other.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from structlog.contextvars import bound_contextvars

from flowbot.config.settings import settings
from flowbot.models.conversation import (
    ConversationStep,
    ConversationThread,
    StepStatus,
    ThreadStatus,
    new_thread_id,
)
from flowbot.models.execution import (
    NodeExecutionContext,
    NodeExecutionResult,
    NodeExecutor,
    VariableStore,
)
from flowbot.models.flow import FlowDefinition, FlowNode
from flowbot.utils.metrics import (
    conversations_started_counter,
    node_execution_histogram,
    node_executions_counter,
    thread_transitions_counter,
)
from flowbot.workflows.definitions import requires_user_input
from flowbot.workflows.exceptions import (
    ExecutionError,
    ExecutorNotFound,
    FlowEngineError,
    FlowNotFound,
    NodeNotFound,
    StartNodeNotFound,
    ThreadNotActive,
    ThreadNotFound,
)
from flowbot.workflows.registry import EngineRuntime

logger = logging.getLogger(__name__)


class FlowEngine:
    def __init__(self, runtime: EngineRuntime, max_chain_steps: Optional[int] = None):
        self.runtime = runtime
        self.max_chain_steps = max_chain_steps or settings.max_chain_steps

    # ==================== Registration ====================

    def register_node_executor(self, node_type: str, executor: NodeExecutor):
        self.runtime.executors.register(node_type, executor)

    def register_flow(self, flow: FlowDefinition):
        if flow.resolve_start_node() is None:
            logger.warning(f"Flow {flow.id} has no resolvable start node; it can only be started with an explicit start node")
        self.runtime.flows.register(flow)

    # ==================== Conversation lifecycle ====================

    async def start_conversation(
        self,
        user_id: str,
        address: str,
        flow_id: str,
        start_node_id: Optional[str] = None,
        initial_variables: Optional[Dict[str, Any]] = None,
    ) -> ConversationThread:
        """
        Creates an active thread on the flow's start node and runs it.

        The start node (and every node it auto-chains into) is executed before
        this returns, so the first bot message is already sent.
        """
        flow = self.runtime.flows.get(flow_id)
        if flow is None:
            raise FlowNotFound(flow_id)

        start_node = flow.resolve_start_node(start_node_id)
        if start_node is None:
            raise StartNodeNotFound(flow_id, start_node_id)
        start_type = flow.get_node(start_node).type
        if start_type not in self.runtime.executors:
            raise ExecutorNotFound(start_type)

        thread_id = new_thread_id()
        now = datetime.utcnow()
        variables = {
            **flow.default_variables(),
            "userId": user_id,
            "address": address,
            "phoneNumber": address,
            "threadId": thread_id,
            "startTime": now.isoformat(),
            **(initial_variables or {}),
        }
        thread = ConversationThread(
            id=thread_id,
            user_id=user_id,
            address=address,
            status=ThreadStatus.ACTIVE,
            current_node_id=start_node,
            started_at=now,
            last_activity=now,
            metadata={
                "flowId": flow.id,
                "flowName": flow.name,
                "flowVersion": flow.version,
            },
            variables=variables,
        )

        threads = self.runtime.threads
        async with threads.lock(thread_id):
            await threads.save(thread)
            conversations_started_counter.labels(flow_id=flow.id).inc()
            logger.info(f"Conversation started: {thread_id} ({address}) on flow {flow.id} v{flow.version}")

            await self._run(thread)
            await threads.save(thread)
        return thread

    async def process_user_message(
        self,
        thread_id: str,
        message: str,
        user_input: Any = None,
    ) -> ConversationThread:
        async with self.runtime.threads.lock(thread_id):
            thread = await self.load_thread(thread_id)
            if thread.status != ThreadStatus.ACTIVE:
                raise ThreadNotActive(thread_id, thread.status.value)

            thread.touch()
            await self._run(thread, message, user_input)
            await self.runtime.threads.save(thread)
        return thread

    async def execute_current_node(
        self,
        thread_id: str,
        message: Optional[str] = None,
        user_input: Any = None,
    ) -> ConversationThread:
        """Runs the thread's current node (and its auto-chain) without the active-status check."""
        async with self.runtime.threads.lock(thread_id):
            thread = await self.load_thread(thread_id)
            await self._run(thread, message, user_input)
            await self.runtime.threads.save(thread)
        return thread

    # ==================== Execution ====================

    async def _run(self, thread: ConversationThread, message: Optional[str] = None, user_input: Any = None):
        flow = self._flow_for(thread)
        node = flow.get_node(thread.current_node_id)
        if node is None:
            raise NodeNotFound(thread.current_node_id, flow.id)
        executor = self.runtime.executors.get(node.type)
        if executor is None:
            raise ExecutorNotFound(node.type)

        limit = flow.settings.max_steps or self.max_chain_steps
        inbound_consumed = message is not None or user_input is not None
        executed = 0

        while True:
            executed += 1
            with bound_contextvars(thread_id=thread.id, node_id=node.id, node_type=node.type):
                next_node_id = await self._execute_node(thread, flow, node, executor, message, user_input)
            message, user_input = None, None
            if next_node_id is None:
                return

            next_node = flow.get_node(next_node_id)
            if next_node is None:
                self._record_failure(thread, next_node_id, "unknown", NodeNotFound(next_node_id, flow.id))
                return

            # The user's message has been used; a node that talks to the user
            # waits for the next one.
            if inbound_consumed and requires_user_input(next_node.type):
                logger.info(f"Thread {thread.id} waiting for user input before node {next_node.id}")
                return

            next_executor = self.runtime.executors.get(next_node.type)
            if next_executor is None:
                self._record_failure(thread, next_node.id, next_node.type, ExecutorNotFound(next_node.type))
                return

            if executed >= limit:
                self._record_failure(
                    thread, next_node.id, next_node.type,
                    FlowEngineError(f"Chain limit of {limit} nodes per call exceeded"),
                )
                return

            node, executor = next_node, next_executor

    async def _execute_node(
        self,
        thread: ConversationThread,
        flow: FlowDefinition,
        node: FlowNode,
        executor: NodeExecutor,
        message: Optional[str],
        user_input: Any,
    ) -> Optional[str]:
        """
        Executes one node and applies its result to the thread.

        Returns the id of the node to chain into, or None when the thread
        suspended, completed or failed.
        """
        store = VariableStore(thread.variables)
        context = NodeExecutionContext(
            thread_id=thread.id,
            node_id=node.id,
            node_type=node.type,
            config=dict(node.data),
            store=store,
            user_message=message,
            user_input=user_input,
            previous_step=thread.last_step,
        )
        step_input = {"userMessage": message, "userInput": user_input}

        logger.info(f"Executing node {node.type}: {node.id} (thread {thread.id})")
        started = time.perf_counter()
        try:
            result = await executor.execute(context)
            if not isinstance(result, NodeExecutionResult):
                raise TypeError(f"Executor for '{node.type}' returned {type(result).__name__}, expected NodeExecutionResult")
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            error = ExecutionError(node.id, node.type, e)
            logger.error(f"Error executing node {node.id}: {e}", exc_info=True)
            metadata: Dict[str, Any] = {"errorType": type(error).__name__, "exception": type(e).__name__}
            if context.logs:
                metadata["logs"] = context.logs
            thread.history.append(ConversationStep(
                node_id=node.id,
                node_type=node.type,
                input=step_input,
                status=StepStatus.ERROR,
                execution_time=elapsed,
                error=str(e) or type(e).__name__,
                metadata=metadata,
            ))
            node_executions_counter.labels(node_type=node.type, status="exception").inc()
            self._set_status(thread, ThreadStatus.ERROR)
            return None

        elapsed = (time.perf_counter() - started) * 1000
        node_execution_histogram.labels(node_type=node.type).observe(elapsed / 1000)

        next_node_id = result.next_node_id or context.scheduled_next
        if not next_node_id and not getattr(executor, "branching", False):
            next_node_id = flow.default_successor(node.id)
        metadata = {"nextNodeId": next_node_id, "waitingForInput": result.waiting_for_input}
        if context.logs:
            metadata["logs"] = context.logs

        thread.history.append(ConversationStep(
            node_id=node.id,
            node_type=node.type,
            input=step_input,
            output=result.output,
            status=StepStatus.COMPLETED if result.success else StepStatus.ERROR,
            execution_time=elapsed,
            error=result.error,
            metadata=metadata,
        ))

        if not result.success:
            node_executions_counter.labels(node_type=node.type, status="error").inc()
            logger.error(f"Node {node.id} failed: {result.error}")
            self._set_status(thread, ThreadStatus.ERROR)
            return None

        node_executions_counter.labels(node_type=node.type, status="success").inc()
        store.merge(result.variables)

        # Waiting wins over an explicit next node: the node sent a prompt and must stop.
        if result.waiting_for_input:
            logger.info(f"Node {node.id} waiting for user input (thread {thread.id})")
            return None

        if next_node_id:
            thread.current_node_id = next_node_id
            logger.info(f"Advancing thread {thread.id} to node {next_node_id}")
            return next_node_id

        self._set_status(thread, ThreadStatus.COMPLETED)
        logger.info(f"Flow completed for thread {thread.id}")
        return None

    def _record_failure(self, thread: ConversationThread, node_id: str, node_type: str, error: FlowEngineError):
        thread.current_node_id = node_id
        thread.history.append(ConversationStep(
            node_id=node_id,
            node_type=node_type,
            status=StepStatus.ERROR,
            error=str(error),
            metadata={"errorType": type(error).__name__},
        ))
        logger.error(f"Thread {thread.id} stopped: {error}")
        self._set_status(thread, ThreadStatus.ERROR)

    def _set_status(self, thread: ConversationThread, status: ThreadStatus):
        thread.status = status
        thread_transitions_counter.labels(status=status.value).inc()

    def _flow_for(self, thread: ConversationThread) -> FlowDefinition:
        flow = self.runtime.flows.get(thread.flow_id, thread.flow_version)
        if flow is None:
            raise FlowNotFound(thread.flow_id, thread.flow_version)
        return flow

    # ==================== Thread administration ====================

    def get_thread(self, thread_id: str) -> Optional[ConversationThread]:
        return self.runtime.threads.get(thread_id)

    def get_user_threads(self, user_id: str) -> List[ConversationThread]:
        return self.runtime.threads.for_user(user_id)

    async def find_active_thread(self, address: str) -> Optional[ConversationThread]:
        return await self.runtime.threads.find_active_by_address(address)

    async def pause_thread(self, thread_id: str) -> ConversationThread:
        async with self.runtime.threads.lock(thread_id):
            thread = await self.load_thread(thread_id)
            if thread.status != ThreadStatus.ACTIVE:
                raise ThreadNotActive(thread_id, thread.status.value)
            self._set_status(thread, ThreadStatus.PAUSED)
            await self.runtime.threads.save(thread)
        logger.info(f"Thread paused: {thread_id}")
        return thread

    async def resume_thread(self, thread_id: str) -> ConversationThread:
        async with self.runtime.threads.lock(thread_id):
            thread = await self.load_thread(thread_id)
            if thread.status == ThreadStatus.PAUSED:
                self._set_status(thread, ThreadStatus.ACTIVE)
                thread.touch()
                await self.runtime.threads.save(thread)
                logger.info(f"Thread resumed: {thread_id}")
        return thread

    async def reset_thread(self, thread_id: str, node_id: Optional[str] = None) -> ConversationThread:
        """Administrative recovery: puts a thread back to active on a node, keeping its history."""
        async with self.runtime.threads.lock(thread_id):
            thread = await self.load_thread(thread_id)
            flow = self._flow_for(thread)
            target = node_id or thread.current_node_id
            if flow.get_node(target) is None:
                raise NodeNotFound(target, flow.id)
            thread.current_node_id = target
            self._set_status(thread, ThreadStatus.ACTIVE)
            thread.touch()
            await self.runtime.threads.save(thread)
        logger.info(f"Thread reset: {thread_id} -> node {target}")
        return thread

    async def cleanup_inactive_threads(self, max_age_hours: float = 24) -> List[str]:
        removed = await self.runtime.threads.sweep_inactive(max_age_hours)
        if removed:
            logger.info(f"Cleaned up {len(removed)} inactive threads")
        return removed

    async def load_thread(self, thread_id: str) -> ConversationThread:
        thread = await self.runtime.threads.load(thread_id)
        if thread is None:
            raise ThreadNotFound(thread_id)
        return thread
