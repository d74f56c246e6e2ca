# /flowbot/models/execution.py

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from pydantic import BaseModel, Field

from flowbot.models.conversation import ConversationStep

# Types exchanged between the engine and node executors.

logger = logging.getLogger(__name__)


class VariableStore:
    """
    Thread-scoped variable store.

    Wraps the thread's own variable dict, so writes made here are the thread's
    variables. merge() is a shallow, last-writer-wins update.
    """

    def __init__(self, values: Dict[str, Any]):
        self._values = values

    @property
    def values(self) -> Dict[str, Any]:
        return self._values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any):
        self._values[key] = value

    def merge(self, patch: Optional[Dict[str, Any]]) -> List[str]:
        if not patch:
            return []
        self._values.update(patch)
        return list(patch.keys())

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def __contains__(self, key: str) -> bool:
        return key in self._values


@dataclass
class NodeExecutionContext:
    """Per-invocation capability object handed to an executor."""
    thread_id: str
    node_id: str
    node_type: str
    config: Dict[str, Any]
    store: VariableStore
    user_message: Optional[str] = None
    user_input: Any = None
    previous_step: Optional[ConversationStep] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)
    scheduled_next: Optional[str] = None

    @property
    def variables(self) -> Dict[str, Any]:
        return self.store.values

    @property
    def address(self) -> Optional[str]:
        return self.store.get("address") or self.store.get("phoneNumber")

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.store.get(key, default)

    def set_variable(self, key: str, value: Any):
        self.store.set(key, value)
        logger.debug(f"Variable updated in thread {self.thread_id}: {key}")

    def schedule_next(self, node_id: str):
        """Asks the engine to continue at node_id when the result names no next node."""
        self.scheduled_next = node_id

    def log(self, entry: Dict[str, Any]):
        self.logs.append(entry)
        logger.debug(f"Node {self.node_id} ({self.node_type}) log: {entry}")

    def is_reply_to_self(self) -> bool:
        """True when this node suspended on the previous step and is now being re-entered."""
        step = self.previous_step
        return bool(
            step is not None
            and step.node_id == self.node_id
            and step.metadata.get("waitingForInput")
        )


class NodeExecutionResult(BaseModel):
    success: bool
    output: Any = None
    next_node_id: Optional[str] = None
    waiting_for_input: bool = False
    error: Optional[str] = None
    variables: Optional[Dict[str, Any]] = Field(default=None, description="Patch merged into the thread variables")

    @classmethod
    def failure(cls, error: str, output: Any = None) -> "NodeExecutionResult":
        return cls(success=False, error=error, output=output)


@runtime_checkable
class NodeExecutor(Protocol):
    # Executors that set `branching = True` choose their own next node; the
    # engine never falls back to a flow edge when they return none.
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        ...
