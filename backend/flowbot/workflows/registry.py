# /flowbot/workflows/registry.py

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from flowbot.models.execution import NodeExecutor
from flowbot.models.flow import FlowDefinition
from flowbot.workflows.definitions import KNOWN_NODE_TYPES
from flowbot.workflows.store import ThreadStore

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """Maps node type tags to executor instances. Populated at startup, read afterwards."""

    def __init__(self):
        self._executors: Dict[str, NodeExecutor] = {}

    def register(self, node_type: str, executor: NodeExecutor):
        if node_type not in KNOWN_NODE_TYPES:
            logger.info(f"Registering executor for custom node type: {node_type}")
        self._executors[node_type] = executor
        logger.debug(f"Executor registered for node type: {node_type}")

    def get(self, node_type: str) -> Optional[NodeExecutor]:
        return self._executors.get(node_type)

    def types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)


class FlowRegistry:
    """
    Holds immutable flow definitions keyed by (flow id, version).

    Registering the same (id, version) again replaces it. New conversations use
    the highest registered version; running threads keep the version they
    started with.
    """

    def __init__(self):
        self._flows: Dict[Tuple[str, int], FlowDefinition] = {}
        self._latest: Dict[str, int] = {}

    def register(self, flow: FlowDefinition):
        self._flows[(flow.id, flow.version)] = flow
        if flow.version >= self._latest.get(flow.id, flow.version):
            self._latest[flow.id] = flow.version
        logger.info(f"Flow registered: {flow.name} ({flow.id} v{flow.version})")

    def get(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        if version is None:
            version = self._latest.get(flow_id)
            if version is None:
                return None
        return self._flows.get((flow_id, version))

    def versions(self, flow_id: str) -> List[int]:
        return sorted(v for (fid, v) in self._flows if fid == flow_id)

    def list_latest(self) -> List[FlowDefinition]:
        return [self._flows[(flow_id, version)] for flow_id, version in self._latest.items()]

    def __contains__(self, flow_id: str) -> bool:
        return flow_id in self._latest


@dataclass
class EngineRuntime:
    """Everything the engine needs, built once and passed in explicitly."""
    executors: ExecutorRegistry = field(default_factory=ExecutorRegistry)
    flows: FlowRegistry = field(default_factory=FlowRegistry)
    threads: ThreadStore = field(default_factory=ThreadStore)
