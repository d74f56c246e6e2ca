# /flowbot/workflows/exceptions.py

from typing import Optional


class FlowEngineError(Exception):
    """Base class for every error raised by the flow engine."""


class FlowNotFound(FlowEngineError):
    def __init__(self, flow_id: str, version: Optional[int] = None):
        detail = f"{flow_id} (version {version})" if version is not None else flow_id
        super().__init__(f"Flow not found: {detail}")
        self.flow_id = flow_id
        self.version = version


class StartNodeNotFound(FlowEngineError):
    def __init__(self, flow_id: str, start_node_id: Optional[str] = None):
        super().__init__(f"Start node not found in flow {flow_id}" + (f": {start_node_id}" if start_node_id else ""))
        self.flow_id = flow_id
        self.start_node_id = start_node_id


class ThreadNotFound(FlowEngineError):
    def __init__(self, thread_id: str):
        super().__init__(f"Thread not found: {thread_id}")
        self.thread_id = thread_id


class ThreadNotActive(FlowEngineError):
    def __init__(self, thread_id: str, status: str):
        super().__init__(f"Thread {thread_id} is not active: {status}")
        self.thread_id = thread_id
        self.status = status


class NodeNotFound(FlowEngineError):
    def __init__(self, node_id: str, flow_id: Optional[str] = None):
        super().__init__(f"Node not found: {node_id}" + (f" in flow {flow_id}" if flow_id else ""))
        self.node_id = node_id
        self.flow_id = flow_id


class ExecutorNotFound(FlowEngineError):
    def __init__(self, node_type: str):
        super().__init__(f"No executor registered for node type: {node_type}")
        self.node_type = node_type


class ExecutionError(FlowEngineError):
    """An executor raised while running a node. Recorded on the step, never propagated."""

    def __init__(self, node_id: str, node_type: str, cause: BaseException):
        super().__init__(f"Node {node_id} ({node_type}) failed: {cause}")
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
