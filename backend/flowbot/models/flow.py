# /flowbot/models/flow.py

from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

# Immutable flow graph definitions, as produced by the visual flow builder.
# Field names are snake_case in Python and camelCase on the wire.


class FlowModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class FlowNode(FlowModel):
    """One step of a flow: a type tag plus an opaque, per-type configuration payload."""
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None


class FlowEdge(FlowModel):
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    condition: Optional[str] = None


class FlowVariable(FlowModel):
    key: str
    type: Literal["string", "number", "boolean", "object", "array"] = "string"
    default_value: Any = None
    description: Optional[str] = None
    required: bool = False


class FlowSettings(FlowModel):
    timeout: Optional[int] = Field(default=None, description="Flow timeout in milliseconds")
    max_steps: Optional[int] = Field(default=None, description="Maximum nodes executed per inbound event")
    error_handling: Literal["stop", "continue", "retry"] = "stop"
    logging: bool = True
    caching: bool = False


class FlowDefinition(FlowModel):
    id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    status: Literal["draft", "active", "paused", "archived"] = "active"
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    variables: List[FlowVariable] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    start_node_id: Optional[str] = Field(default=None, description="Explicit start node override")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def node_ids_must_be_unique(self):
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id '{node.id}' in flow '{self.id}'")
            seen.add(node.id)
        return self

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def resolve_start_node(self, override: Optional[str] = None) -> Optional[str]:
        """
        Returns the id of the node a new conversation starts on.

        An explicit override (call argument first, then the definition's own
        start_node_id) wins when it names an existing node; otherwise the first
        node without an incoming edge is used.
        """
        for candidate in (override, self.start_node_id):
            if candidate:
                return candidate if self.get_node(candidate) else None

        targets = {edge.target for edge in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node.id
        return None

    def default_variables(self) -> Dict[str, Any]:
        return {
            variable.key: variable.default_value
            for variable in self.variables
            if variable.default_value is not None
        }

    def default_successor(self, node_id: str) -> Optional[str]:
        """
        Target of the node's only plain outgoing edge, or None when there is not
        exactly one. Edges leaving a named output handle belong to a branch and
        are never followed by default.
        """
        targets = [edge.target for edge in self.edges if edge.source == node_id and not edge.source_handle]
        return targets[0] if len(targets) == 1 else None
