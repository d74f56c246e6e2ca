# /flowbot/models/conversation.py

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


def new_thread_id() -> str:
    return f"thread_{uuid.uuid4().hex}"


def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:16]}"


class ConversationModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class ConversationStep(ConversationModel):
    """One historical record of a single node execution within a thread."""
    id: str = Field(default_factory=new_step_id)
    node_id: str
    node_type: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    input: Dict[str, Any] = Field(default_factory=dict, description="User message/input snapshot")
    output: Any = None
    status: StepStatus = StepStatus.PENDING
    execution_time: float = Field(default=0.0, description="Execution duration in milliseconds")
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationThread(ConversationModel):
    """
    Live execution state of one conversation.

    Only the engine mutates a thread. Executors see the variable store through
    their execution context and report everything else through their result.
    """
    id: str = Field(default_factory=new_thread_id)
    user_id: str
    address: str = Field(..., description="Channel address (WhatsApp phone number)")
    status: ThreadStatus = ThreadStatus.ACTIVE
    current_node_id: str
    started_at: datetime = Field(default_factory=datetime.utcnow)
    last_activity: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    history: List[ConversationStep] = Field(default_factory=list)

    @property
    def flow_id(self) -> Optional[str]:
        return self.metadata.get("flowId")

    @property
    def flow_version(self) -> Optional[int]:
        return self.metadata.get("flowVersion")

    @property
    def last_step(self) -> Optional[ConversationStep]:
        return self.history[-1] if self.history else None

    def touch(self):
        self.last_activity = datetime.utcnow()
