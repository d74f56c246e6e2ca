# /flowbot/models/api.py

from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime

from flowbot.config.settings import settings

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str = settings.api_version

class StartConversationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1, description="WhatsApp phone number")
    flow_id: str = Field(..., min_length=1)
    start_node_id: Optional[str] = None
    initial_variables: Dict[str, Any] = Field(default_factory=dict)

class UserMessageRequest(BaseModel):
    message: str
    input: Optional[Any] = None

class ResetThreadRequest(BaseModel):
    node_id: Optional[str] = None
