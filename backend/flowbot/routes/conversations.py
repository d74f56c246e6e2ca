# /flowbot/routes/conversations.py

import structlog
from typing import Optional
from fastapi import APIRouter, Depends, Query

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse, ResetThreadRequest, StartConversationRequest, UserMessageRequest
from flowbot.models.conversation import ConversationThread
from flowbot.utils.dependencies import get_engine
from flowbot.workflows.engine import FlowEngine

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/conversations",
    tags=["Conversations"]
)


def _thread_response(thread: ConversationThread, message: str) -> APIResponse:
    return APIResponse(
        success=True,
        message=message,
        data={"thread": thread.model_dump(mode="json", by_alias=True)},
        version=settings.api_version
    )


@router.post("", response_model=APIResponse, status_code=201)
async def start_conversation(request: StartConversationRequest, engine: FlowEngine = Depends(get_engine)):
    """Starts a thread on a flow and runs it until it needs user input or finishes."""
    thread = await engine.start_conversation(
        user_id=request.user_id,
        address=request.address,
        flow_id=request.flow_id,
        start_node_id=request.start_node_id,
        initial_variables=request.initial_variables,
    )
    log.info("Conversation started via API", thread_id=thread.id, flow_id=request.flow_id, status=thread.status.value)
    return _thread_response(thread, "Conversation started")


@router.get("", response_model=APIResponse)
async def get_user_threads(
    user_id: str = Query(..., description="Return every thread of this user"),
    engine: FlowEngine = Depends(get_engine)
):
    threads = engine.get_user_threads(user_id)
    return APIResponse(
        success=True,
        message="Threads retrieved",
        data={"threads": [thread.model_dump(mode="json", by_alias=True) for thread in threads]},
        version=settings.api_version
    )


@router.get("/{thread_id}", response_model=APIResponse)
async def get_thread(thread_id: str, engine: FlowEngine = Depends(get_engine)):
    thread = await engine.load_thread(thread_id)
    return _thread_response(thread, "Thread retrieved")


@router.post("/{thread_id}/messages", response_model=APIResponse)
async def process_user_message(thread_id: str, request: UserMessageRequest, engine: FlowEngine = Depends(get_engine)):
    thread = await engine.process_user_message(thread_id, request.message, request.input)
    log.info("User message processed", thread_id=thread_id, status=thread.status.value, node=thread.current_node_id)
    return _thread_response(thread, "Message processed")


@router.post("/{thread_id}/pause", response_model=APIResponse)
async def pause_thread(thread_id: str, engine: FlowEngine = Depends(get_engine)):
    thread = await engine.pause_thread(thread_id)
    return _thread_response(thread, "Thread paused")


@router.post("/{thread_id}/resume", response_model=APIResponse)
async def resume_thread(thread_id: str, engine: FlowEngine = Depends(get_engine)):
    thread = await engine.resume_thread(thread_id)
    return _thread_response(thread, "Thread resumed")


@router.post("/{thread_id}/reset", response_model=APIResponse)
async def reset_thread(thread_id: str, request: Optional[ResetThreadRequest] = None, engine: FlowEngine = Depends(get_engine)):
    thread = await engine.reset_thread(thread_id, request.node_id if request else None)
    log.info("Thread reset via API", thread_id=thread_id, node=thread.current_node_id)
    return _thread_response(thread, "Thread reset")
