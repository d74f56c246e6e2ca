# /flowbot/routes/flows.py

import structlog
from fastapi import APIRouter, Depends, Query
from typing import Optional

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse
from flowbot.models.flow import FlowDefinition
from flowbot.utils.dependencies import get_engine
from flowbot.workflows.engine import FlowEngine
from flowbot.workflows.exceptions import FlowNotFound

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/flows",
    tags=["Flows"]
)


def _flow_summary(flow: FlowDefinition) -> dict:
    return {
        "id": flow.id,
        "name": flow.name,
        "version": flow.version,
        "status": flow.status,
        "nodes": len(flow.nodes),
        "startNodeId": flow.resolve_start_node(),
    }


@router.post("", response_model=APIResponse, status_code=201)
async def register_flow(flow: FlowDefinition, engine: FlowEngine = Depends(get_engine)):
    """Registers (or replaces) a flow definition exported by the flow builder."""
    engine.register_flow(flow)
    log.info("Flow registered via API", flow_id=flow.id, version=flow.version)
    return APIResponse(
        success=True,
        message="Flow registered",
        data={"flow": _flow_summary(flow)},
        version=settings.api_version
    )


@router.get("", response_model=APIResponse)
async def list_flows(engine: FlowEngine = Depends(get_engine)):
    flows = [_flow_summary(flow) for flow in engine.runtime.flows.list_latest()]
    return APIResponse(
        success=True,
        message="Flows retrieved",
        data={"flows": flows},
        version=settings.api_version
    )


@router.get("/{flow_id}", response_model=APIResponse)
async def get_flow(
    flow_id: str,
    version: Optional[int] = Query(None, description="Defaults to the latest registered version"),
    engine: FlowEngine = Depends(get_engine)
):
    flow = engine.runtime.flows.get(flow_id, version)
    if flow is None:
        raise FlowNotFound(flow_id, version)
    return APIResponse(
        success=True,
        message="Flow retrieved",
        data={
            "flow": flow.model_dump(mode="json", by_alias=True),
            "versions": engine.runtime.flows.versions(flow_id),
        },
        version=settings.api_version
    )
