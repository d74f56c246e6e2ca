# /flowbot/main.py

import os
import time
import uvicorn
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse
from flowbot.routes import conversations, flows, webhooks
from flowbot.utils.lifecycle import lifespan
from flowbot.utils.metrics import response_time_histogram
from flowbot.workflows.exceptions import (
    ExecutorNotFound,
    FlowEngineError,
    FlowNotFound,
    NodeNotFound,
    StartNodeNotFound,
    ThreadNotActive,
    ThreadNotFound,
)

log = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    FlowNotFound: 404,
    ThreadNotFound: 404,
    NodeNotFound: 404,
    ThreadNotActive: 409,
    StartNodeNotFound: 422,
    ExecutorNotFound: 422,
}

app = FastAPI(
    title="WhatsApp Flow Engine",
    version="1.0.0",
    description="Runs visual-builder chatbot flows over WhatsApp conversations",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response

# --- Error Mapping ---
@app.exception_handler(FlowEngineError)
async def flow_engine_error_handler(request: Request, exc: FlowEngineError):
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    log.warning("Flow engine error", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    body = APIResponse(
        success=False,
        message=str(exc),
        data={"error": type(exc).__name__},
        version=settings.api_version
    )
    return JSONResponse(body.model_dump(mode="json"), status_code=status_code)

# --- API Routers ---
app.include_router(flows.router, prefix=f"/api/{settings.api_version}")
app.include_router(conversations.router, prefix=f"/api/{settings.api_version}")
app.include_router(webhooks.router, prefix=f"/api/{settings.api_version}/webhooks")

@app.get("/health")
async def health(request: Request):
    engine = request.app.state.engine
    return {
        "status": "ok",
        "flows": len(engine.runtime.flows.list_latest()),
        "threads": len(engine.runtime.threads),
        "executors": len(engine.runtime.executors),
    }

@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "flowbot.main:app",
        host=host,
        port=port,
        reload=True if settings.environment == "development" else False,
        workers=settings.workers if settings.environment == "production" else 1
    )
