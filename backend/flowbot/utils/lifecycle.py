# /flowbot/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Tuple
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from flowbot.config.settings import settings
from flowbot.executors.catalog import register_all_executors
from flowbot.jobs.thread_cleanup_job import sweep_inactive_threads
from flowbot.services.ai_service import ai_service
from flowbot.services.conversation_service import ConversationService
from flowbot.services.db_service import InMemoryQueryExecutor, MongoQueryExecutor
from flowbot.services.flow_service import load_flows_from_dir
from flowbot.services.http_client import HttpxClient
from flowbot.services.hubspot_service import hubspot_service
from flowbot.services.thread_repository import RedisThreadRepository
from flowbot.services.whatsapp_service import whatsapp_service
from flowbot.utils.logging import setup_logging
from flowbot.workflows.engine import FlowEngine
from flowbot.workflows.registry import EngineRuntime
from flowbot.workflows.store import ThreadStore

# This file manages the application's lifespan: building the engine with its
# real adapters on startup and closing connections on shutdown.

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[None]]


def build_engine() -> Tuple[FlowEngine, List[Closer]]:
    """Wires the engine to WhatsApp, Redis, MongoDB, HubSpot and OpenAI."""
    repository = RedisThreadRepository(settings.redis_url, settings.thread_ttl_seconds)
    engine = FlowEngine(EngineRuntime(threads=ThreadStore(repository)))
    http_client = HttpxClient()
    closers: List[Closer] = [whatsapp_service.close, hubspot_service.close, http_client.close, repository.close]

    if settings.mongo_uri:
        mongo = MongoQueryExecutor(settings.mongo_uri)
        query_executor = mongo

        async def close_mongo():
            mongo.close()
        closers.append(close_mongo)
    else:
        logger.warning("MONGO_URI not set; database nodes use an in-memory store")
        query_executor = InMemoryQueryExecutor()

    register_all_executors(
        engine,
        sender=whatsapp_service,
        http_client=http_client,
        query_executor=query_executor,
        crm=hubspot_service,
        classifier=ai_service,
        responder=ai_service,
    )

    if settings.flows_dir:
        for flow in load_flows_from_dir(settings.flows_dir):
            engine.register_flow(flow)

    return engine, closers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    engine, closers = build_engine()
    app.state.engine = engine
    app.state.conversation_service = ConversationService(engine)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep_inactive_threads,
        'interval',
        minutes=settings.cleanup_interval_minutes,
        args=[engine],
        id="inactive_thread_sweep_job",
        replace_existing=True
    )
    if settings.environment != "test":
        scheduler.start()
        logger.info(f"Scheduled job: sweep_inactive_threads (every {settings.cleanup_interval_minutes} minutes).")

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    for close in closers:
        try:
            await close()
        except Exception as e:
            logger.warning(f"Error while closing a client: {e}")
