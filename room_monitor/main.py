from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .core.config import settings
from .core.log import configure_logging

from .api.routes import router as api_router
import room_monitor.api.routes as routes_module

from .drivers.mqtt_bus import MqttBus, MqttConfig
from .services.broadcaster import ConnectionRegistry
from .services.commands import CommandCoordinator
from .services.ingestion import IngestionRouter
from .storage.sqlite_repo import SQLiteRepository


logger = logging.getLogger(__name__)


# --- Singletons ---
repo = SQLiteRepository(settings.sqlite_path)
registry = ConnectionRegistry(
    repo=repo,
    heartbeat_s=settings.heartbeat_seconds,
    queue_size=settings.viewer_queue_size,
)


def _on_bus_message(topic: str, payload: bytes) -> None:
    ingestion.submit(topic, payload)


def _on_bus_link(connected: bool) -> None:
    ingestion.on_link_change(connected)


bus = MqttBus(
    MqttConfig(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        client_id=settings.mqtt_client_id,
        keepalive_s=settings.mqtt_keepalive_seconds,
        reconnect_s=settings.mqtt_reconnect_seconds,
        telemetry_topic=settings.telemetry_topic,
        feedback_prefix=settings.feedback_topic_prefix,
    ),
    on_message=_on_bus_message,
    on_link_change=_on_bus_link,
)

coordinator = CommandCoordinator(
    bus=bus,
    repo=repo,
    registry=registry,
    command_timeout_s=settings.command_timeout_seconds,
    topic_template=settings.command_topic_template,
)

ingestion = IngestionRouter(
    repo=repo,
    registry=registry,
    coordinator=coordinator,
    telemetry_topic=settings.telemetry_topic,
    feedback_prefix=settings.feedback_topic_prefix,
    dedup_window_s=settings.dedup_window_seconds,
    queue_size=settings.ingest_queue_size,
)


def get_repo() -> SQLiteRepository:
    return repo


def get_registry() -> ConnectionRegistry:
    return registry


def get_coordinator() -> CommandCoordinator:
    return coordinator


def get_ingestion() -> IngestionRouter:
    return ingestion


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s (broker=%s:%d)", settings.app_name, settings.mqtt_host, settings.mqtt_port)

    await repo.init()
    await ingestion.start()
    bus.start(asyncio.get_running_loop())

    try:
        yield
    finally:
        bus.stop()
        await ingestion.stop()
        coordinator.close()
        registry.close()
        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# Make the dependency functions in routes resolve to the real ones
app.dependency_overrides[routes_module.get_repo] = get_repo
app.dependency_overrides[routes_module.get_registry] = get_registry
app.dependency_overrides[routes_module.get_coordinator] = get_coordinator
app.dependency_overrides[routes_module.get_ingestion] = get_ingestion

app.include_router(api_router, prefix="/api")
