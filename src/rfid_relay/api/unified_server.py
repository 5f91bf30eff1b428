"""
Unified Relay Server
====================
FastAPI application that owns the relay lifecycle.

Two listeners run in one process and one event loop:
- HTTP (uvicorn/FastAPI): /health, /status and the tag admin API
- realtime WebSocket (websockets library): device and viewers

The FastAPI lifespan starts the realtime side and hands shutdown to the
ShutdownCoordinator.
"""

import argparse
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from ..core.exceptions import TagStoreError
from ..core.logger import StructuredLogger
from ..core.shutdown_coordinator import ShutdownCoordinator
from ..database.postgres_tag_store import PostgresTagStore
from ..database.tag_store import MemoryTagStore, TagStore
from ..infrastructure.config.config_loader import (
    get_settings_from_working_directory,
    load_app_settings_from_json,
)
from ..infrastructure.config.settings import AppSettings, DatabaseSettings, LogLevel
from .connection_manager import ConnectionManager
from .message_router import MessageRouter
from .response_envelope import json_ok
from .tag_enrichment import TagEnrichmentService
from .tag_routes import router as tag_router
from .websocket.services.heartbeat_service import HeartbeatService
from .websocket_server import RelayWebSocketServer


def create_tag_store(database: DatabaseSettings, logger: Optional[StructuredLogger] = None) -> TagStore:
    """PostgreSQL when a DSN is configured, otherwise the in-process store"""
    if database.dsn:
        return PostgresTagStore(
            dsn=database.dsn,
            table=database.table,
            min_pool_size=database.min_pool_size,
            max_pool_size=database.max_pool_size,
            command_timeout=database.command_timeout,
            logger=logger
        )
    return MemoryTagStore()


def create_app(settings: Optional[AppSettings] = None, tag_store: Optional[TagStore] = None) -> FastAPI:
    """Creates the relay FastAPI application."""

    # 1. Initialize Dependencies
    settings = settings or get_settings_from_working_directory()
    logger = StructuredLogger("RelayServer", settings.logging)

    if tag_store is None:
        tag_store = create_tag_store(settings.database, logger)
    connection_manager = ConnectionManager(
        send_timeout_seconds=settings.relay.send_timeout_seconds,
        logger=logger
    )
    tag_enrichment = TagEnrichmentService(
        tag_store,
        auto_register=settings.tags.auto_register,
        name_max_length=settings.tags.name_max_length,
        logger=logger
    )
    message_router = MessageRouter(connection_manager, tag_enrichment, logger=logger)
    relay_server = RelayWebSocketServer(
        connection_manager,
        message_router,
        host=settings.relay.host,
        port=settings.relay.ws_port,
        max_message_size=settings.relay.max_message_size,
        logger=logger
    )
    heartbeat_service = HeartbeatService(
        connection_manager,
        ping_interval_seconds=settings.relay.liveness_interval_seconds,
        logger=logger
    )
    shutdown_coordinator = ShutdownCoordinator(
        connection_manager,
        heartbeat_service,
        relay_server,
        tag_store=tag_store,
        tag_enrichment=tag_enrichment,
        grace_seconds=settings.relay.shutdown_grace_seconds,
        logger=logger
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("relay_server.startup", {
            "http_port": settings.relay.http_port,
            "ws_port": settings.relay.ws_port,
            "tag_store": type(tag_store).__name__
        })

        try:
            await tag_store.connect()
        except TagStoreError as e:
            # Degraded mode: relay runs, names are kept in memory only
            logger.error("relay_server.tag_store_unavailable", {"error": str(e)})
        await tag_enrichment.load_all()

        await relay_server.start()
        await heartbeat_service.start()
        app.state.start_time = time.time()

        yield

        await shutdown_coordinator.shutdown(reason="lifespan")
        logger.info("relay_server.shutdown_complete")

    app = FastAPI(title="RFID Relay", version=settings.version, lifespan=lifespan)

    app.state.settings = settings
    app.state.logger = logger
    app.state.tag_store = tag_store
    app.state.connection_manager = connection_manager
    app.state.tag_enrichment = tag_enrichment
    app.state.message_router = message_router
    app.state.relay_server = relay_server
    app.state.heartbeat_service = heartbeat_service
    app.state.shutdown_coordinator = shutdown_coordinator
    app.state.start_time = time.time()

    app.include_router(tag_router)

    @app.get("/health")
    async def health(_: Request):
        """Liveness probe"""
        return json_ok({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": time.time() - app.state.start_time,
            "websocket_running": relay_server.is_running,
            "version": settings.version
        })

    @app.get("/status")
    async def status(_: Request):
        """Viewer count, device presence and relay statistics"""
        return json_ok({
            "viewer_count": connection_manager.viewer_count(),
            "device_online": connection_manager.is_device_online(),
            "websocket": relay_server.get_stats(),
            "connections": connection_manager.get_connection_stats_snapshot(),
            "liveness": heartbeat_service.get_summary(),
            "router": message_router.get_stats(),
            "tags": tag_enrichment.get_stats()
        })

    return app


def main(argv=None):
    """Command line entry point: python -m rfid_relay"""
    parser = argparse.ArgumentParser(prog="rfid-relay", description="RFID reader relay server")
    parser.add_argument("--config", help="Path to a JSON config file (default: config/config.json)")
    parser.add_argument("--host", help="Bind address for both listeners")
    parser.add_argument("--port", type=int, help="HTTP status/admin port")
    parser.add_argument("--ws-port", type=int, help="Realtime WebSocket port")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel], type=str.upper)
    args = parser.parse_args(argv)

    if args.config:
        settings = load_app_settings_from_json(args.config)
    else:
        settings = get_settings_from_working_directory()

    if args.host:
        settings.relay.host = args.host
    if args.port is not None:
        settings.relay.http_port = args.port
    if args.ws_port is not None:
        settings.relay.ws_port = args.ws_port
    if args.log_level:
        settings.logging.level = LogLevel(args.log_level)

    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.relay.host,
        port=settings.relay.http_port,
        log_level=settings.logging.level.value.lower(),
        timeout_graceful_shutdown=max(1, int(settings.relay.shutdown_grace_seconds))
    )


if __name__ == "__main__":
    main()
