"""
Relay WebSocket Server
======================
Realtime listener for the device and viewers, built on the websockets library.

The library's own keepalive is disabled; HeartbeatService owns liveness so
that eviction follows the relay's probe cycle.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.logger import StructuredLogger
from .connection_manager import ConnectionManager, RelayConnection
from .message_router import MessageRouter


class RelayWebSocketServer:
    """Accepts relay connections and feeds their frames to the MessageRouter"""

    def __init__(self,
                 connection_manager: ConnectionManager,
                 message_router: MessageRouter,
                 host: str = "0.0.0.0",
                 port: int = 3001,
                 max_message_size: int = 2**20,
                 logger: Optional[StructuredLogger] = None):
        self.connection_manager = connection_manager
        self.message_router = message_router
        self.host = host
        self.port = port
        self.max_message_size = max_message_size
        self.logger = logger

        self.server = None
        self.is_running = False
        self.start_time: Optional[datetime] = None
        self.total_connections_handled = 0
        self.total_messages_processed = 0

    async def start(self):
        """Start the WebSocket server. Bind failures propagate to the caller."""
        if self.is_running:
            return

        if self.logger:
            self.logger.info("websocket_server.starting", {
                "host": self.host,
                "port": self.port
            })

        try:
            self.server = await websockets.serve(
                self._handle_client_connection,
                self.host,
                self.port,
                ping_interval=None,  # liveness is driven by HeartbeatService
                close_timeout=5,
                max_size=self.max_message_size,
                compression=None
            )
        except OSError as e:
            if self.logger:
                self.logger.error("websocket_server.start_error", {
                    "host": self.host,
                    "port": self.port,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            raise

        # Port 0 asks the OS for a free port; report the real one
        sockets = self.server.sockets
        if sockets:
            self.port = sockets[0].getsockname()[1]

        self.is_running = True
        self.start_time = datetime.now(timezone.utc)
        if self.logger:
            self.logger.info("websocket_server.started", {
                "host": self.host,
                "port": self.port
            })

    async def stop(self):
        """Stop accepting connections and wait for handlers to finish"""
        if not self.is_running:
            return

        self.is_running = False
        if self.logger:
            self.logger.info("websocket_server.stopping")

        self.server.close()
        await self.server.wait_closed()

        if self.logger:
            uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()
            self.logger.info("websocket_server.stopped", {
                "uptime_seconds": uptime,
                "total_connections": self.total_connections_handled,
                "total_messages": self.total_messages_processed
            })

    async def _handle_client_connection(self, websocket: Any):
        """Lifecycle of one connection: accept, read loop, remove"""
        connection = RelayConnection(
            client_id=str(uuid.uuid4()),
            websocket=websocket,
            ip_address=self._get_client_ip(websocket)
        )
        self.total_connections_handled += 1
        initiated_by = "client"

        try:
            await self.connection_manager.accept(connection)

            async for raw_message in websocket:
                connection.record_message_received()
                self.total_messages_processed += 1
                await self.message_router.route_message(connection, raw_message)

        except ConnectionClosed:
            # Abnormal close (no close frame or transport aborted)
            initiated_by = "network"
        except Exception as e:
            initiated_by = "server"
            if self.logger:
                self.logger.error("websocket_client.unexpected_error", {
                    "client_id": connection.client_id,
                    "ip_address": connection.ip_address,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
        finally:
            await self.connection_manager.log_connection_closed(
                connection,
                getattr(websocket, "close_code", None),
                getattr(websocket, "close_reason", None) or "",
                initiated_by=initiated_by
            )
            await self.connection_manager.remove(connection, reason=initiated_by)

    def _get_client_ip(self, websocket) -> str:
        """Extract client IP address from WebSocket connection"""
        remote_address = getattr(websocket, "remote_address", None)
        if isinstance(remote_address, tuple) and remote_address:
            return str(remote_address[0])
        if remote_address:
            return str(remote_address)
        return "unknown"

    def get_stats(self):
        return {
            "is_running": self.is_running,
            "host": self.host,
            "port": self.port,
            "total_connections_handled": self.total_connections_handled,
            "total_messages_processed": self.total_messages_processed
        }
