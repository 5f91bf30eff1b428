"""
Connection Manager
=================
Registry of live relay connections: one device slot plus the viewer set.

All mutation happens on the event loop thread without awaiting between the
check and the change, so no lock is needed.
"""

import asyncio
import json
import time
from typing import Dict, Any, Optional, List, Set
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum

import psutil
from websockets.exceptions import ConnectionClosed

from ..core.logger import StructuredLogger


DEVICE_REPLACED_CLOSE_CODE = 4000
DEVICE_REPLACED_REASON = "device replaced"

CLOSE_CODE_DESCRIPTIONS = {
    1000: "normal closure",
    1001: "going away",
    1002: "protocol error",
    1005: "no status received",
    1006: "abnormal closure",
    1009: "message too big",
    1011: "internal error",
    1012: "service restart",
    DEVICE_REPLACED_CLOSE_CODE: DEVICE_REPLACED_REASON,
}


class ConnectionRole(str, Enum):
    """Role of a relay participant"""
    VIEWER = "viewer"
    DEVICE = "device"


@dataclass
class RelayConnection:
    """State tracked for one accepted WebSocket"""

    client_id: str
    websocket: Any  # websockets ServerConnection
    ip_address: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    role: ConnectionRole = ConnectionRole.VIEWER
    is_alive: bool = True
    is_open: bool = True
    # Displaced from the device slot; its close is pending
    is_replaced: bool = False

    # Traffic
    messages_sent: int = 0
    messages_received: int = 0
    bytes_sent: int = 0
    last_activity: float = field(default_factory=time.time)

    # Liveness probes
    pings_sent: int = 0
    pongs_received: int = 0
    last_ping_sent: float = 0.0
    rtt_ms: Optional[float] = None

    @property
    def is_device(self) -> bool:
        return self.role == ConnectionRole.DEVICE

    def record_message_sent(self, size_bytes: int):
        self.messages_sent += 1
        self.bytes_sent += size_bytes

    def record_message_received(self):
        self.messages_received += 1
        self.last_activity = time.time()

    def record_ping_sent(self):
        self.last_ping_sent = time.time()
        self.pings_sent += 1

    def record_pong_received(self):
        """Pong from the transport: the peer is alive for the next sweep"""
        now = time.time()
        self.is_alive = True
        self.pongs_received += 1
        self.last_activity = now
        if self.last_ping_sent > 0:
            self.rtt_ms = (now - self.last_ping_sent) * 1000

    def get_connection_age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.connected_at).total_seconds()


class ConnectionManager:
    """
    Tracks every open relay connection.

    Invariants:
    - at most one connection occupies the device slot
    - a connection never leaves the DEVICE role once promoted
    - broadcasts go to viewers only, never to the current device
    - remove() is idempotent; a close of an already replaced device is ignored
    """

    def __init__(self, send_timeout_seconds: float = 5.0, logger: Optional[StructuredLogger] = None):
        self.send_timeout_seconds = send_timeout_seconds
        self.logger = logger

        self._connections: Dict[str, RelayConnection] = {}
        self._viewers: Dict[str, RelayConnection] = {}
        self._device: Optional[RelayConnection] = None

        # Close requests issued without awaiting them (device takeover, slow peers)
        self._pending_closes: Set[asyncio.Task] = set()
        self._is_shutting_down = False

        # Performance metrics
        self.total_connections_accepted = 0
        self.total_connections_dropped = 0
        self.total_device_takeovers = 0
        self.total_broadcasts = 0
        self.total_send_failures = 0
        self.peak_concurrent_connections = 0

    # --- registry operations ---

    async def accept(self, connection: RelayConnection) -> None:
        """
        Register a freshly opened connection as a viewer.

        The viewer immediately receives the current device status so its
        indicator is correct without waiting for the next change.
        """
        connection.role = ConnectionRole.VIEWER
        connection.is_alive = True
        connection.is_open = True
        self._connections[connection.client_id] = connection
        self._viewers[connection.client_id] = connection

        self.total_connections_accepted += 1
        self.peak_concurrent_connections = max(self.peak_concurrent_connections, len(self._connections))

        if self.logger:
            self.logger.info("connection_manager.connection_accepted", {
                "client_id": connection.client_id,
                "ip_address": connection.ip_address,
                "current_connections": len(self._connections)
            })

        await self.send(connection, self._device_status_message(self.is_device_online()))

    async def promote_to_device(self, connection: RelayConnection) -> bool:
        """
        Install connection in the device slot.

        A different previous holder is displaced: the slot is reassigned first
        and the old connection's close is only requested, so its later close
        event is recognised as stale. Viewers hear "online" only when no device
        was online before.

        Returns:
            False if the connection is closed or was replaced, True otherwise
        """
        if not connection.is_open or connection.is_replaced or connection.client_id not in self._connections:
            if self.logger:
                self.logger.debug("connection_manager.promote_ignored", {
                    "client_id": connection.client_id,
                    "replaced": connection.is_replaced
                })
            return False

        previous = self._device
        if previous is connection:
            await self.send(connection, self._device_ack_message(connection))
            return True

        was_online = previous is not None
        self._device = connection
        self._viewers.pop(connection.client_id, None)
        connection.role = ConnectionRole.DEVICE

        if previous is not None:
            previous.is_replaced = True
            self.total_device_takeovers += 1
            self._schedule_close(previous, DEVICE_REPLACED_CLOSE_CODE, DEVICE_REPLACED_REASON)

        if self.logger:
            self.logger.info("connection_manager.device_promoted", {
                "client_id": connection.client_id,
                "ip_address": connection.ip_address,
                "replaced_client_id": previous.client_id if previous else None
            })

        if not was_online:
            await self.broadcast_to_viewers(self._device_status_message(True))
        await self.send(connection, self._device_ack_message(connection))
        return True

    async def remove(self, connection: RelayConnection, reason: str = "closed") -> None:
        """
        Forget a closed connection. Idempotent.

        Clearing the device slot notifies viewers "offline"; a replaced
        device no longer holds the slot and triggers nothing.
        """
        connection.is_open = False
        known = self._connections.pop(connection.client_id, None) is not None
        self._viewers.pop(connection.client_id, None)

        if known:
            self.total_connections_dropped += 1
            if self.logger:
                self.logger.info("connection_manager.connection_removed", {
                    "client_id": connection.client_id,
                    "role": connection.role.value,
                    "reason": reason,
                    "remaining_connections": len(self._connections)
                })

        if self._device is connection:
            self._device = None
            if self.logger:
                self.logger.info("connection_manager.device_offline", {
                    "client_id": connection.client_id,
                    "reason": reason
                })
            if not self._is_shutting_down:
                await self.broadcast_to_viewers(self._device_status_message(False))

    # --- queries ---

    def is_device_online(self) -> bool:
        return self._device is not None

    def is_current_device(self, connection: RelayConnection) -> bool:
        return self._device is connection

    def get_device(self) -> Optional[RelayConnection]:
        return self._device

    def viewer_count(self) -> int:
        return len(self._viewers)

    def all_connections(self) -> List[RelayConnection]:
        """Point-in-time snapshot of every registered connection"""
        return list(self._connections.values())

    # --- delivery ---

    async def broadcast_to_viewers(self, message: Dict[str, Any]) -> int:
        """
        Send message to every open viewer of a snapshot.

        The payload is serialised once; sends run concurrently and each one is
        bounded by send_timeout_seconds, so one failing or slow viewer does not
        hold back the others.

        Returns:
            Number of viewers that received the message
        """
        payload = json.dumps(message)
        targets = [
            conn for conn in list(self._viewers.values())
            if conn.is_open and conn is not self._device
        ]
        self.total_broadcasts += 1
        if not targets:
            return 0

        results = await asyncio.gather(*(self._send_raw(conn, payload) for conn in targets))
        sent_count = sum(1 for ok in results if ok)

        if self.logger:
            self.logger.debug("connection_manager.broadcast_sent", {
                "message_type": message.get("type"),
                "targets": len(targets),
                "messages_sent": sent_count
            })
        return sent_count

    async def send_to_device(self, message: Dict[str, Any]) -> bool:
        """Send message to the current device. False when none is online or the send fails."""
        device = self._device
        if device is None:
            return False
        return await self.send(device, message)

    async def send(self, connection: RelayConnection, message: Dict[str, Any]) -> bool:
        """Send message to a single connection"""
        return await self._send_raw(connection, json.dumps(message))

    async def notify_all(self, message: Dict[str, Any]) -> int:
        """Best-effort delivery to every connection, device included"""
        payload = json.dumps(message)
        targets = [conn for conn in self.all_connections() if conn.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send_raw(conn, payload) for conn in targets))
        return sum(1 for ok in results if ok)

    async def _send_raw(self, connection: RelayConnection, payload: str) -> bool:
        if not connection.is_open:
            return False

        try:
            await asyncio.wait_for(connection.websocket.send(payload), timeout=self.send_timeout_seconds)
            connection.record_message_sent(len(payload))
            return True

        except ConnectionClosed as e:
            # The handler's close path removes the connection
            if self.logger:
                self.logger.debug("connection_manager.send_skipped_connection_closed", {
                    "client_id": connection.client_id,
                    "close_code": e.rcvd.code if e.rcvd else None
                })
            return False

        except asyncio.TimeoutError:
            # A cancelled send leaves the frame stream unusable, drop the peer
            self.total_send_failures += 1
            if self.logger:
                self.logger.warning("connection_manager.send_timeout", {
                    "client_id": connection.client_id,
                    "timeout_seconds": self.send_timeout_seconds
                })
            self.terminate(connection)
            return False

        except Exception as e:
            self.total_send_failures += 1
            if self.logger:
                self.logger.error("connection_manager.send_failed", {
                    "client_id": connection.client_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            return False

    # --- closing ---

    def terminate(self, connection: RelayConnection) -> None:
        """Abort the transport without a closing handshake"""
        transport = getattr(connection.websocket, "transport", None)
        if transport is not None:
            transport.abort()
        if self.logger:
            self.logger.debug("connection_manager.connection_terminated", {
                "client_id": connection.client_id
            })

    def terminate_all(self) -> int:
        connections = [conn for conn in self.all_connections() if conn.is_open]
        for connection in connections:
            self.terminate(connection)
        return len(connections)

    def _schedule_close(self, connection: RelayConnection, code: int, reason: str) -> None:
        task = asyncio.create_task(self._close_connection(connection, code, reason))
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)

    async def _close_connection(self, connection: RelayConnection, code: int, reason: str) -> None:
        try:
            await connection.websocket.close(code, reason)
        except Exception as e:
            if self.logger:
                self.logger.warning("connection_manager.close_failed", {
                    "client_id": connection.client_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            self.terminate(connection)

    async def shutdown(self) -> int:
        """Stop status notices and abort every connection"""
        self._is_shutting_down = True
        for task in list(self._pending_closes):
            task.cancel()
        if self._pending_closes:
            await asyncio.gather(*self._pending_closes, return_exceptions=True)
        terminated = self.terminate_all()

        if self.logger:
            self.logger.info("connection_manager.shutdown_completed", {
                "terminated_connections": terminated,
                "total_connections_handled": self.total_connections_accepted
            })
        return terminated

    # --- diagnostics ---

    @staticmethod
    def _device_status_message(online: bool) -> Dict[str, Any]:
        return {"type": "esp_status", "status": "online" if online else "offline"}

    @staticmethod
    def _device_ack_message(connection: RelayConnection) -> Dict[str, Any]:
        return {"type": "esp_ack", "client_id": connection.client_id}

    def get_connection_stats_snapshot(self) -> Dict[str, Any]:
        """Get comprehensive connection statistics"""
        connections_snapshot = self.all_connections()
        device = self._device

        return {
            "current_connections": len(connections_snapshot),
            "viewer_count": len(self._viewers),
            "device_online": device is not None,
            "device_client_id": device.client_id if device else None,
            "peak_concurrent_connections": self.peak_concurrent_connections,
            "total_connections_accepted": self.total_connections_accepted,
            "total_connections_dropped": self.total_connections_dropped,
            "total_device_takeovers": self.total_device_takeovers,
            "total_broadcasts": self.total_broadcasts,
            "total_send_failures": self.total_send_failures,
            "total_messages_sent": sum(conn.messages_sent for conn in connections_snapshot),
            "total_messages_received": sum(conn.messages_received for conn in connections_snapshot),
            "memory_usage_mb": psutil.Process().memory_info().rss / 1024 / 1024,
        }

    async def log_connection_closed(
        self,
        connection: RelayConnection,
        close_code: Optional[int],
        close_reason: str,
        initiated_by: str = "unknown"
    ) -> None:
        """
        Log diagnostic information when a WebSocket connection closes.

        Normal closes (1000, 1001) are logged at INFO, everything else at
        WARNING. A missing close code means the transport dropped (1006).
        """
        if not self.logger:
            return

        code = close_code if close_code is not None else 1006
        log_data = {
            "client_id": connection.client_id,
            "role": connection.role.value,
            "close_code": code,
            "close_code_text": CLOSE_CODE_DESCRIPTIONS.get(code, "unknown"),
            "close_reason": close_reason,
            "duration_seconds": connection.get_connection_age_seconds(),
            "messages_sent": connection.messages_sent,
            "messages_received": connection.messages_received,
            "last_activity_age_seconds": time.time() - connection.last_activity,
            "initiated_by": initiated_by
        }

        if code in (1000, 1001, DEVICE_REPLACED_CLOSE_CODE):
            self.logger.info("websocket.connection_closed", log_data)
        else:
            self.logger.warning("websocket.connection_closed", log_data)
