"""
WebSocket Heartbeat Service
============================
Liveness sweeps over every relay connection using transport-level ping/pong.

Each connection carries one flag, ``is_alive``:

    event       is_alive before   is_alive after   action
    accept      -                 True             -
    tick        True              False            send ping
    tick        False             False            terminate
    pong        any               True             -

A peer that never answers is terminated on the second tick after it went
silent, i.e. within (interval, 2 * interval]. A peer that answers every ping
before the next tick is never terminated.
"""

import asyncio
from typing import Dict, Any, Optional

from websockets.exceptions import ConnectionClosed

from ...connection_manager import ConnectionManager, RelayConnection
from ....core.logger import StructuredLogger


class HeartbeatService:
    """
    Periodic liveness monitor for the relay.

    Responsibilities:
    - Ping every registered connection once per interval
    - Terminate connections that did not answer the previous ping
    - Track RTT per connection for the status endpoint

    Termination only aborts the transport; the connection handler's close
    path then removes it from the registry.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        ping_interval_seconds: float = 30.0,
        logger: Optional[StructuredLogger] = None
    ):
        self.connection_manager = connection_manager
        self.ping_interval = ping_interval_seconds
        self.logger = logger

        self._heartbeat_task: Optional[asyncio.Task] = None
        self._is_running = False

        self.sweeps_completed = 0
        self.total_pings_sent = 0
        self.total_terminations = 0

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self):
        """Start the heartbeat service background task."""
        if self._is_running:
            return

        self._is_running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        if self.logger:
            self.logger.info("heartbeat_service.started", {
                "ping_interval_seconds": self.ping_interval
            })

    async def stop(self):
        """Stop the heartbeat service."""
        if not self._is_running and self._heartbeat_task is None:
            return

        self._is_running = False

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        if self.logger:
            self.logger.info("heartbeat_service.stopped", {
                "sweeps_completed": self.sweeps_completed,
                "total_terminations": self.total_terminations
            })

    async def _heartbeat_loop(self):
        """Main heartbeat loop - runs in background."""
        while self._is_running:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.sweep()
            except Exception as e:
                if self.logger:
                    self.logger.error("heartbeat_service.loop_error", {
                        "error": str(e),
                        "error_type": type(e).__name__
                    })

    async def sweep(self) -> Dict[str, int]:
        """
        Run one liveness tick over a snapshot of the registry.

        Returns:
            Counts of probed and terminated connections
        """
        to_probe = []
        terminated = 0

        for connection in self.connection_manager.all_connections():
            if not connection.is_open:
                continue
            if not connection.is_alive:
                terminated += 1
                if self.logger:
                    self.logger.warning("heartbeat_service.pong_timeout", {
                        "client_id": connection.client_id,
                        "role": connection.role.value,
                        "pings_sent": connection.pings_sent,
                        "pongs_received": connection.pongs_received
                    })
                self.connection_manager.terminate(connection)
                continue
            connection.is_alive = False
            to_probe.append(connection)

        if to_probe:
            await asyncio.gather(*(self._probe(conn) for conn in to_probe))

        self.sweeps_completed += 1
        self.total_terminations += terminated

        if self.logger:
            self.logger.debug("heartbeat_service.sweep_completed", {
                "probed": len(to_probe),
                "terminated": terminated
            })
        return {"probed": len(to_probe), "terminated": terminated}

    async def _probe(self, connection: RelayConnection):
        try:
            pong_waiter = await connection.websocket.ping()
        except ConnectionClosed:
            return
        except Exception as e:
            if self.logger:
                self.logger.error("heartbeat_service.ping_error", {
                    "client_id": connection.client_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            return

        connection.record_ping_sent()
        self.total_pings_sent += 1
        pong_waiter.add_done_callback(lambda fut: self._on_pong(connection, fut))

    def _on_pong(self, connection: RelayConnection, pong_waiter: "asyncio.Future"):
        # The waiter fails with ConnectionClosed when the peer goes away first
        if pong_waiter.cancelled() or pong_waiter.exception() is not None:
            return
        connection.record_pong_received()
        if self.logger:
            self.logger.debug("heartbeat_service.pong_received", {
                "client_id": connection.client_id,
                "rtt_ms": connection.rtt_ms
            })

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate liveness figures for the status endpoint"""
        connections = self.connection_manager.all_connections()
        rtts = [conn.rtt_ms for conn in connections if conn.rtt_ms is not None]
        return {
            "is_running": self._is_running,
            "ping_interval_seconds": self.ping_interval,
            "sweeps_completed": self.sweeps_completed,
            "total_pings_sent": self.total_pings_sent,
            "total_terminations": self.total_terminations,
            "awaiting_pong": sum(1 for conn in connections if not conn.is_alive),
            "avg_rtt_ms": sum(rtts) / len(rtts) if rtts else 0.0
        }
