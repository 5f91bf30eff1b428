"""
Shutdown Coordinator
====================
Ordered teardown of the relay with a hard deadline.

Signals are handled by uvicorn, which runs the application lifespan shutdown;
the lifespan calls ShutdownCoordinator.shutdown(). If teardown is still
running after the grace period a daemon timer ends the process.
"""

import asyncio
import os
import threading
from typing import Any, Callable, Optional

from .logger import StructuredLogger


class ShutdownCoordinator:
    """
    Stops the relay in this order:

    1. arm the force-exit timer
    2. stop the liveness monitor
    3. tell every connection the server is going away (best effort)
    4. abort every connection
    5. close the listening WebSocket server
    6. let background tag registrations finish, cancelling stragglers
    7. close the tag store
    """

    SHUTDOWN_MESSAGE = {"type": "server_shutdown"}

    def __init__(self,
                 connection_manager: Any,
                 heartbeat_service: Any,
                 relay_server: Any,
                 tag_store: Any = None,
                 tag_enrichment: Any = None,
                 grace_seconds: float = 3.0,
                 exit_func: Callable[[int], None] = os._exit,
                 logger: Optional[StructuredLogger] = None):
        self.connection_manager = connection_manager
        self.heartbeat_service = heartbeat_service
        self.relay_server = relay_server
        self.tag_store = tag_store
        self.tag_enrichment = tag_enrichment
        self.grace_seconds = grace_seconds
        self.exit_func = exit_func
        self.logger = logger

        self._shutdown_started = False
        self._completed = asyncio.Event()
        self._force_exit_timer: Optional[threading.Timer] = None

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_started

    async def shutdown(self, reason: str = "signal") -> None:
        """Run the teardown once; later calls wait for the first one"""
        if self._shutdown_started:
            await self._completed.wait()
            return
        self._shutdown_started = True

        if self.logger:
            self.logger.info("shutdown.started", {
                "reason": reason,
                "grace_seconds": self.grace_seconds
            })

        self._arm_force_exit()
        try:
            await self.heartbeat_service.stop()

            notified = await self.connection_manager.notify_all(self.SHUTDOWN_MESSAGE)
            terminated = await self.connection_manager.shutdown()

            await self.relay_server.stop()

            if self.tag_enrichment is not None:
                # half the grace period, leaving the rest for the store close
                await self.tag_enrichment.drain(timeout=self.grace_seconds / 2)

            if self.tag_store is not None:
                try:
                    await self.tag_store.close()
                except Exception as e:
                    if self.logger:
                        self.logger.warning("shutdown.tag_store_close_failed", {
                            "error": str(e),
                            "error_type": type(e).__name__
                        })

            if self.logger:
                self.logger.info("shutdown.completed", {
                    "connections_notified": notified,
                    "connections_terminated": terminated
                })
        finally:
            self._disarm_force_exit()
            self._completed.set()

    def _arm_force_exit(self) -> None:
        def force_exit():
            if self.logger:
                self.logger.error("shutdown.grace_period_expired", {
                    "grace_seconds": self.grace_seconds
                })
            self.exit_func(1)

        self._force_exit_timer = threading.Timer(self.grace_seconds, force_exit)
        self._force_exit_timer.daemon = True
        self._force_exit_timer.start()

    def _disarm_force_exit(self) -> None:
        if self._force_exit_timer is not None:
            self._force_exit_timer.cancel()
            self._force_exit_timer = None
