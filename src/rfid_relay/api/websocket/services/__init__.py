"""
WebSocket Services
==================
Services for WebSocket functionality.

Modules:
- heartbeat_service: Connection liveness monitoring via transport ping/pong
"""

from .heartbeat_service import HeartbeatService

__all__ = ['HeartbeatService']
