"""
Message Router
==============
Dispatches relay frames by type between viewers and the reader device.

Unknown or malformed frames are dropped and logged; nothing is sent back.
The only reply the router ever produces is the "device offline" error for a
command that cannot be forwarded.
"""

import itertools
import json
from typing import Dict, Any, Optional, Callable, Awaitable, Tuple
from datetime import datetime, timezone
from enum import Enum

from ..core.exceptions import InvalidTagNameError
from ..core.logger import StructuredLogger
from .connection_manager import ConnectionManager, RelayConnection
from .tag_enrichment import TagEnrichmentService


class MessageType(str, Enum):
    """Relay wire message types"""

    # Device -> Server
    ESP_ONLINE = "esp_online"
    RFID_RESULT = "rfid_result"
    FW_RESULT = "fw_result"
    TEMP_RESULT = "temp_result"
    RETURN_LOSS_RESULT = "return_loss_result"

    # Viewer -> Server
    RFID_READ = "rfid_read"
    CONFIG = "config"
    GET_FW = "get_fw"
    GET_TEMP = "get_temp"
    GET_RETURN_LOSS = "get_return_loss"
    TAG_NAME_SET = "tag_name_set"

    # Server -> Client
    ESP_STATUS = "esp_status"
    ESP_ACK = "esp_ack"
    TAG_NAME_UPDATED = "tag_name_updated"
    ERROR = "error"
    SERVER_SHUTDOWN = "server_shutdown"


class MessageOrigin(str, Enum):
    """Who may send a message type"""

    ANY = "any"
    VIEWER = "viewer"   # any connection that is not a device
    DEVICE = "device"   # only the current device slot holder


Handler = Callable[[RelayConnection, Dict[str, Any]], Awaitable[None]]


class MessageRouter:
    """
    Routes parsed frames to handlers registered per MessageType.

    Handlers run on the connection's read loop, so frames from one
    connection are handled in arrival order.
    """

    def __init__(self,
                 connection_manager: ConnectionManager,
                 tag_enrichment: TagEnrichmentService,
                 logger: Optional[StructuredLogger] = None):
        self.connection_manager = connection_manager
        self.tag_enrichment = tag_enrichment
        self.logger = logger

        # Message handlers registry
        self.handlers: Dict[MessageType, Tuple[MessageOrigin, Handler]] = {}

        # Advisory sequence attached to forwarded read requests
        self._read_sequence = itertools.count(1)

        # Performance tracking
        self.messages_processed = 0
        self.messages_dropped = 0
        self.messages_by_type: Dict[str, int] = {}

        self._register_default_handlers()

    def register_handler(self, message_type: MessageType, origin: MessageOrigin, handler: Handler):
        """
        Register a handler for a specific message type.

        Args:
            message_type: Message type to handle
            origin: Which connections may send it
            handler: Async handler function (connection, message) -> None
        """
        self.handlers[message_type] = (origin, handler)

        if self.logger:
            self.logger.debug("message_router.handler_registered", {
                "message_type": message_type.value,
                "origin": origin.value,
                "handler": handler.__name__
            })

    def _register_default_handlers(self):
        self.register_handler(MessageType.ESP_ONLINE, MessageOrigin.ANY, self._handle_device_announce)

        self.register_handler(MessageType.RFID_READ, MessageOrigin.VIEWER, self._handle_read_request)
        self.register_handler(MessageType.CONFIG, MessageOrigin.VIEWER, self._handle_device_command)
        self.register_handler(MessageType.GET_FW, MessageOrigin.VIEWER, self._handle_device_command)
        self.register_handler(MessageType.GET_TEMP, MessageOrigin.VIEWER, self._handle_device_command)
        self.register_handler(MessageType.GET_RETURN_LOSS, MessageOrigin.VIEWER, self._handle_device_command)
        self.register_handler(MessageType.TAG_NAME_SET, MessageOrigin.VIEWER, self._handle_tag_name_set)

        self.register_handler(MessageType.RFID_RESULT, MessageOrigin.DEVICE, self._handle_read_result)
        self.register_handler(MessageType.FW_RESULT, MessageOrigin.DEVICE, self._handle_ancillary_result)
        self.register_handler(MessageType.TEMP_RESULT, MessageOrigin.DEVICE, self._handle_ancillary_result)
        self.register_handler(MessageType.RETURN_LOSS_RESULT, MessageOrigin.DEVICE, self._handle_ancillary_result)

    # --- entry point ---

    async def route_message(self, connection: RelayConnection, raw_message: Any) -> bool:
        """
        Parse and dispatch one inbound frame.

        Returns:
            True if a handler ran, False if the frame was dropped
        """
        message = self._parse(raw_message)
        if message is None:
            return self._drop(connection, "malformed_frame")

        raw_type = message.get("type")
        if not isinstance(raw_type, str):
            return self._drop(connection, "missing_type")

        try:
            message_type = MessageType(raw_type)
        except ValueError:
            return self._drop(connection, "unknown_type", raw_type)

        registered = self.handlers.get(message_type)
        if registered is None:
            return self._drop(connection, "no_handler", raw_type)

        origin, handler = registered
        if not self._origin_allowed(connection, origin):
            return self._drop(connection, "wrong_origin", raw_type)

        self.messages_processed += 1
        self.messages_by_type[raw_type] = self.messages_by_type.get(raw_type, 0) + 1

        try:
            await handler(connection, message)
        except Exception as e:
            if self.logger:
                self.logger.error("message_router.handler_error", {
                    "client_id": connection.client_id,
                    "message_type": raw_type,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            return False
        return True

    @staticmethod
    def _parse(raw_message: Any) -> Optional[Dict[str, Any]]:
        if isinstance(raw_message, (bytes, bytearray)):
            try:
                raw_message = raw_message.decode("utf-8")
            except UnicodeDecodeError:
                return None
        if isinstance(raw_message, str):
            try:
                raw_message = json.loads(raw_message)
            except ValueError:
                return None
        if not isinstance(raw_message, dict):
            return None
        return raw_message

    def _origin_allowed(self, connection: RelayConnection, origin: MessageOrigin) -> bool:
        if origin == MessageOrigin.DEVICE:
            return self.connection_manager.is_current_device(connection)
        if origin == MessageOrigin.VIEWER:
            return not connection.is_device
        return True

    def _drop(self, connection: RelayConnection, reason: str, message_type: Optional[str] = None) -> bool:
        self.messages_dropped += 1
        if self.logger:
            self.logger.warning("message_router.message_dropped", {
                "client_id": connection.client_id,
                "role": connection.role.value,
                "reason": reason,
                "message_type": message_type
            })
        return False

    # --- viewer -> device ---

    async def _handle_device_announce(self, connection: RelayConnection, message: Dict[str, Any]):
        await self.connection_manager.promote_to_device(connection)

    async def _handle_read_request(self, connection: RelayConnection, message: Dict[str, Any]):
        command = {"type": MessageType.RFID_READ.value, "seq": next(self._read_sequence)}
        await self._forward_to_device(connection, command, MessageType.RFID_READ)

    async def _handle_device_command(self, connection: RelayConnection, message: Dict[str, Any]):
        # Forwarded as received; the device owns validation of config values
        await self._forward_to_device(connection, message, MessageType(message["type"]))

    async def _forward_to_device(self, connection: RelayConnection, command: Dict[str, Any], request_type: MessageType):
        if not self.connection_manager.is_device_online():
            await self.connection_manager.send(connection, self._create_error_response(
                "device_offline", "Reader device is not connected", request_type))
            return

        if not await self.connection_manager.send_to_device(command):
            await self.connection_manager.send(connection, self._create_error_response(
                "device_unreachable", "Command could not be delivered to the reader device", request_type))
            return

        if self.logger:
            self.logger.debug("message_router.command_forwarded", {
                "client_id": connection.client_id,
                "message_type": request_type.value,
                "seq": command.get("seq")
            })

    # --- tag names ---

    async def _handle_tag_name_set(self, connection: RelayConnection, message: Dict[str, Any]):
        tag_id = message.get("id")
        if isinstance(tag_id, (int, float)) and not isinstance(tag_id, bool):
            tag_id = str(tag_id)
        if not isinstance(tag_id, str) or not tag_id.strip():
            self._drop(connection, "invalid_tag_id", MessageType.TAG_NAME_SET.value)
            return

        try:
            await self.apply_tag_name(tag_id, message.get("name"))
        except InvalidTagNameError as e:
            self._drop(connection, "invalid_tag_name", MessageType.TAG_NAME_SET.value)
            if self.logger:
                self.logger.debug("message_router.tag_name_rejected", {
                    "tag_id": tag_id,
                    "reason": e.reason
                })

    async def apply_tag_name(self, tag_id: str, name: Any) -> Optional[str]:
        """
        Store a tag name and tell every viewer about it.

        The store write completes before the broadcast goes out.
        Raises InvalidTagNameError before anything is changed.
        """
        canonical = await self.tag_enrichment.set_name(tag_id, name)
        await self.connection_manager.broadcast_to_viewers({
            "type": MessageType.TAG_NAME_UPDATED.value,
            "id": tag_id,
            "name": canonical or ""
        })
        return canonical

    # --- device -> viewers ---

    async def _handle_read_result(self, connection: RelayConnection, message: Dict[str, Any]):
        enriched = await self.tag_enrichment.enrich(message)
        await self.connection_manager.broadcast_to_viewers(enriched)

    async def _handle_ancillary_result(self, connection: RelayConnection, message: Dict[str, Any]):
        await self.connection_manager.broadcast_to_viewers(message)

    # --- responses / stats ---

    def _create_error_response(self, error_code: str, error_message: str, request_type: MessageType) -> Dict[str, Any]:
        """Create standardized error response"""
        return {
            "type": MessageType.ERROR.value,
            "error_code": error_code,
            "error_message": error_message,
            "request_type": request_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get router statistics"""
        return {
            "messages_processed": self.messages_processed,
            "messages_dropped": self.messages_dropped,
            "messages_by_type": dict(self.messages_by_type),
            "registered_handlers": len(self.handlers)
        }
