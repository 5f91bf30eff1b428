"""
Core Exceptions - RFID Relay
============================
Centralized exception definitions for the relay.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for relay operations."""
    pass


class TagStoreError(RelayError):
    """
    Raised when the persistence gateway cannot complete an operation.

    Writes (set or clear a name) log it and keep the in-memory value, on the
    realtime path and in the admin PUT/DELETE routes alike. Only the admin
    listing, which reads the store directly, maps it to 503.
    """
    def __init__(self, operation: str, message: str, tag_id: Optional[str] = None):
        self.operation = operation
        self.tag_id = tag_id
        self.message = message
        detail = f"Tag store {operation} failed"
        if tag_id is not None:
            detail += f" for {tag_id}"
        super().__init__(f"{detail}: {message}")


class InvalidTagNameError(RelayError):
    """
    Raised when a display name cannot be stored (wrong type or too long).

    HTTP Status: 400 Bad Request
    """
    def __init__(self, tag_id: str, reason: str):
        self.tag_id = tag_id
        self.reason = reason
        self.message = f"Invalid name for tag {tag_id}: {reason}"
        super().__init__(self.message)
