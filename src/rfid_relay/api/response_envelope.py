"""
Response Envelope Utilities
===========================
Every REST response of the relay uses one of two shapes:

    {"type": "response", "data": {...}, "version": "1.0", "timestamp": "..."}
    {"type": "error", "error_code": "...", "error_message": "...", "version": "1.0", "timestamp": "..."}
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi.responses import JSONResponse


PROTOCOL_VERSION = "1.0"


def ensure_envelope(message: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of message with version and timestamp filled in when absent"""
    enriched = dict(message)
    enriched.setdefault("version", PROTOCOL_VERSION)
    enriched.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return enriched


def json_ok(payload: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(content=ensure_envelope({"type": "response", "data": payload}))


def json_error(code: str, message: str, status: int = 400) -> JSONResponse:
    body = ensure_envelope({
        "type": "error",
        "error_code": code,
        "error_message": message,
    })
    return JSONResponse(content=body, status_code=status)
