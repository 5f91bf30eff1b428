"""
FastAPI Dependencies for API Routes

Reusable dependency functions for the admin endpoints. Components are read
from ``app.state``, where the application factory puts them.
"""

import hmac

from fastapi import Request, HTTPException, status

from .message_router import MessageRouter
from .tag_enrichment import TagEnrichmentService
from ..database.tag_store import TagStore


async def verify_admin_token(request: Request) -> str:
    """
    FastAPI dependency gating the admin endpoints with a shared secret.

    The header named by ``settings.admin.header_name`` must match
    ``settings.admin.api_token`` exactly. Without a configured token the
    endpoints are disabled.

    Returns:
        str: The accepted token

    Raises:
        HTTPException: 503 if no token is configured, 401 if missing or wrong
    """
    admin_settings = request.app.state.settings.admin
    expected = admin_settings.api_token

    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled",
        )

    token = request.headers.get(admin_settings.header_name)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required",
        )

    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )

    return token


def get_tag_store(request: Request) -> TagStore:
    return request.app.state.tag_store


def get_tag_enrichment(request: Request) -> TagEnrichmentService:
    return request.app.state.tag_enrichment


def get_message_router(request: Request) -> MessageRouter:
    return request.app.state.message_router
