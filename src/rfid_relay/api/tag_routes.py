"""
Tag Admin API Routes
====================

CRUD over tag display names, gated by the admin shared secret.

Endpoints:
- GET    /api/tags           - List stored records (read from the store)
- PUT    /api/tags/{tag_id}  - Set a display name
- DELETE /api/tags/{tag_id}  - Remove a record

Writes go through the same path as the realtime ``tag_name_set`` message, so
the enrichment cache stays consistent and viewers receive ``tag_name_updated``.
A failing store write is logged and counted; the response still reports the
new in-memory value.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.exceptions import InvalidTagNameError, TagStoreError
from ..core.logger import get_logger
from ..database.tag_store import TagStore
from .dependencies import get_message_router, get_tag_enrichment, get_tag_store, verify_admin_token
from .message_router import MessageRouter
from .response_envelope import json_error, json_ok
from .tag_enrichment import TagEnrichmentService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/tags", tags=["tags"], dependencies=[Depends(verify_admin_token)])


class TagNameUpdate(BaseModel):
    name: Optional[str] = None


@router.get("")
async def list_tags(tag_store: TagStore = Depends(get_tag_store)) -> JSONResponse:
    """
    List every stored tag record.

    Returns:
        {"tags": [{"id", "name", "registered", "updated_at"}], "count": N}
    """
    try:
        records = await tag_store.load_all()
    except TagStoreError as e:
        logger.error("tag_routes.list_failed", {"error": str(e)})
        return json_error("storage_error", str(e), status=503)

    tags = [record.to_dict() for record in sorted(records.values(), key=lambda r: r.tag_id)]
    return json_ok({"tags": tags, "count": len(tags)})


@router.put("/{tag_id}")
async def update_tag_name(
    tag_id: str,
    body: TagNameUpdate,
    message_router: MessageRouter = Depends(get_message_router),
) -> JSONResponse:
    """Set the display name of a tag; an empty name removes the record."""
    try:
        name = await message_router.apply_tag_name(tag_id, body.name)
    except InvalidTagNameError as e:
        return json_error("validation_error", e.message, status=400)

    logger.info("tag_routes.name_updated", {"tag_id": tag_id, "name": name})
    return json_ok({"tag": {"id": tag_id, "name": name or "", "registered": bool(name)}})


@router.delete("/{tag_id}")
async def delete_tag(
    tag_id: str,
    message_router: MessageRouter = Depends(get_message_router),
    tag_enrichment: TagEnrichmentService = Depends(get_tag_enrichment),
) -> JSONResponse:
    """Remove a tag record and clear its name on every viewer."""
    existed = tag_enrichment.get(tag_id) is not None
    await message_router.apply_tag_name(tag_id, None)

    logger.info("tag_routes.tag_deleted", {"tag_id": tag_id, "existed": existed})
    return json_ok({"id": tag_id, "deleted": existed})
