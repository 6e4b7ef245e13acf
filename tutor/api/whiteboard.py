"""Whiteboard endpoints: canvas updates, persisted snapshot, export and send-to-chat."""

import asyncio
import base64
import json
import logging
from datetime import datetime
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session as DBSession

from database import get_db
from shared.models.domain import MessageRecord
from shared.repositories import WhiteboardRepository
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError, WhiteboardImageError
from tutor.services.whiteboard_bridge import decode_data_url_bytes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations/{conversation_id}/whiteboard", tags=["whiteboard"])

DEFAULT_SEND_TEXT = "Here's my work on the whiteboard."


class WhiteboardUpdateRequest(BaseModel):
    snapshot: Union[str, dict[str, Any]]
    image: Optional[str] = Field(default=None, description="Client-rendered PNG data URL; omitted for an empty canvas")


class WhiteboardUpdateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content_hash: str = Field(alias="contentHash")


class WhiteboardSnapshotResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    snapshot: str
    content_hash: str = Field(alias="contentHash")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class WhiteboardExportResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content_hash: str = Field(alias="contentHash")
    image_data_url: str = Field(alias="imageDataUrl")


class SendWhiteboardRequest(BaseModel):
    text: str = DEFAULT_SEND_TEXT


class SendWhiteboardResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: MessageRecord
    image_ref: str = Field(alias="imageRef")


@router.put("", response_model=WhiteboardUpdateResponse)
async def update_whiteboard(
    conversation_id: str,
    request: WhiteboardUpdateRequest,
    services: TutorServices = Depends(get_services),
):
    """Record the latest canvas state and schedule an auto-save."""
    channel = services.whiteboards.get(conversation_id)
    try:
        rendered = decode_data_url_bytes(request.image) if request.image else None
        digest = channel.record(request.snapshot, rendered)
    except WhiteboardImageError as e:
        raise to_http_exception(e)
    return WhiteboardUpdateResponse(content_hash=digest)


@router.get("", response_model=WhiteboardSnapshotResponse)
def get_whiteboard(conversation_id: str, db: DBSession = Depends(get_db)):
    """Last persisted snapshot."""
    state = WhiteboardRepository(db).get(conversation_id)
    if state is None:
        raise HTTPException(status_code=404, detail="No whiteboard saved for this conversation")
    return WhiteboardSnapshotResponse(
        snapshot=state.snapshot_json,
        content_hash=state.content_hash,
        updated_at=state.updated_at,
    )


@router.post("/export", response_model=WhiteboardExportResponse, responses={204: {"description": "Unchanged since last export"}})
async def export_whiteboard(conversation_id: str, services: TutorServices = Depends(get_services)):
    """Export the canvas image; 204 when nothing changed since the last export."""
    export = await services.whiteboards.get(conversation_id).bridge.export_if_changed()
    if export is None:
        return Response(status_code=204)
    return WhiteboardExportResponse(content_hash=export.content_hash, image_data_url=export.data_url)


@router.post("/send", response_model=SendWhiteboardResponse)
async def send_whiteboard(
    conversation_id: str,
    request: SendWhiteboardRequest,
    services: TutorServices = Depends(get_services),
):
    """
    Store the current whiteboard image and append it as a user message.

    The reply is produced by resuming the conversation's pending turn.
    """
    bridge = services.whiteboards.get(conversation_id).bridge
    export = await bridge.export_if_changed()
    if export is None and bridge.has_content:
        export = bridge.last_export
    if export is None:
        raise HTTPException(status_code=400, detail="The whiteboard is empty")

    try:
        loop = asyncio.get_running_loop()
        image_ref = await loop.run_in_executor(
            None,
            services.storage.upload_image,
            conversation_id,
            base64.b64decode(export.image.data),
            export.image.media_type,
        )
        message = await services.store.append(conversation_id, "user", request.text, image_ref=image_ref)
    except TutorError as e:
        raise to_http_exception(e)

    logger.info(json.dumps({
        "step": "WHITEBOARD_SEND",
        "conversation_id": conversation_id,
        "message_id": message.id,
    }))
    return SendWhiteboardResponse(message=message, image_ref=image_ref)
