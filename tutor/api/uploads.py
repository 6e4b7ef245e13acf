"""Image upload endpoint backed by S3."""

import asyncio
import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from shared.services.object_storage import IMAGE_EXTENSIONS
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])

MAX_IMAGE_SIZE = 10 * 1024 * 1024  # 10 MB


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_ref: str = Field(alias="imageRef")


@router.post("", response_model=UploadResponse)
async def upload_image(
    conversation_id: str = Form(..., alias="conversationId"),
    file: UploadFile = File(...),
    services: TutorServices = Depends(get_services),
):
    """Store an image; the returned reference is passed with the next turn."""
    content_type = file.content_type or ""
    if content_type not in IMAGE_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Unsupported image format: {content_type or 'unknown'}")

    contents = await file.read()
    if len(contents) == 0:
        raise HTTPException(status_code=400, detail="Empty image file")
    if len(contents) > MAX_IMAGE_SIZE:
        raise HTTPException(status_code=400, detail="File too large (max 10 MB)")

    try:
        loop = asyncio.get_running_loop()
        key = await loop.run_in_executor(None, services.storage.upload_image, conversation_id, contents, content_type)
    except TutorError as e:
        raise to_http_exception(e)
    return UploadResponse(image_ref=key)
