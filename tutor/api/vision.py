"""Whiteboard image description endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vision", tags=["vision"])


class DescribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data_url: str = Field(default="", alias="imageDataUrl")


class DescribeResponse(BaseModel):
    description: str


@router.post("/describe", response_model=DescribeResponse)
async def describe_image(request: DescribeRequest, services: TutorServices = Depends(get_services)):
    """Short natural-language description of a whiteboard image."""
    if not request.image_data_url.startswith("data:image/"):
        raise HTTPException(status_code=400, detail="No image data provided")
    try:
        description = await services.speech.describe_image(request.image_data_url)
    except TutorError as e:
        raise to_http_exception(e)
    return DescribeResponse(description=description)
