"""Audio transcription endpoint using OpenAI Whisper."""

import logging

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from pydantic import BaseModel

from shared.services.llm_service import AUDIO_EXTENSIONS
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/speech-to-text", tags=["speech"])

MAX_FILE_SIZE = 25 * 1024 * 1024  # 25 MB (Whisper API limit)


class TranscriptionResponse(BaseModel):
    text: str


@router.post("", response_model=TranscriptionResponse)
async def transcribe_audio(
    audio: UploadFile | None = File(default=None),
    services: TutorServices = Depends(get_services),
):
    """Transcribe an uploaded recording to text."""
    if audio is None:
        raise HTTPException(status_code=400, detail="No audio file provided")

    content_type = (audio.content_type or "audio/webm").split(";")[0].strip()
    if content_type not in AUDIO_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported audio format: {content_type}",
        )

    contents = await audio.read()

    if len(contents) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File too large (max 25 MB)")

    if len(contents) == 0:
        raise HTTPException(status_code=400, detail="Empty audio file")

    try:
        text = await services.speech.transcribe(contents, content_type)
    except TutorError as e:
        logger.error(f"Whisper transcription failed: {type(e).__name__}")
        raise to_http_exception(e)
    return TranscriptionResponse(text=text)
