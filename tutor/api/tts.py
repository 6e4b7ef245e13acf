"""Text-to-speech endpoint using OpenAI speech synthesis."""

import io
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError
from tutor.orchestration.voice_session import AUDIO_MIME_TYPES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/text-to-speech", tags=["speech"])

MAX_TEXT_LENGTH = 4096  # OpenAI speech input limit


class TTSRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)


@router.post("")
async def text_to_speech(
    request: TTSRequest,
    services: TutorServices = Depends(get_services),
):
    """Convert text to speech and stream the audio back."""
    try:
        audio = await services.speech.synthesize(request.text)
    except TutorError as e:
        logger.error(f"TTS generation failed: {type(e).__name__}")
        raise to_http_exception(e)

    return StreamingResponse(
        io.BytesIO(audio),
        media_type=AUDIO_MIME_TYPES.get(services.settings.tts_format, "audio/mpeg"),
        headers={"Content-Disposition": "inline"},
    )
