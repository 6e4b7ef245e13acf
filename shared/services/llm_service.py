"""
LLM Service: OpenAI-backed speech and vision calls.

Transcription (Whisper), speech synthesis and whiteboard description all go
through `_execute_with_retry`, which bounds each attempt by a deadline and
retries rate limits and timeouts with exponential backoff. Failures reach
callers only as tutor LLM errors, never as raw SDK exceptions.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Optional
from openai import AsyncOpenAI, OpenAIError, RateLimitError, APITimeoutError
import logging

from tutor.exceptions import LLMRateLimitError, LLMServiceError, LLMTimeoutError
from tutor.prompts.tutor_prompts import WHITEBOARD_VISION_PROMPT

logger = logging.getLogger(__name__)

EMPTY_WHITEBOARD_DESCRIPTION = "I couldn't see anything on the whiteboard."

# Whisper expects a filename whose extension matches the payload
AUDIO_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mp4": "mp4",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/flac": "flac",
}


async def execute_with_retry(
    api_call_fn: Callable[[], Awaitable[Any]],
    model_name: str,
    *,
    max_retries: int = 3,
    initial_retry_delay: float = 1.0,
    timeout: float = 30.0,
) -> Any:
    """Execute an async API call with a per-attempt deadline and exponential backoff."""
    last_error: Optional[Exception] = None
    delay = initial_retry_delay
    start_time = time.time()

    for attempt in range(max_retries):
        try:
            result = await asyncio.wait_for(api_call_fn(), timeout=timeout)
            duration_ms = int((time.time() - start_time) * 1000)

            logger.info(json.dumps({
                "step": "LLM_CALL",
                "status": "complete",
                "model": model_name,
                "duration_ms": duration_ms,
                "attempts": attempt + 1
            }))
            return result

        except RateLimitError as e:
            last_error = e
            logger.warning(
                f"{model_name} rate limit hit (attempt {attempt + 1}/{max_retries}). "
                f"Retrying in {delay}s..."
            )

        except (APITimeoutError, asyncio.TimeoutError) as e:
            last_error = e
            logger.warning(
                f"{model_name} timeout (attempt {attempt + 1}/{max_retries}). "
                f"Retrying in {delay}s..."
            )

        except OpenAIError as e:
            logger.error(f"{model_name} API error: {type(e).__name__}")
            raise LLMServiceError(f"{model_name} API error: {type(e).__name__}", model_name=model_name) from e

        if attempt < max_retries - 1:
            await asyncio.sleep(delay)
            delay *= 2

    logger.error(json.dumps({
        "step": "LLM_CALL",
        "status": "failed",
        "model": model_name,
        "duration_ms": int((time.time() - start_time) * 1000),
        "attempts": max_retries,
        "error": type(last_error).__name__,
    }))
    if isinstance(last_error, RateLimitError):
        raise LLMRateLimitError() from last_error
    raise LLMTimeoutError(timeout, model_name) from last_error


class LLMService:
    """
    Service for OpenAI speech and vision calls with retry logic and error handling.
    """

    def __init__(
        self,
        api_key: str,
        *,
        transcription_model: str = "whisper-1",
        transcription_language: str = "en",
        tts_model: str = "tts-1",
        tts_voice: str = "alloy",
        tts_format: str = "mp3",
        vision_model: str = "gpt-4o",
        vision_max_tokens: int = 300,
        max_retries: int = 3,
        initial_retry_delay: float = 1.0,
        timeout: float = 30.0,
    ):
        self.client = AsyncOpenAI(api_key=api_key)
        self.transcription_model = transcription_model
        self.transcription_language = transcription_language
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.tts_format = tts_format
        self.vision_model = vision_model
        self.vision_max_tokens = vision_max_tokens
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.timeout = timeout

    async def _execute_with_retry(self, api_call_fn: Callable[[], Awaitable[Any]], model_name: str) -> Any:
        return await execute_with_retry(
            api_call_fn,
            model_name,
            max_retries=self.max_retries,
            initial_retry_delay=self.initial_retry_delay,
            timeout=self.timeout,
        )

    # ─── Transcription ────────────────────────────────────────────────

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        """
        Transcribe an audio payload to text.

        Raises:
            ValueError: Empty payload
            LLMError: Service failure
        """
        if not audio:
            raise ValueError("Empty audio payload")

        base_mime = mime_type.split(";")[0].strip()
        filename = f"recording.{AUDIO_EXTENSIONS.get(base_mime, 'webm')}"

        async def _api_call():
            return await self.client.audio.transcriptions.create(
                model=self.transcription_model,
                file=(filename, audio),
                language=self.transcription_language,
            )

        transcript = await self._execute_with_retry(_api_call, self.transcription_model)
        return (transcript.text or "").strip()

    # ─── Speech synthesis ─────────────────────────────────────────────

    async def synthesize(self, text: str) -> bytes:
        """Synthesize speech for `text`; returns audio bytes in `tts_format`."""

        async def _api_call():
            response = await self.client.audio.speech.create(
                model=self.tts_model,
                voice=self.tts_voice,
                input=text,
                response_format=self.tts_format,
            )
            return response.content

        return await self._execute_with_retry(_api_call, self.tts_model)

    # ─── Vision ───────────────────────────────────────────────────────

    async def describe_image(self, image_data_url: str) -> str:
        """Short description of a whiteboard image given as a data URL."""

        async def _api_call():
            return await self.client.chat.completions.create(
                model=self.vision_model,
                max_tokens=self.vision_max_tokens,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": WHITEBOARD_VISION_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_data_url}},
                    ],
                }],
            )

        response = await self._execute_with_retry(_api_call, self.vision_model)
        description = response.choices[0].message.content if response.choices else None
        return description or EMPTY_WHITEBOARD_DESCRIPTION
