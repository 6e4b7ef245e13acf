"""Text chat endpoints: stateless pass-through and conversation turns."""

import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from shared.models.domain import ChatMessage, ImagePayload
from shared.services.anthropic_adapter import TextDelta
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError
from tutor.models.messages import ChatRequest, TurnRequest
from tutor.orchestration.history_assembler import MAX_TURN_IMAGES, attach_images_to_final

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


async def prime_stream(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Pull the first chunk before the response starts.

    Failures that happen before any text arrives (history fetch, model
    connection) then surface as a proper HTTP error instead of a
    truncated 200 stream.
    """
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = None

    async def _stream() -> AsyncIterator[str]:
        if first is None:
            return
        yield first
        try:
            async for chunk in chunks:
                yield chunk
        except TutorError as e:
            logger.error(f"Stream interrupted: {type(e).__name__}")

    return _stream()


def _parse_image(data_url: str) -> ImagePayload:
    try:
        return ImagePayload.from_data_url(data_url)
    except ValueError:
        raise HTTPException(status_code=400, detail="Image must be a base64 data URL")


@router.post("/chat")
async def chat(request: ChatRequest, services: TutorServices = Depends(get_services)):
    """Stream a reply to a caller-supplied history; the image rides on the final user message."""
    images = [_parse_image(request.image)] if request.image else []
    messages = attach_images_to_final(
        [ChatMessage.text(m.role, m.content) for m in request.messages],
        images,
    )
    logger.info(json.dumps({
        "step": "CHAT_REQUEST",
        "messages": len(messages),
        "has_image": bool(images),
    }))

    async def _deltas() -> AsyncIterator[str]:
        events = services.chat_client.stream_chat(services.chat_assembler.system_prompt, messages)
        async for event in events:
            if isinstance(event, TextDelta):
                yield event.text

    try:
        stream = await prime_stream(_deltas())
    except TutorError as e:
        raise to_http_exception(e)
    return StreamingResponse(stream, media_type="text/plain; charset=utf-8")


@router.post("/conversations/{conversation_id}/turns")
async def submit_turn(
    conversation_id: str,
    request: TurnRequest,
    services: TutorServices = Depends(get_services),
):
    """Submit a text turn through the conversation's chat session."""
    images: list[ImagePayload] = []
    if request.image_data_url:
        images.append(_parse_image(request.image_data_url))

    try:
        if request.include_whiteboard:
            bridge = services.whiteboards.get(conversation_id).bridge
            export = await bridge.export_if_changed()
            if export is None and bridge.has_content:
                export = bridge.last_export
            if export is not None:
                images.append(export.image)

        if len(images) > MAX_TURN_IMAGES:
            raise HTTPException(status_code=400, detail=f"At most {MAX_TURN_IMAGES} images per turn")

        session = services.chat_sessions.get(conversation_id)
        chunks = session.submit(request.text, images, image_ref=request.image_ref)
        stream = await prime_stream(chunks)
    except TutorError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return StreamingResponse(stream, media_type="text/plain; charset=utf-8")


@router.post("/conversations/{conversation_id}/turns/resume")
async def resume_turn(conversation_id: str, services: TutorServices = Depends(get_services)):
    """Reply to a user message that was saved without a reply."""
    try:
        session = services.chat_sessions.get(conversation_id)
        stream = await prime_stream(session.resume())
    except TutorError as e:
        raise to_http_exception(e)
    return StreamingResponse(stream, media_type="text/plain; charset=utf-8")


@router.post("/conversations/{conversation_id}/turns/cancel")
def cancel_turn(conversation_id: str, services: TutorServices = Depends(get_services)):
    """Cancel the in-flight turn; nothing partial is persisted."""
    session = services.chat_sessions.peek(conversation_id)
    cancelled = session.cancel() if session is not None else False
    return {"cancelled": cancelled}
