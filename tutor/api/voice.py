"""Voice mode endpoints: ephemeral token and the live session WebSocket."""

import asyncio
import base64
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from shared.repositories import ConversationRepository
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError, WhiteboardImageError
from tutor.models.messages import ClientVoiceMessage, ServerVoiceMessage, create_error_message
from tutor.orchestration.voice_session import VoiceSession
from tutor.services.whiteboard_bridge import decode_data_url_bytes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/voice", tags=["voice"])


class TokenResponse(BaseModel):
    token: str


@router.post("/token", response_model=TokenResponse)
async def create_voice_token(services: TutorServices = Depends(get_services)):
    """Issue a short-lived credential for one realtime voice session."""
    try:
        token = await services.token_issuer.issue()
    except TutorError as e:
        raise to_http_exception(e)
    return TokenResponse(token=token)


def _frame(message: ServerVoiceMessage) -> dict:
    return message.model_dump(mode="json", exclude_none=True)


async def _drain(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        await websocket.send_json(_frame(message))


async def _flush(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while not outbox.empty():
        await websocket.send_json(_frame(outbox.get_nowait()))


def _conversation_exists(services: TutorServices, conversation_id: str) -> bool:
    with services.db_manager.session_scope() as db:
        return ConversationRepository(db).get_by_id(conversation_id) is not None


async def _dispatch(
    session: VoiceSession,
    services: TutorServices,
    conversation_id: str,
    message: ClientVoiceMessage,
) -> None:
    if message.type == "speech_started":
        await session.on_speech_started()
    elif message.type == "speech_stopped":
        audio = base64.b64decode(message.audio or "")
        await session.on_speech_stopped(
            audio,
            mime_type=message.mime_type or "audio/webm",
            sample_rate=message.sample_rate,
            pcm_format=message.format,
        )
    elif message.type == "playback_finished":
        session.on_playback_finished()
    elif message.type == "whiteboard" and message.snapshot is not None:
        try:
            rendered = decode_data_url_bytes(message.image) if message.image else None
            services.whiteboards.get(conversation_id).record(message.snapshot, rendered)
        except WhiteboardImageError as e:
            logger.warning(f"[{conversation_id}] rejected whiteboard frame: {e.reason}")
            session.outbox.put_nowait(create_error_message(e))


@router.websocket("/{conversation_id}")
async def voice_session_socket(
    websocket: WebSocket,
    conversation_id: str,
    services: TutorServices = Depends(get_services),
):
    """
    Live voice session.

    A second connection for the same conversation attaches to the existing
    session. Dropping the connection keeps the session for re-attachment;
    only an `exit` frame tears it down.
    """
    await websocket.accept()

    loop = asyncio.get_running_loop()
    exists = await loop.run_in_executor(None, _conversation_exists, services, conversation_id)
    if not exists:
        await websocket.close(code=1008, reason="Conversation not found")
        return

    try:
        session, _ = services.voice_sessions.acquire_or_attach(conversation_id)
    except TutorError as e:
        await websocket.send_json(_frame(create_error_message(e)))
        await websocket.close(code=1011)
        return

    outbox = session.attach()
    writer = asyncio.create_task(_drain(websocket, outbox))
    final = False
    try:
        await session.start()
        while True:
            raw = await websocket.receive_json()
            try:
                message = ClientVoiceMessage.model_validate(raw)
            except ValidationError:
                logger.warning(f"[{conversation_id}] ignoring malformed voice frame")
                continue
            if message.type == "exit":
                final = True
                break
            await _dispatch(session, services, conversation_id, message)
    except WebSocketDisconnect:
        logger.info(json.dumps({"step": "VOICE_SOCKET", "status": "disconnected", "conversation_id": conversation_id}))
    finally:
        await services.voice_sessions.release(conversation_id, final=final)
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)

    if final:
        await _flush(websocket, outbox)
        await websocket.close()
