"""Conversation management endpoints."""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session as DBSession

from database import get_db
from shared.repositories import ConversationRepository
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError
from tutor.models.messages import ChatView, ConversationResponse, CreateConversationRequest
from tutor.models.session_state import ChatStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _to_response(conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        last_active_at=conversation.last_active_at,
    )


def _conversation_exists(services: TutorServices, conversation_id: str) -> bool:
    with services.db_manager.session_scope() as db:
        return ConversationRepository(db).get_by_id(conversation_id) is not None


@router.post("", response_model=ConversationResponse)
def create_conversation(request: CreateConversationRequest, db: DBSession = Depends(get_db)):
    """Start a new conversation."""
    conversation = ConversationRepository(db).create(title=request.title)
    return _to_response(conversation)


@router.get("", response_model=list[ConversationResponse])
def list_conversations(limit: int = Query(default=50, ge=1, le=200), db: DBSession = Depends(get_db)):
    """Conversations ordered by most recent activity."""
    return [_to_response(c) for c in ConversationRepository(db).list_recent(limit)]


@router.get("/{conversation_id}/messages", response_model=ChatView)
async def get_messages(
    conversation_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    services: TutorServices = Depends(get_services),
):
    """Durable transcript (oldest first) combined with any in-flight turn."""
    loop = asyncio.get_running_loop()
    exists = await loop.run_in_executor(None, _conversation_exists, services, conversation_id)
    if not exists:
        raise HTTPException(status_code=404, detail="Conversation not found")

    try:
        durable = await services.store.list_recent(conversation_id, limit)
    except TutorError as e:
        raise to_http_exception(e)

    session = services.chat_sessions.peek(conversation_id)
    if session is None:
        return ChatView(conversation_id=conversation_id, status=ChatStatus.IDLE, messages=durable)
    return session.view(durable)
