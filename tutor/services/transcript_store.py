"""
Transcript Store

Async facade over the message, conversation and practice repositories.
The orchestration layer only sees MessageRecord objects; repository
failures are translated into transcript errors here.
"""

import asyncio
import json
import logging
from contextlib import AbstractContextManager
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from shared.models.domain import MessageRecord, PracticeSessionRecord, Role, StructuredContext
from shared.models.entities import Message, PracticeSession
from shared.repositories import ConversationRepository, MessageRepository
from shared.repositories.practice_repository import load_problems
from tutor.exceptions import ConversationNotFoundError, HistoryFetchError, TranscriptWriteError

logger = logging.getLogger("tutor.transcript_store")

SessionScope = Callable[[], AbstractContextManager[DBSession]]
T = TypeVar("T")


def to_practice_record(row: PracticeSession) -> PracticeSessionRecord:
    return PracticeSessionRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        topic=row.topic,
        difficulty=row.difficulty,
        problems=load_problems(row),
        total_problems=row.total_problems,
        current_problem_index=row.current_problem_index,
        score=row.score,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def to_message_record(row: Message, include_practice: bool = True) -> MessageRecord:
    structured_context = None
    if row.structured_context_json:
        structured_context = StructuredContext.model_validate(json.loads(row.structured_context_json))

    practice_session = None
    if include_practice and row.practice_session is not None:
        practice_session = to_practice_record(row.practice_session)

    return MessageRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        role=row.role,
        content=row.content,
        created_at_ms=row.created_at_ms,
        image_ref=row.image_ref,
        structured_context=structured_context,
        practice_session_id=row.practice_session_id,
        practice_session=practice_session,
        is_voice=bool(row.is_voice),
    )


class TranscriptStore:
    """
    Durable, ordered message log per conversation.

    Repository work runs in the default executor so a slow database round
    trip never stalls the event loop.
    """

    def __init__(self, session_scope: SessionScope):
        self._session_scope = session_scope

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def append(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        image_ref: Optional[str] = None,
        structured_context: Optional[StructuredContext] = None,
        practice_session_id: Optional[str] = None,
        is_voice: bool = False,
    ) -> MessageRecord:
        """
        Append one message and touch the conversation.

        Raises:
            ConversationNotFoundError: Unknown conversation
            TranscriptWriteError: The store rejected the write
        """
        payload = (
            structured_context.model_dump(by_alias=True, exclude_none=True)
            if structured_context else None
        )
        try:
            record = await self._run(
                self._append_sync, conversation_id, role, content, image_ref, payload, practice_session_id, is_voice
            )
        except SQLAlchemyError as e:
            logger.error(f"Append failed for conversation {conversation_id}: {e}")
            raise TranscriptWriteError(conversation_id, type(e).__name__) from e

        logger.info(json.dumps({
            "step": "TRANSCRIPT_APPEND",
            "conversation_id": conversation_id,
            "message_id": record.id,
            "role": role,
            "is_voice": is_voice,
            "has_structured_context": structured_context is not None,
        }))
        return record

    def _append_sync(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        image_ref: Optional[str],
        structured_context: Optional[dict],
        practice_session_id: Optional[str],
        is_voice: bool,
    ) -> MessageRecord:
        with self._session_scope() as db:
            conversations = ConversationRepository(db)
            if conversations.get_by_id(conversation_id) is None:
                raise ConversationNotFoundError(conversation_id)

            row = MessageRepository(db).append(
                conversation_id=conversation_id,
                role=role,
                content=content,
                image_ref=image_ref,
                structured_context=structured_context,
                practice_session_id=practice_session_id,
                is_voice=is_voice,
            )
            conversations.touch(conversation_id)
            return to_message_record(row)

    async def list_recent(self, conversation_id: str, limit: int = 15) -> list[MessageRecord]:
        """
        Newest `limit` messages, oldest first, each enriched with its practice session.

        Raises:
            HistoryFetchError: The store could not be read
        """
        try:
            return await self._run(self._list_recent_sync, conversation_id, limit)
        except SQLAlchemyError as e:
            logger.error(f"History fetch failed for conversation {conversation_id}: {e}")
            raise HistoryFetchError(conversation_id, type(e).__name__) from e

    def _list_recent_sync(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        with self._session_scope() as db:
            rows = MessageRepository(db).list_recent(conversation_id, limit)
            return [to_message_record(row) for row in rows]
