"""Message (transcript) data access layer."""
import json
import logging
import time
import uuid
from typing import Optional
from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession

from shared.models.entities import Message

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageRepository:
    """
    Repository for the append-only message log.

    Messages are never updated except to attach structured context, and
    never deleted. The store assigns created_at_ms; it is strictly
    increasing within a conversation.
    """

    def __init__(self, db: DBSession):
        self.db = db

    def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_ref: Optional[str] = None,
        structured_context: Optional[dict] = None,
        practice_session_id: Optional[str] = None,
        is_voice: bool = False,
    ) -> Message:
        """
        Append a message to a conversation.

        Args:
            conversation_id: Conversation the message belongs to
            role: 'user' or 'assistant'
            content: Message text
            image_ref: Object storage key of an attached image
            structured_context: Progress payload (camelCase dict)
            practice_session_id: Attached practice session
            is_voice: Whether the message came from a voice session

        Returns:
            Created Message
        """
        last_ms = (
            self.db.query(func.max(Message.created_at_ms))
            .filter(Message.conversation_id == conversation_id)
            .scalar()
        )
        created_at_ms = _now_ms()
        if last_ms is not None and created_at_ms <= last_ms:
            created_at_ms = last_ms + 1

        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at_ms=created_at_ms,
            image_ref=image_ref,
            structured_context_json=json.dumps(structured_context) if structured_context else None,
            practice_session_id=practice_session_id,
            is_voice=is_voice,
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    def list_recent(self, conversation_id: str, limit: int = 15) -> list[Message]:
        """
        Return the newest `limit` messages, oldest first.

        Args:
            conversation_id: Conversation identifier
            limit: Maximum number of messages

        Returns:
            Messages in chronological order
        """
        rows = (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at_ms.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows
