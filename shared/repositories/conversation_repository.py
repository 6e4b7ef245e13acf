"""Conversation data access layer."""
import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session as DBSession

from shared.models.entities import Conversation

logger = logging.getLogger(__name__)


class ConversationRepository:
    """Repository for conversation CRUD operations."""

    def __init__(self, db: DBSession):
        self.db = db

    def create(self, title: Optional[str] = None, conversation_id: Optional[str] = None) -> Conversation:
        """Create a new conversation."""
        now = datetime.utcnow()
        conversation = Conversation(
            id=conversation_id or str(uuid.uuid4()),
            title=title,
            created_at=now,
            last_active_at=now,
        )
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    def get_by_id(self, conversation_id: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def list_recent(self, limit: int = 50) -> list[Conversation]:
        """Conversations ordered by most recent activity."""
        return (
            self.db.query(Conversation)
            .order_by(Conversation.last_active_at.desc())
            .limit(limit)
            .all()
        )

    def touch(self, conversation_id: str) -> None:
        """Bump last_active_at; called on every append."""
        conversation = self.get_by_id(conversation_id)
        if conversation:
            conversation.last_active_at = datetime.utcnow()
            self.db.commit()
