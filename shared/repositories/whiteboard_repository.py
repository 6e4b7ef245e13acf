"""Whiteboard state data access layer."""
import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session as DBSession

from shared.models.entities import WhiteboardState

logger = logging.getLogger(__name__)


class WhiteboardRepository:
    """Repository for the per-conversation whiteboard snapshot."""

    def __init__(self, db: DBSession):
        self.db = db

    def get(self, conversation_id: str) -> Optional[WhiteboardState]:
        return (
            self.db.query(WhiteboardState)
            .filter(WhiteboardState.conversation_id == conversation_id)
            .first()
        )

    def upsert(
        self,
        conversation_id: str,
        snapshot_json: str,
        content_hash: str,
        thumbnail_ref: Optional[str] = None,
    ) -> WhiteboardState:
        """Insert or replace the conversation's snapshot."""
        state = self.get(conversation_id)
        if state is None:
            state = WhiteboardState(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                snapshot_json=snapshot_json,
                content_hash=content_hash,
                thumbnail_ref=thumbnail_ref,
                updated_at=datetime.utcnow(),
            )
            self.db.add(state)
        else:
            state.snapshot_json = snapshot_json
            state.content_hash = content_hash
            if thumbnail_ref is not None:
                state.thumbnail_ref = thumbnail_ref
            state.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(state)
        logger.info(f"Whiteboard snapshot saved for conversation {conversation_id}")
        return state
