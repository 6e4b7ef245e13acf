"""
Voice Session Registry

Process-wide map of live voice sessions, one per conversation. A client
that connects while a session exists attaches to it instead of creating a
duplicate; the session is torn down only on explicit exit (or shutdown),
never when an attachment merely drops.
"""

import json
import logging
from typing import Callable, Optional

from tutor.orchestration.voice_session import VoiceSession

logger = logging.getLogger("tutor.session_registry")


class _Entry:
    def __init__(self, session: VoiceSession):
        self.session = session
        self.refs = 0


class VoiceSessionRegistry:
    """Reference-counted voice sessions keyed by conversation id."""

    def __init__(self, factory: Callable[[str], VoiceSession]):
        self._factory = factory
        self._entries: dict[str, _Entry] = {}

    def acquire_or_attach(self, conversation_id: str) -> tuple[VoiceSession, bool]:
        """
        Get the conversation's session, creating it if none exists.

        Returns:
            (session, created) where created is False when an existing
            session was attached to
        """
        entry = self._entries.get(conversation_id)
        created = False
        if entry is None or entry.session.is_closed:
            entry = _Entry(self._factory(conversation_id))
            self._entries[conversation_id] = entry
            created = True
        entry.refs += 1

        logger.info(json.dumps({
            "step": "VOICE_SESSION",
            "status": "created" if created else "attached",
            "conversation_id": conversation_id,
            "refs": entry.refs,
        }))
        return entry.session, created

    async def release(self, conversation_id: str, final: bool = False) -> None:
        """
        Drop one attachment.

        With `final` (explicit exit) the session is closed and removed.
        Otherwise, when the last attachment goes, the session only falls
        back to initializing and stays registered for re-attachment.
        """
        entry = self._entries.get(conversation_id)
        if entry is None:
            return
        entry.refs = max(0, entry.refs - 1)

        if final:
            del self._entries[conversation_id]
            await entry.session.close()
            logger.info(json.dumps({"step": "VOICE_SESSION", "status": "closed", "conversation_id": conversation_id}))
        elif entry.refs == 0:
            await entry.session.on_disconnected()
            logger.info(json.dumps({"step": "VOICE_SESSION", "status": "detached", "conversation_id": conversation_id}))

    def get(self, conversation_id: str) -> Optional[VoiceSession]:
        entry = self._entries.get(conversation_id)
        return entry.session if entry else None

    def refs(self, conversation_id: str) -> int:
        entry = self._entries.get(conversation_id)
        return entry.refs if entry else 0

    async def close_all(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await entry.session.close()
