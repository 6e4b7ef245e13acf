"""
History Assembler

Builds the exact ordered message list sent to the chat model for one turn.
History is always re-read from the transcript store at build time; callers
never pass their own cached copy. Historical turns are flattened to text,
and images ride only on the final entry when it is the current user turn.
"""

import json
import logging
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from shared.models.domain import (
    ChatMessage,
    ImagePart,
    ImagePayload,
    MessageRecord,
    MultimodalContent,
    PracticeSessionRecord,
    TextContent,
    TextPart,
)

logger = logging.getLogger("tutor.history_assembler")

MAX_TURN_IMAGES = 2


class HistorySource(Protocol):
    async def list_recent(self, conversation_id: str, limit: int = 15) -> list[MessageRecord]:
        ...


class UserTurn(BaseModel):
    """The just-submitted user message."""
    text: str
    images: list[ImagePayload] = Field(default_factory=list, max_length=MAX_TURN_IMAGES)
    message_id: Optional[str] = None  # durable id once appended


class AssembledRequest(BaseModel):
    """What the chat client needs for one call."""
    system: str
    messages: list[ChatMessage]
    images: list[ImagePayload] = Field(default_factory=list)


def format_practice_summary(session: PracticeSessionRecord) -> str:
    """Deterministic quiz summary appended to the message carrying the session."""
    lines = [
        f"\n\n[Practice Session: {session.topic}]",
        f"Score: {session.score}/{session.answered_count}",
    ]
    for i, problem in enumerate(session.problems, start=1):
        if problem.student_answer is not None:
            status = f"answered {problem.student_answer}"
            status += " - correct" if problem.is_answer_correct(problem.student_answer) else " - incorrect"
        else:
            status = "not answered"
        lines.append(f"  Problem {i}: {problem.problem} ({status})")
    return "\n".join(lines) + "\n"


def build_final_content(text: str, images: list[ImagePayload]) -> TextContent | MultimodalContent:
    """Image part(s) first, then the text part; plain text when there are no images."""
    if not images:
        return TextContent(text=text)
    if len(images) > MAX_TURN_IMAGES:
        raise ValueError(f"At most {MAX_TURN_IMAGES} images may be attached to a turn")
    parts: list = [ImagePart(image=image) for image in images]
    parts.append(TextPart(text=text))
    return MultimodalContent(parts=parts)


def attach_images_to_final(messages: list[ChatMessage], images: list[ImagePayload]) -> list[ChatMessage]:
    """
    Apply the multimodal rule to an already-ordered message list.

    Every entry is flattened to text; images go on the last entry only if
    it is a user message. Used by the stateless chat endpoint.
    """
    flattened = [ChatMessage.text(m.role, m.content.text) for m in messages]
    if images and flattened and flattened[-1].role == "user":
        last = flattened[-1]
        flattened[-1] = ChatMessage(role="user", content=build_final_content(last.content.text, images))
    return flattened


class HistoryAssembler:
    """Assembles model requests from fresh durable history plus the current turn."""

    def __init__(
        self,
        store: HistorySource,
        system_prompt: str,
        history_limit: int = 15,
        quiz_summary_window: Optional[int] = None,
    ):
        self.store = store
        self.system_prompt = system_prompt
        self.history_limit = history_limit
        self.quiz_summary_window = quiz_summary_window

    def _history_entry(self, record: MessageRecord, with_summary: bool) -> ChatMessage:
        text = record.content
        if with_summary and record.practice_session is not None:
            text += format_practice_summary(record.practice_session)
        return ChatMessage.text(record.role, text)

    def flatten_history(self, records: list[MessageRecord]) -> list[ChatMessage]:
        """Durable records as text-only model messages, with quiz summaries appended."""
        window_start = 0
        if self.quiz_summary_window is not None:
            window_start = max(0, len(records) - self.quiz_summary_window)
        return [
            self._history_entry(record, with_summary=index >= window_start)
            for index, record in enumerate(records)
        ]

    async def fetch_history(self, conversation_id: str, extra: int = 0) -> list[MessageRecord]:
        """Fresh read of recent durable history. Errors propagate to the caller."""
        return await self.store.list_recent(conversation_id, self.history_limit + extra)

    async def build(self, conversation_id: str, turn: UserTurn) -> AssembledRequest:
        """
        Build the request for one turn.

        Args:
            conversation_id: Conversation identifier
            turn: The current user turn (its durable copy, if any, is not repeated)

        Returns:
            AssembledRequest with system prompt, ordered messages and images

        Raises:
            HistoryFetchError: The transcript store could not be read
        """
        if turn.message_id is None:
            records = await self.fetch_history(conversation_id)
        else:
            # The current turn is already durable; read one more so history keeps its full window
            records = await self.fetch_history(conversation_id, extra=1)
            records = [r for r in records if r.id != turn.message_id][-self.history_limit:]

        messages = self.flatten_history(records)
        messages.append(ChatMessage(role="user", content=build_final_content(turn.text, turn.images)))

        logger.info(json.dumps({
            "step": "HISTORY_ASSEMBLED",
            "conversation_id": conversation_id,
            "history_messages": len(records),
            "images": len(turn.images),
        }))
        return AssembledRequest(system=self.system_prompt, messages=messages, images=list(turn.images))
