"""Shared models."""
from shared.models.domain import (
    ChatMessage,
    ConversationRecord,
    ImagePayload,
    MessageRecord,
    PracticeProblem,
    PracticeSessionRecord,
    StructuredContext,
)
