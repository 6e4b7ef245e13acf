"""Shared repositories."""
from shared.repositories.conversation_repository import ConversationRepository
from shared.repositories.message_repository import MessageRepository
from shared.repositories.practice_repository import PracticeRepository
from shared.repositories.whiteboard_repository import WhiteboardRepository
