"""Chat and voice orchestration."""
from tutor.orchestration.history_assembler import HistoryAssembler, UserTurn
from tutor.orchestration.chat_session import ChatSession, ChatSessionManager
from tutor.orchestration.voice_session import VoiceSession
from tutor.orchestration.session_registry import VoiceSessionRegistry
