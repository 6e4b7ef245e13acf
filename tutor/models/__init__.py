"""Tutor models."""
from tutor.models.session_state import ChatStatus, VoiceState
from tutor.models.messages import ChatView, ErrorInfo, OptimisticMessage, StreamingTurn
