"""
Message Models

In-flight chat state, HTTP DTOs and the voice WebSocket protocol.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from shared.models.domain import MessageRecord, StructuredContext
from tutor.exceptions import TutorError
from tutor.models.session_state import ChatStatus, VoiceState

DEFAULT_IMAGE_PROMPT = "Please help me with this problem"


class ErrorInfo(BaseModel):
    """UI-facing error indicator."""

    kind: str
    message: str
    retryable: bool = False

    @classmethod
    def from_error(cls, error: TutorError) -> "ErrorInfo":
        return cls(kind=error.kind, message=error.user_message, retryable=error.retryable)


class OptimisticMessage(BaseModel):
    """UI-only copy of a just-submitted user message."""

    id: str
    role: Literal["user"] = "user"
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    is_optimistic: bool = True
    confirmed_id: Optional[str] = Field(default=None, description="Durable message id once appended")


class StreamingTurn(BaseModel):
    """In-flight assistant response, owned by the chat session until persisted."""

    content: str = ""
    deltas: list[str] = Field(default_factory=list)
    completed: bool = False

    def append(self, delta: str) -> None:
        self.deltas.append(delta)
        self.content += delta


class ChatView(BaseModel):
    """What the UI renders: durable transcript plus in-flight state."""

    conversation_id: str
    status: ChatStatus
    messages: list[MessageRecord]
    optimistic: Optional[OptimisticMessage] = None
    streaming: Optional[StreamingTurn] = None
    error: Optional[ErrorInfo] = None


# HTTP DTOs

class ChatRequestMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Body of the stateless chat endpoint."""

    messages: list[ChatRequestMessage] = Field(min_length=1)
    image: Optional[str] = Field(default=None, description="Data URL attached to the final user message")


class TurnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    image_ref: Optional[str] = Field(default=None, alias="imageRef")
    image_data_url: Optional[str] = Field(default=None, alias="imageDataUrl")
    include_whiteboard: bool = Field(default=False, alias="includeWhiteboard")


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None


class ConversationResponse(BaseModel):
    id: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None


class AssistantMessageResponse(BaseModel):
    id: str
    content: str
    structured_context: Optional[StructuredContext] = None


# Voice WebSocket Protocol

class ClientVoiceMessage(BaseModel):
    """Client -> server control frame."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["speech_started", "speech_stopped", "playback_finished", "whiteboard", "exit"]
    audio: Optional[str] = Field(default=None, description="Base64 audio for speech_stopped")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    format: Optional[Literal["f32"]] = Field(default=None, description="Raw float32 PCM instead of an encoded file")
    sample_rate: Optional[int] = Field(default=None, alias="sampleRate")
    snapshot: Optional[str] = Field(default=None, description="Canvas serialization for whiteboard frames")
    image: Optional[str] = Field(default=None, description="Client-rendered canvas PNG (data URL)")


class ServerVoiceMessage(BaseModel):
    """Server -> client frame."""

    type: Literal["state", "session_ready", "transcript", "audio", "stop_audio", "error"]
    state: Optional[VoiceState] = None
    token: Optional[str] = None
    role: Optional[Literal["user", "assistant"]] = None
    text: Optional[str] = None
    audio: Optional[str] = None
    mime_type: Optional[str] = None
    error: Optional[ErrorInfo] = None


# Factory Functions

def create_state_message(state: VoiceState) -> ServerVoiceMessage:
    return ServerVoiceMessage(type="state", state=state)


def create_transcript_message(role: Literal["user", "assistant"], text: str) -> ServerVoiceMessage:
    return ServerVoiceMessage(type="transcript", role=role, text=text)


def create_error_message(error: TutorError) -> ServerVoiceMessage:
    return ServerVoiceMessage(type="error", error=ErrorInfo.from_error(error))
