"""
Service wiring for the API layer.

One process-wide `TutorServices` container builds clients lazily from
settings. A client whose credential is missing raises ConfigurationError
when first requested, which disables only the features that need it.
"""

import asyncio
import base64
import logging
from typing import Optional

from config import Settings, get_settings
from database import DatabaseManager, get_db_manager
from shared.models.domain import ImagePayload
from shared.services.anthropic_adapter import AnthropicAdapter
from shared.services.llm_service import LLMService
from shared.services.object_storage import ObjectStorage
from shared.services.realtime_token import RealtimeTokenIssuer
from tutor.exceptions import ConfigurationError
from tutor.orchestration.chat_session import ChatSession, ChatSessionManager
from tutor.orchestration.history_assembler import HistoryAssembler
from tutor.orchestration.session_registry import VoiceSessionRegistry
from tutor.orchestration.voice_session import VoiceSession
from tutor.prompts.tutor_prompts import VOICE_SYSTEM_PROMPT, build_chat_system_prompt
from tutor.services.context_extractor import StructuredContextExtractor
from tutor.services.practice_service import PracticeGenerator, PracticeService
from tutor.services.transcript_store import TranscriptStore
from tutor.services.whiteboard_bridge import (
    WhiteboardChannel,
    WhiteboardExportBridge,
    WhiteboardPersister,
    WhiteboardRegistry,
)

logger = logging.getLogger(__name__)


class TutorServices:
    """Lazily-built clients, stores and session registries."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager
        self.store = TranscriptStore(db_manager.session_scope)
        self.extractor = StructuredContextExtractor(settings.progress_block_key, settings.progress_block_tag)
        self.chat_assembler = HistoryAssembler(
            self.store,
            build_chat_system_prompt(settings.progress_block_key, settings.progress_block_tag),
            history_limit=settings.history_limit,
            quiz_summary_window=settings.quiz_summary_window,
        )
        self.voice_assembler = HistoryAssembler(
            self.store,
            VOICE_SYSTEM_PROMPT.render(),
            history_limit=settings.history_limit,
            quiz_summary_window=settings.quiz_summary_window,
        )
        self.chat_sessions = ChatSessionManager(self._make_chat_session, max_sessions=settings.live_conversation_limit)
        self.whiteboards = WhiteboardRegistry(
            self._make_whiteboard_channel,
            max_channels=settings.live_conversation_limit,
            is_pinned=lambda conversation_id: self.voice_sessions.get(conversation_id) is not None,
        )
        self.voice_sessions = VoiceSessionRegistry(self._make_voice_session)

        self._chat_client: Optional[AnthropicAdapter] = None
        self._speech: Optional[LLMService] = None
        self._token_issuer: Optional[RealtimeTokenIssuer] = None
        self._storage: Optional[ObjectStorage] = None

    # ─── Clients ──────────────────────────────────────────────────────

    @property
    def chat_client(self) -> AnthropicAdapter:
        if self._chat_client is None:
            if not self.settings.anthropic_api_key:
                raise ConfigurationError("anthropic_api_key", "Anthropic API key not configured")
            self._chat_client = AnthropicAdapter(
                api_key=self.settings.anthropic_api_key,
                timeout=self.settings.external_call_timeout,
                model=self.settings.chat_model,
                max_tokens=self.settings.chat_max_tokens,
            )
        return self._chat_client

    @property
    def speech(self) -> LLMService:
        if self._speech is None:
            if not self.settings.openai_api_key:
                raise ConfigurationError("openai_api_key", "OpenAI API key not configured")
            s = self.settings
            self._speech = LLMService(
                s.openai_api_key,
                transcription_model=s.transcription_model,
                transcription_language=s.transcription_language,
                tts_model=s.tts_model,
                tts_voice=s.tts_voice,
                tts_format=s.tts_format,
                vision_model=s.vision_model,
                vision_max_tokens=s.vision_max_tokens,
                max_retries=s.max_retries,
                initial_retry_delay=s.initial_retry_delay,
                timeout=s.external_call_timeout,
            )
        return self._speech

    @property
    def token_issuer(self) -> RealtimeTokenIssuer:
        if self._token_issuer is None:
            self._token_issuer = RealtimeTokenIssuer(
                api_key=self.settings.openai_api_key,
                model=self.settings.realtime_model,
                url=self.settings.realtime_token_url,
                timeout=self.settings.external_call_timeout,
            )
        return self._token_issuer

    @property
    def storage(self) -> ObjectStorage:
        if self._storage is None:
            self._storage = ObjectStorage(self.settings.aws_s3_bucket, self.settings.aws_region)
        return self._storage

    @property
    def practice_generator(self) -> PracticeGenerator:
        return PracticeGenerator(
            self.chat_client,
            context_messages=self.settings.practice_context_messages,
            context_chars=self.settings.practice_context_chars,
        )

    @property
    def practice(self) -> PracticeService:
        generator = self.practice_generator if self.settings.anthropic_api_key else None
        return PracticeService(self.store, self.db_manager.session_scope, generator)

    async def load_image(self, image_ref: str) -> ImagePayload:
        """Fetch an uploaded image by its object key."""
        loop = asyncio.get_running_loop()
        data, content_type = await loop.run_in_executor(None, self.storage.download, image_ref)
        return ImagePayload(media_type=content_type, data=base64.b64encode(data).decode("ascii"))

    # ─── Factories ────────────────────────────────────────────────────

    def _make_chat_session(self, conversation_id: str) -> ChatSession:
        return ChatSession(
            conversation_id,
            store=self.store,
            assembler=self.chat_assembler,
            chat_client=self.chat_client,
            extractor=self.extractor,
            image_loader=self.load_image,
        )

    def _make_whiteboard_channel(self, conversation_id: str) -> WhiteboardChannel:
        bridge = WhiteboardExportBridge(conversation_id)
        persister = WhiteboardPersister(
            conversation_id,
            bridge,
            self.db_manager.session_scope,
            quiet_period=self.settings.whiteboard_autosave_seconds,
        )
        return WhiteboardChannel(bridge, persister)

    def _make_voice_session(self, conversation_id: str) -> VoiceSession:
        return VoiceSession(
            conversation_id,
            speech=self.speech,
            chat_client=self.chat_client,
            store=self.store,
            assembler=self.voice_assembler,
            bridge=self.whiteboards.get(conversation_id).bridge,
            issue_token=self.token_issuer.issue,
            speech_rms_threshold=self.settings.speech_rms_threshold,
            image_max_size=self.settings.voice_image_max_size,
            image_quality=self.settings.voice_image_quality,
            audio_format=self.settings.tts_format,
            spoken_text=self.extractor.strip,
        )

    async def shutdown(self) -> None:
        await self.voice_sessions.close_all()
        self.chat_sessions.cancel_all()
        await self.whiteboards.flush_all()


# Global services instance
_services: Optional[TutorServices] = None


def get_services() -> TutorServices:
    """Get or create the global services container (FastAPI dependency)."""
    global _services
    if _services is None:
        _services = TutorServices(get_settings(), get_db_manager())
    return _services


def reset_services():
    """Reset the global services container (useful for testing)."""
    global _services
    _services = None
