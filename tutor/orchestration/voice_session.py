"""
Voice Session Orchestrator

Runs one continuous spoken tutoring conversation:

    initializing -> connecting -> idle -> listening -> thinking -> speaking -> idle ...

Connected states fall back to initializing when the client connection
drops, and any state moves to closed on explicit exit. Each client
callback maps to a state transition plus, where needed, cancellation of
the task backing the previous state. Speech start always wins: playback
is stopped and the in-flight turn is cancelled (and awaited) before the
session listens again, so two assistant voices never overlap.

Output goes to an outbox queue that the transport drains. A re-attaching
client gets a fresh outbox; the previous one stops receiving.
"""

import asyncio
import base64
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from shared.models.domain import MessageRecord
from shared.services.anthropic_adapter import (
    StreamComplete,
    StreamEvent,
    TextDelta,
    tool_round_messages,
)
from tutor.exceptions import (
    StateTransitionError,
    TutorError,
    VoiceSessionActiveError,
)
from tutor.models.messages import (
    ErrorInfo,
    ServerVoiceMessage,
    create_error_message,
    create_state_message,
    create_transcript_message,
)
from tutor.models.session_state import VOICE_TRANSITIONS, VoiceState, is_connected
from tutor.orchestration.history_assembler import HistoryAssembler, UserTurn
from tutor.services.whiteboard_bridge import WhiteboardExportBridge
from tutor.utils.audio_utils import float32_samples, float32_to_wav, is_silence

logger = logging.getLogger("tutor.voice_session")

VIEW_WHITEBOARD_TOOL = {
    "name": "view_whiteboard",
    "description": (
        "Look at the student's whiteboard to see what they have drawn or written. "
        "Use this when the student mentions the whiteboard or you need to see their work."
    ),
    "input_schema": {"type": "object", "properties": {}, "required": []},
}

WHITEBOARD_EMPTY_RESULT = "The whiteboard is currently empty."
WHITEBOARD_SUCCESS_RESULT = "I can see your whiteboard now. Let me analyze what you've written..."
WHITEBOARD_FAILURE_RESULT = "I had trouble viewing the whiteboard. Please try again."
WHITEBOARD_CONTEXT_FORMAT = "[WHITEBOARD CONTENT: {description}]"

MAX_TOOL_ROUNDS = 2
TOOL_CHOICE_NONE = {"type": "none"}

AUDIO_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "opus": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
    "pcm": "audio/pcm",
}


class SpeechService(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        ...

    async def synthesize(self, text: str) -> bytes:
        ...

    async def describe_image(self, image_data_url: str) -> str:
        ...


class VoiceTranscript(Protocol):
    async def append(self, conversation_id: str, role: str, content: str, **kwargs) -> MessageRecord:
        ...


class ChatClient(Protocol):
    def stream_chat(
        self, system: str, messages: list, tools: Optional[list] = None, tool_choice: Optional[dict] = None
    ) -> AsyncIterator[StreamEvent]:
        ...


TokenIssuer = Callable[[], Awaitable[str]]


class VoiceSession:
    """Live voice session for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        speech: SpeechService,
        chat_client: ChatClient,
        store: VoiceTranscript,
        assembler: HistoryAssembler,
        bridge: WhiteboardExportBridge,
        issue_token: TokenIssuer,
        *,
        speech_rms_threshold: float = 0.005,
        image_max_size: int = 512,
        image_quality: int = 80,
        audio_format: str = "mp3",
        spoken_text: Optional[Callable[[str], str]] = None,
    ):
        self.conversation_id = conversation_id
        self.speech = speech
        self.chat_client = chat_client
        self.store = store
        self.assembler = assembler
        self.bridge = bridge
        self.issue_token = issue_token
        self.speech_rms_threshold = speech_rms_threshold
        self.image_max_size = image_max_size
        self.image_quality = image_quality
        self.audio_mime_type = AUDIO_MIME_TYPES.get(audio_format, "audio/mpeg")
        self.spoken_text = spoken_text or (lambda text: text)

        self.state = VoiceState.INITIALIZING
        self.token: Optional[str] = None
        self.last_error: Optional[ErrorInfo] = None
        self.whiteboard_note: Optional[str] = None
        self._note_hash: Optional[str] = None
        self.outbox: asyncio.Queue = asyncio.Queue()

        self._starting = False
        self._turn_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._description: Optional[tuple[str, str]] = None

    # ─── Output ───────────────────────────────────────────────────────

    def attach(self) -> asyncio.Queue:
        """Give a (re)connecting client its own outbox, primed with the current state."""
        self.outbox = asyncio.Queue()
        self._emit(create_state_message(self.state))
        if is_connected(self.state) and self.token:
            self._emit(ServerVoiceMessage(type="session_ready", token=self.token))
        return self.outbox

    def _emit(self, message: ServerVoiceMessage) -> None:
        self.outbox.put_nowait(message)

    def _stop_playback(self) -> None:
        self._emit(ServerVoiceMessage(type="stop_audio"))

    def _play(self, audio: bytes) -> None:
        self._emit(ServerVoiceMessage(
            type="audio",
            audio=base64.b64encode(audio).decode("ascii"),
            mime_type=self.audio_mime_type,
        ))

    def _fail(self, error: TutorError) -> None:
        self.last_error = ErrorInfo.from_error(error)
        self._emit(create_error_message(error))

    # ─── State ────────────────────────────────────────────────────────

    def _transition(self, new_state: VoiceState) -> None:
        if new_state == self.state:
            return
        if new_state not in VOICE_TRANSITIONS[self.state]:
            raise StateTransitionError(self.state.value, new_state.value, "not allowed by voice session")
        logger.info(json.dumps({
            "step": "VOICE_STATE",
            "conversation_id": self.conversation_id,
            "from": self.state.value,
            "to": new_state.value,
        }))
        self.state = new_state
        self._emit(create_state_message(new_state))

    @property
    def is_connected(self) -> bool:
        return is_connected(self.state)

    @property
    def is_closed(self) -> bool:
        return self.state == VoiceState.CLOSED

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self.is_closed

    # ─── Lifecycle ────────────────────────────────────────────────────

    def _claim_start(self) -> None:
        if self._starting or self.state != VoiceState.INITIALIZING:
            raise VoiceSessionActiveError(self.conversation_id)
        self._starting = True

    async def start(self) -> bool:
        """
        Connect the session: issue the ephemeral token, then go idle.

        Re-entrant calls while the session is connecting or connected are
        skipped. A token failure is surfaced and leaves the session in
        initializing; there is no automatic retry.

        Returns:
            True if this call established the connection
        """
        try:
            self._claim_start()
        except VoiceSessionActiveError:
            logger.info(f"[{self.conversation_id}] voice session already {self.state.value}; start skipped")
            return False

        try:
            self._transition(VoiceState.CONNECTING)
            try:
                token = await self.issue_token()
            except TutorError as e:
                logger.error(f"[{self.conversation_id}] voice token issuance failed: {type(e).__name__}")
                self._fail(e)
                self._transition(VoiceState.INITIALIZING)
                return False

            if self.is_closed:
                return False
            self.token = token
            self.last_error = None
            self._transition(VoiceState.IDLE)
            self._emit(ServerVoiceMessage(type="session_ready", token=token))
            return True
        finally:
            self._starting = False

    async def on_disconnected(self) -> None:
        """Client connection dropped without an exit; keep the session for re-attachment."""
        await self._cancel_turn()
        if self.is_connected:
            self._transition(VoiceState.INITIALIZING)

    async def close(self) -> None:
        """Explicit exit: stop playback, cancel work, release the session."""
        if self.is_closed:
            return
        await self._cancel_turn()
        self._stop_playback()
        self._transition(VoiceState.CLOSED)

    # ─── Client events ────────────────────────────────────────────────

    async def on_speech_started(self) -> None:
        """Barge-in: the user always wins over a still-responding assistant."""
        if not self.is_connected:
            logger.debug(f"[{self.conversation_id}] speech start ignored in state {self.state.value}")
            return
        interrupted = self.state in (VoiceState.THINKING, VoiceState.SPEAKING)
        self._generation += 1
        self._stop_playback()
        await self._cancel_turn()
        if interrupted:
            logger.info(json.dumps({
                "step": "VOICE_BARGE_IN",
                "conversation_id": self.conversation_id,
            }))
        self._transition(VoiceState.LISTENING)

    async def on_speech_stopped(
        self,
        audio: bytes,
        mime_type: str = "audio/webm",
        sample_rate: Optional[int] = None,
        pcm_format: Optional[str] = None,
    ) -> None:
        """Captured utterance is complete; start the turn that answers it."""
        if not self.is_connected:
            return
        await self._cancel_turn()
        if self.state == VoiceState.SPEAKING:
            self._stop_playback()
            self._transition(VoiceState.LISTENING)
        self._generation += 1
        self._transition(VoiceState.THINKING)
        self._turn_task = asyncio.create_task(
            self._run_turn(self._generation, audio, mime_type, sample_rate, pcm_format)
        )

    def on_playback_finished(self) -> None:
        if self.state == VoiceState.SPEAKING:
            self._transition(VoiceState.IDLE)

    async def wait_for_turn(self) -> None:
        """Wait for the current turn task, if any."""
        task = self._turn_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _cancel_turn(self) -> None:
        task = self._turn_task
        self._turn_task = None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # ─── Turn ─────────────────────────────────────────────────────────

    def _prepare_audio(self, audio: bytes, mime_type: str, sample_rate: Optional[int], pcm_format: Optional[str]) -> Optional[tuple[bytes, str]]:
        """Gate silence and package raw PCM; returns None for silence."""
        if pcm_format != "f32":
            return audio, mime_type
        samples = float32_samples(audio)
        if is_silence(samples, self.speech_rms_threshold):
            return None
        return float32_to_wav(samples, sample_rate or 16000), "audio/wav"

    async def _run_turn(
        self,
        generation: int,
        audio: bytes,
        mime_type: str,
        sample_rate: Optional[int],
        pcm_format: Optional[str],
    ) -> None:
        start_time = time.time()
        try:
            prepared = self._prepare_audio(audio, mime_type, sample_rate, pcm_format)
            if prepared is None:
                logger.info(f"[{self.conversation_id}] captured audio below speech threshold; ignored")
                self._transition(VoiceState.IDLE)
                return

            text = await self.speech.transcribe(*prepared)
            if not self._is_current(generation):
                return
            if not text.strip():
                self._transition(VoiceState.IDLE)
                return

            user_record = await self.store.append(self.conversation_id, "user", text, is_voice=True)
            self._emit(create_transcript_message("user", text))

            reply = await self._generate_reply(generation, text, user_record.id)
            if not self._is_current(generation):
                return
            if not reply:
                self._transition(VoiceState.IDLE)
                return

            await self.store.append(self.conversation_id, "assistant", reply, is_voice=True)
            self._emit(create_transcript_message("assistant", reply))

            spoken = self.spoken_text(reply)
            if not spoken:
                self._transition(VoiceState.IDLE)
                return
            speech = await self.speech.synthesize(spoken)
            if not self._is_current(generation):
                return
            self._transition(VoiceState.SPEAKING)
            self._play(speech)

            logger.info(json.dumps({
                "step": "VOICE_TURN",
                "status": "complete",
                "conversation_id": self.conversation_id,
                "response_length": len(reply),
                "duration_ms": int((time.time() - start_time) * 1000),
            }))

        except asyncio.CancelledError:
            logger.info(json.dumps({
                "step": "VOICE_TURN",
                "status": "cancelled",
                "conversation_id": self.conversation_id,
            }))
            raise

        except ValueError as e:
            logger.warning(f"[{self.conversation_id}] voice turn skipped: {e}")
            if self._is_current(generation):
                self._transition(VoiceState.IDLE)

        except TutorError as e:
            logger.error(json.dumps({
                "step": "VOICE_TURN",
                "status": "failed",
                "conversation_id": self.conversation_id,
                "error_kind": e.kind,
                "error": type(e).__name__,
            }))
            if self._is_current(generation):
                self._fail(e)
                self._transition(VoiceState.IDLE)

        except Exception as e:
            logger.exception(f"[{self.conversation_id}] voice turn crashed: {type(e).__name__}")
            if self._is_current(generation):
                self._fail(TutorError(f"Voice turn crashed: {type(e).__name__}"))
                self._transition(VoiceState.IDLE)

    async def _generate_reply(self, generation: int, text: str, message_id: str) -> str:
        """Model call with the whiteboard tool; returns the reply text ('' if stale)."""
        note = self._current_whiteboard_note()
        if note:
            text = f"{note}\n\n{text}"
        request = await self.assembler.build(
            self.conversation_id, UserTurn(text=text, message_id=message_id)
        )
        messages: list[Any] = list(request.messages)
        reply_parts: list[str] = []

        for round_index in range(MAX_TOOL_ROUNDS + 1):
            if not self._is_current(generation):
                return ""
            # Last round keeps the tool declared (history holds tool blocks) but forbids calling it
            tool_choice = TOOL_CHOICE_NONE if round_index == MAX_TOOL_ROUNDS else None
            complete: Optional[StreamComplete] = None
            async for event in self.chat_client.stream_chat(
                request.system, messages, tools=[VIEW_WHITEBOARD_TOOL], tool_choice=tool_choice
            ):
                if not self._is_current(generation):
                    return ""
                if isinstance(event, TextDelta):
                    reply_parts.append(event.text)
                elif isinstance(event, StreamComplete):
                    complete = event

            if complete is None or not complete.tool_calls:
                break

            results: dict[str, str] = {}
            injected: Optional[str] = None
            for call in complete.tool_calls:
                if call.name == VIEW_WHITEBOARD_TOOL["name"]:
                    result, note = await self.view_whiteboard()
                    results[call.id] = result
                    injected = note or injected
                else:
                    results[call.id] = f"Unknown tool: {call.name}"
            messages.extend(tool_round_messages(complete, results, extra_text=injected))

        return "".join(reply_parts).strip()

    # ─── Tool ─────────────────────────────────────────────────────────

    def _current_whiteboard_note(self) -> Optional[str]:
        """Last whiteboard description, dropped once the canvas changed or was cleared."""
        if self.whiteboard_note is None:
            return None
        if not self.bridge.has_content or self.bridge.current_hash != self._note_hash:
            self.whiteboard_note = None
            self._note_hash = None
        return self.whiteboard_note

    async def view_whiteboard(self) -> tuple[str, Optional[str]]:
        """
        Handle the view-whiteboard tool call.

        The description is injected as side-channel context for later turns
        (it does not by itself prompt a reply).

        Returns:
            (tool result text, injected context text or None)
        """
        if not self.bridge.has_content:
            return WHITEBOARD_EMPTY_RESULT, None

        try:
            export = await self.bridge.export_if_changed(self.image_max_size, self.image_quality)
            if export is None:
                export = self.bridge.last_export
            if export is None:
                return WHITEBOARD_EMPTY_RESULT, None

            if self._description is not None and self._description[0] == export.content_hash:
                description = self._description[1]
            else:
                description = await self.speech.describe_image(export.data_url)
                self._description = (export.content_hash, description)
        except TutorError as e:
            logger.error(f"[{self.conversation_id}] whiteboard view failed: {type(e).__name__}")
            return WHITEBOARD_FAILURE_RESULT, None

        note = WHITEBOARD_CONTEXT_FORMAT.format(description=description)
        self.whiteboard_note = note
        self._note_hash = export.content_hash
        logger.info(json.dumps({
            "step": "VOICE_TOOL",
            "tool": "view_whiteboard",
            "conversation_id": self.conversation_id,
            "description_length": len(description),
        }))
        return WHITEBOARD_SUCCESS_RESULT, note
