"""
Chat Session (streaming response controller)

Owns one conversation's text chat cycle:

    idle -> sending -> streaming -> idle      (or sending/streaming -> idle on error)

A submission is accepted only from idle; the check and the move to sending
happen synchronously in `submit()`, before anything is awaited, so two
submissions can never start two model calls. The assistant reply is
persisted exactly once, after the stream completes, and the ephemeral
streaming buffer is cleared only after that write. Cancelled or failed
cycles persist nothing.
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

from shared.models.domain import ImagePayload, MessageRecord, StructuredContext
from shared.services.anthropic_adapter import StreamComplete, StreamEvent, TextDelta
from tutor.exceptions import (
    NothingToResumeError,
    SessionBusyError,
    StateTransitionError,
    TurnCancelledError,
    TutorError,
)
from tutor.models.messages import (
    DEFAULT_IMAGE_PROMPT,
    ChatView,
    ErrorInfo,
    OptimisticMessage,
    StreamingTurn,
)
from tutor.models.session_state import CHAT_TRANSITIONS, ChatStatus
from tutor.orchestration.history_assembler import HistoryAssembler, UserTurn

logger = logging.getLogger("tutor.chat_session")


class ChatClient(Protocol):
    def stream_chat(
        self, system: str, messages: list, tools: Optional[list] = None, tool_choice: Optional[dict] = None
    ) -> AsyncIterator[StreamEvent]:
        ...


class TranscriptWriter(Protocol):
    async def append(self, conversation_id: str, role: str, content: str, **kwargs) -> MessageRecord:
        ...


_END = object()
_CANCELLED = object()

Extractor = Callable[[str], Optional[StructuredContext]]
ImageLoader = Callable[[str], Awaitable[ImagePayload]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatSession:
    """Streaming response controller for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        store: TranscriptWriter,
        assembler: HistoryAssembler,
        chat_client: ChatClient,
        extractor: Extractor,
        image_loader: Optional[ImageLoader] = None,
    ):
        self.conversation_id = conversation_id
        self.store = store
        self.assembler = assembler
        self.chat_client = chat_client
        self.extractor = extractor
        self.image_loader = image_loader

        self.status = ChatStatus.IDLE
        self.optimistic: Optional[OptimisticMessage] = None
        self.streaming_turn: Optional[StreamingTurn] = None
        self.last_error: Optional[ErrorInfo] = None
        self.last_message: Optional[MessageRecord] = None
        self._cancel_requested = False
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None

    # ─── State ────────────────────────────────────────────────────────

    def _set_status(self, new_status: ChatStatus) -> None:
        if new_status == self.status:
            return
        if new_status not in CHAT_TRANSITIONS[self.status]:
            raise StateTransitionError(self.status.value, new_status.value, "not allowed by chat cycle")
        logger.debug(f"[{self.conversation_id}] chat status {self.status.value} -> {new_status.value}")
        self.status = new_status

    def _begin(self) -> None:
        if self.status != ChatStatus.IDLE:
            raise SessionBusyError(self.conversation_id, self.status.value)
        self._set_status(ChatStatus.SENDING)
        self.last_error = None
        self._cancel_requested = False

    @property
    def is_idle(self) -> bool:
        return self.status == ChatStatus.IDLE

    # ─── Public API ───────────────────────────────────────────────────

    def submit(
        self,
        text: str,
        images: Optional[list[ImagePayload]] = None,
        image_ref: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Start a turn and return an async iterator of assistant text deltas.

        Raises:
            SessionBusyError: A cycle is already active (raised before any I/O)
        """
        images = list(images or [])
        if not text.strip():
            if not images and not image_ref:
                raise ValueError("A turn needs text or an image")
            text = DEFAULT_IMAGE_PROMPT

        self._begin()
        self.optimistic = OptimisticMessage(id=f"optimistic-{_now_ms()}", content=text)
        return self._run_cycle(text, images, image_ref, pending=None)

    def resume(self) -> AsyncIterator[str]:
        """
        Reply to the newest durable message if it is a user message awaiting a reply.

        Raises:
            SessionBusyError: A cycle is already active
        """
        self._begin()
        return self._run_cycle("", [], None, pending=True)

    async def send(self, text: str, images: Optional[list[ImagePayload]] = None, image_ref: Optional[str] = None) -> Optional[MessageRecord]:
        """Run a whole turn; returns the persisted assistant message (None if cancelled)."""
        async for _ in self.submit(text, images, image_ref):
            pass
        return self.last_message

    def cancel(self) -> bool:
        """Request cancellation of the in-flight cycle. Returns False when idle."""
        if self.status == ChatStatus.IDLE:
            return False
        self._cancel_requested = True
        if self._queue is not None:
            self._queue.put_nowait(_CANCELLED)
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
        logger.info(json.dumps({"step": "CHAT_TURN", "status": "cancel_requested", "conversation_id": self.conversation_id}))
        return True

    def view(self, durable: list[MessageRecord]) -> ChatView:
        """
        Combine durable messages with in-flight state for rendering.

        The optimistic placeholder is dropped as soon as its durable copy is
        among `durable`, so the two are never shown together.
        """
        optimistic = self.optimistic
        if optimistic is not None and optimistic.confirmed_id is not None:
            if any(m.id == optimistic.confirmed_id for m in durable):
                optimistic = None
        return ChatView(
            conversation_id=self.conversation_id,
            status=self.status,
            messages=durable,
            optimistic=optimistic,
            streaming=self.streaming_turn,
            error=self.last_error,
        )

    # ─── Cycle ────────────────────────────────────────────────────────

    async def _find_pending(self) -> MessageRecord:
        records = await self.assembler.fetch_history(self.conversation_id)
        if not records or records[-1].role != "user":
            raise NothingToResumeError(self.conversation_id)
        return records[-1]

    @staticmethod
    async def _pump(events: AsyncIterator[StreamEvent], queue: asyncio.Queue) -> None:
        """Drain the model stream into the queue; failures are forwarded, not raised here."""
        try:
            async for event in events:
                queue.put_nowait(event)
        except Exception as e:
            queue.put_nowait(e)
        else:
            queue.put_nowait(_END)

    async def _events_until_cancelled(self, events: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
        """
        Relay stream events, stopping promptly once cancellation is requested.

        The model stream is consumed by its own task so that cancelling it
        tears down the upstream request immediately.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue
        self._pump_task = asyncio.create_task(self._pump(events, queue))
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if item is _CANCELLED:
                    raise TurnCancelledError(self.conversation_id)
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if not self._pump_task.done():
                self._pump_task.cancel()
            self._pump_task = None
            self._queue = None

    async def _run_cycle(
        self,
        text: str,
        images: list[ImagePayload],
        image_ref: Optional[str],
        pending: Optional[bool],
    ) -> AsyncIterator[str]:
        start_time = time.time()
        logger.info(json.dumps({
            "step": "CHAT_TURN",
            "status": "starting",
            "conversation_id": self.conversation_id,
            "resume": bool(pending),
            "images": len(images) + (1 if image_ref else 0),
        }))

        try:
            if pending:
                user_record = await self._find_pending()
                text = user_record.content
                if user_record.image_ref and self.image_loader:
                    images = [await self.image_loader(user_record.image_ref)]
            else:
                user_record = await self.store.append(
                    self.conversation_id, "user", text, image_ref=image_ref
                )
                self.optimistic = self.optimistic.model_copy(update={"confirmed_id": user_record.id})
                if image_ref and not images and self.image_loader:
                    images = [await self.image_loader(image_ref)]

            request = await self.assembler.build(
                self.conversation_id,
                UserTurn(text=text, images=images, message_id=user_record.id),
            )
            if self._cancel_requested:
                raise TurnCancelledError(self.conversation_id)

            self.streaming_turn = StreamingTurn()
            final_text: Optional[str] = None
            events = self.chat_client.stream_chat(request.system, request.messages)
            async for event in self._events_until_cancelled(events):
                if isinstance(event, TextDelta):
                    if self.status == ChatStatus.SENDING:
                        self._set_status(ChatStatus.STREAMING)
                    self.streaming_turn.append(event.text)
                    yield event.text
                elif isinstance(event, StreamComplete):
                    final_text = event.text

            if self._cancel_requested:
                raise TurnCancelledError(self.conversation_id)

            full_text = self.streaming_turn.content or (final_text or "")
            self.streaming_turn.completed = True
            structured_context = self.extractor(full_text)

            self.last_message = await self.store.append(
                self.conversation_id,
                "assistant",
                full_text,
                structured_context=structured_context,
            )
            # Durable write is done; the buffer can go
            self.streaming_turn = None

            logger.info(json.dumps({
                "step": "CHAT_TURN",
                "status": "complete",
                "conversation_id": self.conversation_id,
                "message_id": self.last_message.id,
                "response_length": len(full_text),
                "has_structured_context": structured_context is not None,
                "duration_ms": int((time.time() - start_time) * 1000),
            }))

        except TurnCancelledError:
            self.last_message = None
            logger.info(json.dumps({
                "step": "CHAT_TURN",
                "status": "cancelled",
                "conversation_id": self.conversation_id,
                "discarded_length": len(self.streaming_turn.content) if self.streaming_turn else 0,
            }))

        except TutorError as e:
            self.last_message = None
            self.last_error = ErrorInfo.from_error(e)
            logger.error(json.dumps({
                "step": "CHAT_TURN",
                "status": "failed",
                "conversation_id": self.conversation_id,
                "error_kind": e.kind,
                "error": type(e).__name__,
            }))
            raise

        finally:
            self.streaming_turn = None
            self.optimistic = None
            self._cancel_requested = False
            self.status = ChatStatus.IDLE


class ChatSessionManager:
    """
    Process-wide registry of chat sessions, one per conversation.

    Holds at most `max_sessions` entries while older ones are idle; the
    least recently used idle sessions are dropped first. Busy sessions are
    never dropped.
    """

    def __init__(self, factory: Callable[[str], ChatSession], max_sessions: int = 256):
        self._factory = factory
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, ChatSession] = OrderedDict()

    def get(self, conversation_id: str) -> ChatSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = self._factory(conversation_id)
            self._sessions[conversation_id] = session
            self._evict_idle(keep=conversation_id)
        else:
            self._sessions.move_to_end(conversation_id)
        return session

    def _evict_idle(self, keep: str) -> None:
        excess = len(self._sessions) - self.max_sessions
        if excess <= 0:
            return
        idle = [cid for cid, s in self._sessions.items() if cid != keep and s.is_idle][:excess]
        for conversation_id in idle:
            del self._sessions[conversation_id]
        if idle:
            logger.info(f"Dropped {len(idle)} idle chat session(s)")

    def __len__(self) -> int:
        return len(self._sessions)

    def peek(self, conversation_id: str) -> Optional[ChatSession]:
        return self._sessions.get(conversation_id)

    def cancel_all(self) -> None:
        for session in self._sessions.values():
            session.cancel()
