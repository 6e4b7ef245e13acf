"""Unit tests for tutor/orchestration/chat_session.py: ChatSession, ChatSessionManager."""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.models.domain import ImagePayload
from shared.services.anthropic_adapter import StreamComplete, TextDelta
from tests.helpers import FakeTranscript
from tutor.exceptions import (
    HistoryFetchError,
    LLMServiceError,
    NothingToResumeError,
    SessionBusyError,
)
from tutor.models.messages import DEFAULT_IMAGE_PROMPT
from tutor.models.session_state import ChatStatus
from tutor.orchestration.chat_session import ChatSession, ChatSessionManager
from tutor.orchestration.history_assembler import HistoryAssembler
from tutor.services.context_extractor import StructuredContextExtractor

PROGRESS_BLOCK = "```json\n" + json.dumps({
    "version": 1,
    "problemContext": {
        "currentProblem": "Solve 2x+5=13",
        "currentStep": 1,
        "totalSteps": 3,
        "problemType": "linear_equation",
        "stepsCompleted": [],
    },
}) + "\n```"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeChatClient:
    """Streams scripted deltas; optionally blocks or fails after them."""

    def __init__(self, deltas=("Let's ", "work ", "through it."), fail_with=None, block=False):
        self.deltas = list(deltas)
        self.fail_with = fail_with
        self.block = block
        self.calls = []
        self.release = asyncio.Event()

    async def stream_chat(self, system, messages, tools=None):
        self.calls.append(messages)
        for delta in self.deltas:
            yield TextDelta(text=delta)
        if self.fail_with:
            raise self.fail_with
        if self.block:
            await self.release.wait()
        yield StreamComplete(text="".join(self.deltas))


def _make_session(client=None, store=None, image_loader=None) -> ChatSession:
    store = store or FakeTranscript()
    return ChatSession(
        "conv-1",
        store=store,
        assembler=HistoryAssembler(store, "SYSTEM"),
        chat_client=client or FakeChatClient(),
        extractor=StructuredContextExtractor(),
        image_loader=image_loader,
    )


async def _collect(stream) -> list[str]:
    return [chunk async for chunk in stream]


# ---------------------------------------------------------------------------
# Tests: complete cycle
# ---------------------------------------------------------------------------

class TestCompleteCycle:
    @pytest.mark.asyncio
    async def test_streams_then_persists_reply(self):
        session = _make_session()

        chunks = await _collect(session.submit("Solve 2x+5=13"))

        assert "".join(chunks) == "Let's work through it."
        roles = [r.role for r in session.store.records]
        assert roles == ["user", "assistant"]
        assert session.store.records[1].content == "Let's work through it."
        assert session.status == ChatStatus.IDLE
        assert session.streaming_turn is None
        assert session.optimistic is None

    @pytest.mark.asyncio
    async def test_structured_context_attached_to_reply(self):
        client = FakeChatClient(deltas=["What do we know?\n\n", PROGRESS_BLOCK])
        session = _make_session(client)

        message = await session.send("Solve 2x+5=13")

        assert message.structured_context is not None
        assert message.structured_context.total_steps == 3
        assert message.structured_context.current_step == 1

    @pytest.mark.asyncio
    async def test_first_request_contains_only_current_turn(self):
        client = FakeChatClient()
        session = _make_session(client)

        await session.send("Solve 2x+5=13")

        sent = client.calls[0]
        assert len(sent) == 1
        assert sent[0].role == "user"
        assert sent[0].content.text == "Solve 2x+5=13"

    @pytest.mark.asyncio
    async def test_reply_persisted_before_buffer_cleared(self):
        session = _make_session()
        seen = {}

        def _on_append(role):
            if role == "assistant":
                seen["buffer"] = session.streaming_turn

        session.store.on_append = _on_append
        await session.send("hi")

        assert seen["buffer"] is not None
        assert seen["buffer"].completed is True
        assert session.streaming_turn is None

    @pytest.mark.asyncio
    async def test_status_moves_to_streaming_on_first_delta(self):
        session = _make_session()
        stream = session.submit("hi")
        assert session.status == ChatStatus.SENDING

        await stream.__anext__()
        assert session.status == ChatStatus.STREAMING

        async for _ in stream:
            pass
        assert session.status == ChatStatus.IDLE


# ---------------------------------------------------------------------------
# Tests: at most one active cycle
# ---------------------------------------------------------------------------

class TestBusyRejection:
    @pytest.mark.asyncio
    async def test_second_submit_rejected_before_any_io(self):
        client = FakeChatClient()
        session = _make_session(client)

        first = session.submit("first")
        with pytest.raises(SessionBusyError):
            session.submit("second")

        assert client.calls == []
        assert session.store.records == []
        await _collect(first)
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_submit_allowed_again_after_completion(self):
        session = _make_session()
        await session.send("one")
        await session.send("two")
        assert [r.content for r in session.store.records if r.role == "user"] == ["one", "two"]

    def test_empty_turn_rejected_without_state_change(self):
        session = _make_session()
        with pytest.raises(ValueError):
            session.submit("   ")
        assert session.status == ChatStatus.IDLE

    @pytest.mark.asyncio
    async def test_image_only_turn_gets_default_prompt(self):
        client = FakeChatClient()
        session = _make_session(client)

        await session.send("", images=[ImagePayload(data="aW1n")])

        assert session.store.records[0].content == DEFAULT_IMAGE_PROMPT
        assert client.calls[0][-1].content.images[0].data == "aW1n"


# ---------------------------------------------------------------------------
# Tests: optimistic reconciliation
# ---------------------------------------------------------------------------

class TestOptimisticReconciliation:
    @pytest.mark.asyncio
    async def test_optimistic_shown_until_durable_copy_visible(self):
        session = _make_session()
        stream = session.submit("Solve 2x+5=13")

        before = session.view([])
        assert before.optimistic is not None
        assert before.optimistic.is_optimistic is True
        assert before.optimistic.content == "Solve 2x+5=13"

        await stream.__anext__()
        durable = list(session.store.records)
        during = session.view(durable)
        assert during.optimistic is None
        assert [m.content for m in during.messages] == ["Solve 2x+5=13"]
        assert during.streaming is not None

        async for _ in stream:
            pass

    @pytest.mark.asyncio
    async def test_optimistic_kept_when_durable_list_is_stale(self):
        session = _make_session()
        stream = session.submit("hello")
        await stream.__anext__()

        stale = session.view([])
        assert stale.optimistic is not None
        assert stale.optimistic.confirmed_id == "m1"

        async for _ in stream:
            pass


# ---------------------------------------------------------------------------
# Tests: cancellation and failures
# ---------------------------------------------------------------------------

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_persists_nothing(self):
        client = FakeChatClient(deltas=["Partial "], block=True)
        session = _make_session(client)
        stream = session.submit("hi")

        first = await stream.__anext__()
        assert first == "Partial "
        assert session.cancel() is True

        rest = await _collect(stream)

        assert rest == []
        assert [r.role for r in session.store.records] == ["user"]
        assert session.status == ChatStatus.IDLE
        assert session.last_message is None
        assert session.last_error is None

    def test_cancel_when_idle_returns_false(self):
        assert _make_session().cancel() is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_model_failure_sets_error_and_persists_no_reply(self):
        client = FakeChatClient(deltas=["Half"], fail_with=LLMServiceError("boom"))
        session = _make_session(client)

        with pytest.raises(LLMServiceError):
            await _collect(session.submit("hi"))

        assert [r.role for r in session.store.records] == ["user"]
        assert session.status == ChatStatus.IDLE
        assert session.last_error.kind == "transient"
        assert session.last_error.retryable is True
        assert "boom" not in session.last_error.message

    @pytest.mark.asyncio
    async def test_history_failure_blocks_model_call(self):
        client = FakeChatClient()
        store = FakeTranscript()
        store.list_recent = AsyncMock(side_effect=HistoryFetchError("conv-1", "OperationalError"))
        session = _make_session(client, store)

        with pytest.raises(HistoryFetchError):
            await _collect(session.submit("hi"))

        assert client.calls == []
        assert session.status == ChatStatus.IDLE

    @pytest.mark.asyncio
    async def test_error_cleared_on_next_submit(self):
        client = FakeChatClient(fail_with=LLMServiceError("boom"))
        session = _make_session(client)
        with pytest.raises(LLMServiceError):
            await session.send("hi")

        client.fail_with = None
        await session.send("again")
        assert session.last_error is None


# ---------------------------------------------------------------------------
# Tests: resume
# ---------------------------------------------------------------------------

class TestResume:
    @pytest.mark.asyncio
    async def test_resume_replies_to_pending_user_message(self):
        store = FakeTranscript()
        await store.append("conv-1", "user", "Here's my work on the whiteboard.", image_ref="uploads/conv-1/wb.png")
        loader = AsyncMock(return_value=ImagePayload(data="d2I="))
        client = FakeChatClient()
        session = _make_session(client, store, image_loader=loader)

        await _collect(session.resume())

        loader.assert_awaited_once_with("uploads/conv-1/wb.png")
        assert [r.role for r in store.records] == ["user", "assistant"]
        final = client.calls[0][-1]
        assert final.content.text == "Here's my work on the whiteboard."
        assert final.content.images[0].data == "d2I="

    @pytest.mark.asyncio
    async def test_nothing_to_resume(self):
        store = FakeTranscript()
        await store.append("conv-1", "user", "hi")
        await store.append("conv-1", "assistant", "hello")
        session = _make_session(store=store)

        with pytest.raises(NothingToResumeError):
            await _collect(session.resume())
        assert session.status == ChatStatus.IDLE


# ---------------------------------------------------------------------------
# Tests: ChatSessionManager
# ---------------------------------------------------------------------------

class TestChatSessionManager:
    def test_get_creates_once(self):
        factory = MagicMock(side_effect=lambda cid: MagicMock(conversation_id=cid))
        manager = ChatSessionManager(factory)

        first = manager.get("conv-1")
        second = manager.get("conv-1")

        assert first is second
        factory.assert_called_once_with("conv-1")

    def test_peek_does_not_create(self):
        factory = MagicMock()
        manager = ChatSessionManager(factory)
        assert manager.peek("conv-1") is None
        factory.assert_not_called()

    def test_cancel_all(self):
        sessions = {}

        def _factory(cid):
            sessions[cid] = MagicMock()
            return sessions[cid]

        manager = ChatSessionManager(_factory)
        manager.get("a")
        manager.get("b")
        manager.cancel_all()

        sessions["a"].cancel.assert_called_once()
        sessions["b"].cancel.assert_called_once()

    def test_least_recent_idle_sessions_are_dropped(self):
        factory = MagicMock(side_effect=lambda cid: MagicMock(conversation_id=cid, is_idle=True))
        manager = ChatSessionManager(factory, max_sessions=2)

        manager.get("a")
        manager.get("b")
        manager.get("a")
        manager.get("c")

        assert len(manager) == 2
        assert manager.peek("b") is None
        assert manager.peek("a") is not None
        assert manager.peek("c") is not None

    def test_busy_sessions_are_kept(self):
        factory = MagicMock(side_effect=lambda cid: MagicMock(conversation_id=cid, is_idle=False))
        manager = ChatSessionManager(factory, max_sessions=1)

        busy = manager.get("a")
        fresh = manager.get("b")

        assert manager.peek("a") is busy
        assert manager.peek("b") is fresh
