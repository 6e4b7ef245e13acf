"""Unit tests for tutor/orchestration/voice_session.py: VoiceSession."""

import asyncio
import base64

import numpy as np
import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.services.anthropic_adapter import StreamComplete, TextDelta, ToolUseRequest
from tests.helpers import FakeTranscript, png_bytes
from tutor.exceptions import ConfigurationError, LLMServiceError, LLMTimeoutError, WhiteboardImageError
from tutor.models.session_state import VoiceState
from tutor.orchestration.history_assembler import HistoryAssembler
from tutor.orchestration.voice_session import (
    MAX_TOOL_ROUNDS,
    WHITEBOARD_EMPTY_RESULT,
    WHITEBOARD_FAILURE_RESULT,
    WHITEBOARD_SUCCESS_RESULT,
    VoiceSession,
)
from tutor.services.context_extractor import StructuredContextExtractor
from tutor.services.whiteboard_bridge import WhiteboardExportBridge

BLOCK = object()


# ---------------------------------------------------------------------------
# Fakes and helpers
# ---------------------------------------------------------------------------

class ScriptedChatClient:
    """Each stream_chat call plays the next script; BLOCK waits until released."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []
        self.blocked = asyncio.Event()
        self.release = asyncio.Event()

    async def stream_chat(self, system, messages, tools=None, tool_choice=None):
        self.calls.append({"messages": list(messages), "tools": tools, "tool_choice": tool_choice})
        script = self.scripts.pop(0) if self.scripts else [TextDelta(text="ok"), StreamComplete(text="ok")]
        for event in script:
            if event is BLOCK:
                self.blocked.set()
                await self.release.wait()
                continue
            yield event


def _reply(text: str) -> list:
    return [TextDelta(text=text), StreamComplete(text=text)]


def _tool_request(call_id: str = "tu_1") -> list:
    return [StreamComplete(
        text="",
        stop_reason="tool_use",
        tool_calls=[ToolUseRequest(id=call_id, name="view_whiteboard")],
        content_blocks=[{"type": "tool_use", "id": call_id, "name": "view_whiteboard", "input": {}}],
    )]


def _speech(transcript: str = "What is 2x if x is 4?") -> MagicMock:
    speech = MagicMock()
    speech.transcribe = AsyncMock(return_value=transcript)
    speech.synthesize = AsyncMock(return_value=b"ID3-audio")
    speech.describe_image = AsyncMock(return_value="x = 4 written under 2x + 5 = 13")
    return speech


def _make_session(client=None, speech=None, issue_token=None, store=None, bridge=None, spoken_text=None) -> VoiceSession:
    store = store or FakeTranscript()
    return VoiceSession(
        "conv-1",
        speech=speech or _speech(),
        chat_client=client or ScriptedChatClient(),
        store=store,
        assembler=HistoryAssembler(store, "VOICE"),
        bridge=bridge or WhiteboardExportBridge("conv-1"),
        issue_token=issue_token or AsyncMock(return_value="ek_test"),
        spoken_text=spoken_text,
    )


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def _types(messages) -> list[str]:
    return [m.type for m in messages]


async def _connected(session: VoiceSession) -> asyncio.Queue:
    outbox = session.attach()
    assert await session.start() is True
    _drain(outbox)
    return outbox


async def _speak(session: VoiceSession, audio: bytes = b"webm-bytes", **kwargs) -> None:
    await session.on_speech_started()
    await session.on_speech_stopped(audio, **kwargs)
    await session.wait_for_turn()


# ---------------------------------------------------------------------------
# Tests: lifecycle
# ---------------------------------------------------------------------------

class TestStart:
    @pytest.mark.asyncio
    async def test_start_connects_and_reports_token(self):
        session = _make_session()
        outbox = session.attach()

        assert await session.start() is True

        messages = _drain(outbox)
        states = [m.state for m in messages if m.type == "state"]
        assert states == [VoiceState.INITIALIZING, VoiceState.CONNECTING, VoiceState.IDLE]
        ready = [m for m in messages if m.type == "session_ready"]
        assert ready[0].token == "ek_test"
        assert session.state == VoiceState.IDLE

    @pytest.mark.asyncio
    async def test_token_failure_surfaces_and_does_not_retry(self):
        issue_token = AsyncMock(side_effect=ConfigurationError("openai_api_key", "OpenAI API key not configured"))
        session = _make_session(issue_token=issue_token)
        outbox = session.attach()

        assert await session.start() is False

        assert session.state == VoiceState.INITIALIZING
        issue_token.assert_awaited_once()
        errors = [m for m in _drain(outbox) if m.type == "error"]
        assert errors[0].error.kind == "fatal_config"
        assert session.last_error.kind == "fatal_config"

    @pytest.mark.asyncio
    async def test_reentrant_start_is_skipped(self):
        issue_token = AsyncMock(return_value="ek_test")
        session = _make_session(issue_token=issue_token)

        assert await session.start() is True
        assert await session.start() is False

        issue_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_start_creates_one_connection(self):
        issue_token = AsyncMock(return_value="ek_test")
        session = _make_session(issue_token=issue_token)

        results = await asyncio.gather(session.start(), session.start())

        assert sorted(results) == [False, True]
        issue_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_returns_to_initializing_and_can_restart(self):
        issue_token = AsyncMock(return_value="ek_test")
        session = _make_session(issue_token=issue_token)
        await _connected(session)

        await session.on_disconnected()
        assert session.state == VoiceState.INITIALIZING

        assert await session.start() is True
        assert issue_token.await_count == 2

    @pytest.mark.asyncio
    async def test_close_is_terminal(self):
        session = _make_session()
        outbox = await _connected(session)

        await session.close()

        assert session.state == VoiceState.CLOSED
        assert session.is_closed
        assert "stop_audio" in _types(_drain(outbox))
        assert await session.start() is False

        await session.on_speech_started()
        assert session.state == VoiceState.CLOSED

    @pytest.mark.asyncio
    async def test_reattach_gets_fresh_outbox_with_current_state(self):
        session = _make_session()
        old = await _connected(session)

        new = session.attach()
        primed = _drain(new)

        assert primed[0].type == "state"
        assert primed[0].state == VoiceState.IDLE
        assert primed[1].type == "session_ready"
        await session.on_speech_started()
        assert old.empty()
        assert not new.empty()


# ---------------------------------------------------------------------------
# Tests: turn-taking
# ---------------------------------------------------------------------------

class TestTurn:
    @pytest.mark.asyncio
    async def test_full_turn_persists_both_sides_and_plays_audio(self):
        client = ScriptedChatClient(_reply("What is 2 times 4?"))
        speech = _speech()
        session = _make_session(client, speech)
        outbox = await _connected(session)

        await _speak(session)

        assert session.state == VoiceState.SPEAKING
        speech.transcribe.assert_awaited_once_with(b"webm-bytes", "audio/webm")
        speech.synthesize.assert_awaited_once_with("What is 2 times 4?")

        records = session.store.records
        assert [(r.role, r.content) for r in records] == [
            ("user", "What is 2x if x is 4?"),
            ("assistant", "What is 2 times 4?"),
        ]
        assert all(r.is_voice for r in records)

        messages = _drain(outbox)
        transcripts = [(m.role, m.text) for m in messages if m.type == "transcript"]
        assert transcripts == [("user", "What is 2x if x is 4?"), ("assistant", "What is 2 times 4?")]
        audio = [m for m in messages if m.type == "audio"][0]
        assert base64.b64decode(audio.audio) == b"ID3-audio"
        assert audio.mime_type == "audio/mpeg"

        session.on_playback_finished()
        assert session.state == VoiceState.IDLE

    @pytest.mark.asyncio
    async def test_progress_block_is_not_spoken(self):
        block = '```json\n{"version": 1, "problemContext": {"currentProblem": "2x+5=13", "currentStep": 1, "totalSteps": 3}}\n```'
        reply = f"First, subtract 5 from both sides.\n\n{block}"
        client = ScriptedChatClient(_reply(reply))
        speech = _speech()
        session = _make_session(client, speech, spoken_text=StructuredContextExtractor().strip)
        await _connected(session)

        await _speak(session)

        speech.synthesize.assert_awaited_once_with("First, subtract 5 from both sides.")
        assert session.store.records[-1].content == reply

    @pytest.mark.asyncio
    async def test_state_sequence(self):
        session = _make_session(ScriptedChatClient(_reply("Sure.")))
        outbox = await _connected(session)

        await _speak(session)

        states = [m.state for m in _drain(outbox) if m.type == "state"]
        assert states == [VoiceState.LISTENING, VoiceState.THINKING, VoiceState.SPEAKING]

    @pytest.mark.asyncio
    async def test_model_sees_recent_history(self):
        store = FakeTranscript()
        await store.append("conv-1", "user", "Solve 2x+5=13")
        await store.append("conv-1", "assistant", "What should we undo first?")
        client = ScriptedChatClient(_reply("Right, subtract 5."))
        session = _make_session(client, store=store)
        await _connected(session)

        await _speak(session)

        sent = client.calls[0]["messages"]
        assert [m.content.text for m in sent] == [
            "Solve 2x+5=13",
            "What should we undo first?",
            "What is 2x if x is 4?",
        ]

    @pytest.mark.asyncio
    async def test_empty_transcript_returns_to_idle(self):
        speech = _speech(transcript="   ")
        client = ScriptedChatClient()
        session = _make_session(client, speech)
        await _connected(session)

        await _speak(session)

        assert session.state == VoiceState.IDLE
        assert session.store.records == []
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_speech_events_ignored_before_connect(self):
        session = _make_session()
        await session.on_speech_started()
        await session.on_speech_stopped(b"audio")
        assert session.state == VoiceState.INITIALIZING

    @pytest.mark.asyncio
    async def test_transcription_failure_surfaces_and_goes_idle(self):
        speech = _speech()
        speech.transcribe = AsyncMock(side_effect=LLMTimeoutError(30.0, "whisper-1"))
        session = _make_session(speech=speech)
        outbox = await _connected(session)

        await _speak(session)

        assert session.state == VoiceState.IDLE
        errors = [m for m in _drain(outbox) if m.type == "error"]
        assert errors[0].error.retryable is True
        assert session.store.records == []


class TestSilenceGating:
    @pytest.mark.asyncio
    async def test_silent_pcm_is_not_transcribed(self):
        speech = _speech()
        session = _make_session(speech=speech)
        await _connected(session)

        silence = np.zeros(4800, dtype="<f4").tobytes()
        await _speak(session, silence, pcm_format="f32", sample_rate=48000)

        speech.transcribe.assert_not_awaited()
        assert session.state == VoiceState.IDLE

    @pytest.mark.asyncio
    async def test_pcm_speech_is_sent_as_wav(self):
        speech = _speech()
        session = _make_session(ScriptedChatClient(_reply("Yes.")), speech)
        await _connected(session)

        t = np.arange(4800) / 48000
        tone = (0.3 * np.sin(2 * np.pi * 440 * t)).astype("<f4").tobytes()
        await _speak(session, tone, pcm_format="f32", sample_rate=48000)

        audio, mime_type = speech.transcribe.call_args.args
        assert mime_type == "audio/wav"
        assert audio[:4] == b"RIFF"


# ---------------------------------------------------------------------------
# Tests: barge-in
# ---------------------------------------------------------------------------

class TestBargeIn:
    @pytest.mark.asyncio
    async def test_speech_start_cancels_thinking_turn(self):
        client = ScriptedChatClient([TextDelta(text="Let me think"), BLOCK, StreamComplete(text="Let me think")])
        speech = _speech()
        session = _make_session(client, speech)
        outbox = await _connected(session)

        await session.on_speech_started()
        await session.on_speech_stopped(b"first")
        await asyncio.wait_for(client.blocked.wait(), timeout=1)
        _drain(outbox)

        await session.on_speech_started()

        messages = _drain(outbox)
        assert messages[0].type == "stop_audio"
        assert session.state == VoiceState.LISTENING
        assert [r.role for r in session.store.records] == ["user"]
        speech.synthesize.assert_not_awaited()

        # Releasing the stale stream must not leak its text anywhere
        client.release.set()
        client.scripts.append(_reply("Fresh answer."))
        await session.on_speech_stopped(b"second")
        await session.wait_for_turn()

        assistant = [m.text for m in _drain(outbox) if m.type == "transcript" and m.role == "assistant"]
        assert assistant == ["Fresh answer."]
        assert [r.content for r in session.store.records if r.role == "assistant"] == ["Fresh answer."]

    @pytest.mark.asyncio
    async def test_speech_start_stops_playback_while_speaking(self):
        session = _make_session(ScriptedChatClient(_reply("Let's see.")))
        outbox = await _connected(session)
        await _speak(session)
        assert session.state == VoiceState.SPEAKING
        _drain(outbox)

        await session.on_speech_started()

        messages = _drain(outbox)
        assert messages[0].type == "stop_audio"
        assert session.state == VoiceState.LISTENING

    @pytest.mark.asyncio
    async def test_speech_stopped_while_speaking_starts_new_turn(self):
        session = _make_session(ScriptedChatClient(_reply("One."), _reply("Two.")))
        outbox = await _connected(session)
        await _speak(session)
        _drain(outbox)

        await session.on_speech_stopped(b"more")
        await session.wait_for_turn()

        types = _types(_drain(outbox))
        assert types[0] == "stop_audio"
        assert session.state == VoiceState.SPEAKING


# ---------------------------------------------------------------------------
# Tests: view_whiteboard tool
# ---------------------------------------------------------------------------

class TestViewWhiteboardTool:
    @pytest.mark.asyncio
    async def test_empty_board_returns_fixed_result(self):
        client = ScriptedChatClient(_tool_request(), _reply("Draw your work first."))
        speech = _speech()
        session = _make_session(client, speech)
        await _connected(session)

        await _speak(session)

        follow_up = client.calls[1]["messages"]
        tool_turn = follow_up[-1]
        assert tool_turn["content"][0] == {
            "type": "tool_result",
            "tool_use_id": "tu_1",
            "content": WHITEBOARD_EMPTY_RESULT,
        }
        speech.describe_image.assert_not_awaited()
        assert session.whiteboard_note is None

    @pytest.mark.asyncio
    async def test_description_injected_as_context(self):
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        client = ScriptedChatClient(_tool_request(), _reply("I see you found x = 4."))
        speech = _speech()
        session = _make_session(client, speech, bridge=bridge)
        await _connected(session)

        await _speak(session)

        note = "[WHITEBOARD CONTENT: x = 4 written under 2x + 5 = 13]"
        assert session.whiteboard_note == note
        tool_turn = client.calls[1]["messages"][-1]
        assert tool_turn["content"][0]["content"] == WHITEBOARD_SUCCESS_RESULT
        assert tool_turn["content"][1] == {"type": "text", "text": note}
        assert client.calls[1]["messages"][-2]["role"] == "assistant"

        data_url = speech.describe_image.call_args.args[0]
        assert data_url.startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_description_rides_on_next_user_turn(self):
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        client = ScriptedChatClient(_tool_request(), _reply("Nice."), _reply("Keep going."))
        session = _make_session(client, bridge=bridge)
        await _connected(session)

        await _speak(session)
        await _speak(session)

        final = client.calls[2]["messages"][-1]
        assert final.content.text.startswith("[WHITEBOARD CONTENT: ")
        assert final.content.text.endswith("What is 2x if x is 4?")
        assert all(r.content == "What is 2x if x is 4?" for r in session.store.records if r.role == "user")

    @pytest.mark.asyncio
    async def test_unchanged_board_reuses_description(self):
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        speech = _speech()
        session = _make_session(speech=speech, bridge=bridge)

        first = await session.view_whiteboard()
        second = await session.view_whiteboard()

        assert first == second
        speech.describe_image.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_vision_failure_returns_failure_result(self):
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        speech = _speech()
        speech.describe_image = AsyncMock(side_effect=LLMServiceError("vision down"))
        session = _make_session(speech=speech, bridge=bridge)

        result, note = await session.view_whiteboard()

        assert result == WHITEBOARD_FAILURE_RESULT
        assert note is None
        assert session.whiteboard_note is None

    @pytest.mark.asyncio
    async def test_tool_rounds_are_bounded(self):
        scripts = [_tool_request(f"tu_{i}") for i in range(MAX_TOOL_ROUNDS)] + [_reply("Done looking.")]
        client = ScriptedChatClient(*scripts)
        session = _make_session(client)
        await _connected(session)

        await _speak(session)

        assert len(client.calls) == MAX_TOOL_ROUNDS + 1
        assert all(call["tools"] for call in client.calls)
        assert client.calls[-1]["tool_choice"] == {"type": "none"}
        assert all(call["tool_choice"] is None for call in client.calls[:-1])
        assert session.store.records[-1].content == "Done looking."

    @pytest.mark.asyncio
    async def test_description_dropped_after_board_cleared(self):
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        client = ScriptedChatClient(_tool_request(), _reply("Nice."), _reply("Start fresh."))
        session = _make_session(client, bridge=bridge)
        await _connected(session)

        await _speak(session)
        bridge.record_canvas({"shapes": []}, None)
        await _speak(session)

        final = client.calls[2]["messages"][-1]
        assert final.content.text == "What is 2x if x is 4?"
        assert session.whiteboard_note is None

    @pytest.mark.asyncio
    async def test_description_dropped_after_board_changes(self):
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        client = ScriptedChatClient(_tool_request(), _reply("Nice."), _reply("What did you add?"))
        session = _make_session(client, bridge=bridge)
        await _connected(session)

        await _speak(session)
        bridge.record_canvas({"shapes": ["x", "y"]}, png_bytes(color=(255, 0, 0, 255)))
        await _speak(session)

        assert "[WHITEBOARD CONTENT" not in client.calls[2]["messages"][-1].content.text

    @pytest.mark.asyncio
    async def test_only_latest_board_description_is_cached(self):
        bridge = WhiteboardExportBridge("conv-1")
        speech = _speech()
        session = _make_session(speech=speech, bridge=bridge)

        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        await session.view_whiteboard()
        bridge.record_canvas({"shapes": ["y"]}, png_bytes(color=(255, 0, 0, 255)))
        await session.view_whiteboard()
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        await session.view_whiteboard()

        assert speech.describe_image.await_count == 3
        assert session._description[0] == bridge.current_hash

    @pytest.mark.asyncio
    async def test_unreadable_board_image_returns_failure_result(self, mocker):
        mocker.patch(
            "tutor.services.whiteboard_bridge.encode_image",
            side_effect=WhiteboardImageError("broken PNG file"),
        )
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        client = ScriptedChatClient(_tool_request(), _reply("Could you redraw that?"))
        session = _make_session(client, bridge=bridge)
        await _connected(session)

        await _speak(session)

        tool_turn = client.calls[1]["messages"][-1]
        assert tool_turn["content"][0]["content"] == WHITEBOARD_FAILURE_RESULT
        assert session.state == VoiceState.SPEAKING
        assert session.store.records[-1].content == "Could you redraw that?"


class TestUnexpectedFailure:
    @pytest.mark.asyncio
    async def test_crash_inside_turn_returns_to_idle(self, mocker):
        mocker.patch(
            "tutor.services.whiteboard_bridge.encode_image",
            side_effect=OSError("image file is truncated"),
        )
        bridge = WhiteboardExportBridge("conv-1")
        bridge.record_canvas({"shapes": ["x"]}, png_bytes())
        session = _make_session(ScriptedChatClient(_tool_request()), bridge=bridge)
        outbox = await _connected(session)

        await _speak(session)

        messages = _drain(outbox)
        assert session.state == VoiceState.IDLE
        assert "error" in _types(messages)
        assert [r.role for r in session.store.records] == ["user"]
