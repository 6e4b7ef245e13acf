"""Tests for tutor/api/voice.py: token endpoint and the voice WebSocket."""

import base64

import pytest
from starlette.websockets import WebSocketDisconnect
from unittest.mock import AsyncMock

from tests.helpers import png_bytes
from tutor.exceptions import ConfigurationError


def _receive_until(ws, predicate, limit: int = 20) -> list[dict]:
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if predicate(frame):
            return frames
    raise AssertionError(f"expected frame not received: {frames}")


def _state(name):
    return lambda frame: frame["type"] == "state" and frame["state"] == name


class TestVoiceToken:
    def test_issues_token(self, api_client):
        assert api_client.post("/voice/token").json() == {"token": "ek_test"}

    def test_missing_key(self, api_client, services):
        services.token_issuer.issue = AsyncMock(
            side_effect=ConfigurationError("openai_api_key", "OpenAI API key not configured")
        )
        assert api_client.post("/voice/token").status_code == 500


class TestVoiceSocket:
    def test_unknown_conversation_is_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect):
            with api_client.websocket_connect("/voice/missing") as ws:
                ws.receive_json()

    def test_session_connects(self, api_client, conversation):
        with api_client.websocket_connect("/voice/conv-1") as ws:
            frames = _receive_until(ws, lambda f: f["type"] == "session_ready")
            ws.send_json({"type": "exit"})
            _receive_until(ws, _state("closed"))

        states = [f["state"] for f in frames if f["type"] == "state"]
        assert states == ["initializing", "connecting", "idle"]
        assert frames[-1]["token"] == "ek_test"

    def test_spoken_turn(self, api_client, services, chat_model, conversation):
        with api_client.websocket_connect("/voice/conv-1") as ws:
            _receive_until(ws, lambda f: f["type"] == "session_ready")

            ws.send_json({"type": "speech_started"})
            ws.send_json({"type": "speech_stopped", "audio": base64.b64encode(b"webm").decode(), "mimeType": "audio/webm"})
            frames = _receive_until(ws, lambda f: f["type"] == "audio")

            ws.send_json({"type": "playback_finished"})
            _receive_until(ws, _state("idle"))
            ws.send_json({"type": "exit"})
            _receive_until(ws, _state("closed"))

        transcripts = [(f["role"], f["text"]) for f in frames if f["type"] == "transcript"]
        assert transcripts == [("user", "x equals four"), ("assistant", "Let's think about it.")]
        assert base64.b64decode(frames[-1]["audio"]) == b"ID3-audio"
        assert services.voice_sessions.get("conv-1") is None

        view = api_client.get("/conversations/conv-1/messages").json()
        assert [(m["role"], m["is_voice"]) for m in view["messages"]] == [("user", True), ("assistant", True)]

    def test_whiteboard_frames_update_shared_board(self, api_client, services, conversation):
        image = "data:image/png;base64," + base64.b64encode(png_bytes()).decode()

        with api_client.websocket_connect("/voice/conv-1") as ws:
            _receive_until(ws, lambda f: f["type"] == "session_ready")
            ws.send_json({"type": "whiteboard", "snapshot": '{"shapes":["x"]}', "image": image})
            ws.send_json({"type": "speech_started"})
            _receive_until(ws, _state("listening"))

            assert services.whiteboards.get("conv-1").bridge.has_content is True

            ws.send_json({"type": "exit"})
            _receive_until(ws, _state("closed"))

    def test_malformed_frames_are_ignored(self, api_client, conversation):
        with api_client.websocket_connect("/voice/conv-1") as ws:
            _receive_until(ws, lambda f: f["type"] == "session_ready")
            ws.send_json({"type": "dance"})
            ws.send_json({"type": "speech_started"})
            frames = _receive_until(ws, _state("listening"))
            ws.send_json({"type": "exit"})
            _receive_until(ws, _state("closed"))

        assert frames[0]["type"] == "stop_audio"

    def test_unreadable_whiteboard_frame_reports_error(self, api_client, services, conversation):
        image = "data:image/png;base64," + base64.b64encode(b"not a png").decode()

        with api_client.websocket_connect("/voice/conv-1") as ws:
            _receive_until(ws, lambda f: f["type"] == "session_ready")
            ws.send_json({"type": "whiteboard", "snapshot": '{"shapes":["x"]}', "image": image})
            frames = _receive_until(ws, lambda f: f["type"] == "error")
            ws.send_json({"type": "speech_started"})
            _receive_until(ws, _state("listening"))
            ws.send_json({"type": "exit"})
            _receive_until(ws, _state("closed"))

        assert frames[-1]["error"]["kind"] == "validation"
        assert services.whiteboards.get("conv-1").bridge.has_content is False
