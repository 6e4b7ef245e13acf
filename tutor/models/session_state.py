"""
Session State Models

State machines for the text chat cycle and the live voice session.
"""

from enum import Enum


class ChatStatus(str, Enum):
    """Per-conversation text chat cycle: idle -> sending -> streaming -> idle."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"


CHAT_TRANSITIONS: dict[ChatStatus, set[ChatStatus]] = {
    ChatStatus.IDLE: {ChatStatus.SENDING},
    ChatStatus.SENDING: {ChatStatus.STREAMING, ChatStatus.IDLE},
    ChatStatus.STREAMING: {ChatStatus.IDLE},
}


class VoiceState(str, Enum):
    """Live voice session turn-taking states."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    CLOSED = "closed"


_CONNECTED = {VoiceState.IDLE, VoiceState.LISTENING, VoiceState.THINKING, VoiceState.SPEAKING}

VOICE_TRANSITIONS: dict[VoiceState, set[VoiceState]] = {
    VoiceState.INITIALIZING: {VoiceState.CONNECTING, VoiceState.CLOSED},
    VoiceState.CONNECTING: {VoiceState.IDLE, VoiceState.INITIALIZING, VoiceState.CLOSED},
    VoiceState.IDLE: {VoiceState.LISTENING, VoiceState.THINKING, VoiceState.INITIALIZING, VoiceState.CLOSED},
    VoiceState.LISTENING: {VoiceState.THINKING, VoiceState.IDLE, VoiceState.INITIALIZING, VoiceState.CLOSED},
    VoiceState.THINKING: {VoiceState.SPEAKING, VoiceState.IDLE, VoiceState.LISTENING, VoiceState.INITIALIZING, VoiceState.CLOSED},
    VoiceState.SPEAKING: {VoiceState.IDLE, VoiceState.LISTENING, VoiceState.INITIALIZING, VoiceState.CLOSED},
    VoiceState.CLOSED: set(),
}


def is_connected(state: VoiceState) -> bool:
    return state in _CONNECTED
