"""
Anthropic (Claude) Adapter

Encapsulates all Claude API interaction for the tutor.

Handles:
- Tagged-union message content -> Anthropic content blocks
- Streaming chat with typed stream events (text deltas, tool use, completion)
- Non-streaming JSON generation (practice problems)
- Translation of SDK errors into the tutor's LLM error family
"""

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union

import anthropic
from pydantic import BaseModel, Field

from shared.models.domain import ChatMessage, ImagePart, MultimodalContent, TextContent
from tutor.exceptions import LLMError, LLMRateLimitError, LLMServiceError, LLMTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-20250514"


# Stream events

class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolUseRequest(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class StreamComplete(BaseModel):
    type: Literal["complete"] = "complete"
    text: str
    stop_reason: Optional[str] = None
    tool_calls: List[ToolUseRequest] = Field(default_factory=list)
    content_blocks: List[Dict[str, Any]] = Field(default_factory=list)


StreamEvent = Union[TextDelta, ToolUseRequest, StreamComplete]
RawMessage = Dict[str, Any]


def to_anthropic_message(message: Union[ChatMessage, RawMessage]) -> RawMessage:
    """Translate one history entry into the Messages API shape."""
    if isinstance(message, dict):
        return message

    content = message.content
    if isinstance(content, TextContent):
        return {"role": message.role, "content": content.text}

    if not isinstance(content, MultimodalContent):
        raise TypeError(f"Unsupported message content: {type(content).__name__}")
    blocks = []
    for part in content.parts:
        if isinstance(part, ImagePart):
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": part.image.media_type,
                    "data": part.image.data,
                },
            })
        else:
            blocks.append({"type": "text", "text": part.text})
    return {"role": message.role, "content": blocks}


def tool_round_messages(complete: StreamComplete, results: Dict[str, str], extra_text: Optional[str] = None) -> List[RawMessage]:
    """
    Messages that continue a conversation after the model asked for tools.

    Args:
        complete: The completion that ended with tool_use
        results: tool_use id -> result text
        extra_text: Optional text appended to the tool-result turn

    Returns:
        Assistant turn echoing the tool calls, then the user turn carrying results
    """
    user_blocks: List[Dict[str, Any]] = [
        {"type": "tool_result", "tool_use_id": call.id, "content": results.get(call.id, "")}
        for call in complete.tool_calls
    ]
    if extra_text:
        user_blocks.append({"type": "text", "text": extra_text})
    return [
        {"role": "assistant", "content": complete.content_blocks},
        {"role": "user", "content": user_blocks},
    ]


def translate_error(error: Exception, model_name: str, timeout: float) -> LLMError:
    if isinstance(error, anthropic.RateLimitError):
        return LLMRateLimitError()
    if isinstance(error, (anthropic.APITimeoutError, asyncio.TimeoutError)):
        return LLMTimeoutError(timeout, model_name)
    return LLMServiceError(f"{model_name} API error: {type(error).__name__}", model_name=model_name)


class AnthropicAdapter:
    """Adapter over the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 30,
        model: str = DEFAULT_CLAUDE_MODEL,
        max_tokens: int = 4096,
    ):
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.async_client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)

    def _build_kwargs(
        self,
        system: str,
        messages: List[Union[ChatMessage, RawMessage]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Build kwargs for messages.stream() / messages.create()."""
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": [to_anthropic_message(m) for m in messages],
        }
        if tools:
            kwargs["tools"] = tools
            if tool_choice:
                kwargs["tool_choice"] = tool_choice
        return kwargs

    @staticmethod
    def _parse_final(final: Any) -> StreamComplete:
        text_parts = []
        tool_calls = []
        blocks = []
        for block in final.content:
            if block.type == "text":
                text_parts.append(block.text)
                blocks.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                tool_calls.append(ToolUseRequest(id=block.id, name=block.name, input=block.input or {}))
                blocks.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input or {}})
        return StreamComplete(
            text="".join(text_parts),
            stop_reason=getattr(final, "stop_reason", None),
            tool_calls=tool_calls,
            content_blocks=blocks,
        )

    async def stream_chat(
        self,
        system: str,
        messages: List[Union[ChatMessage, RawMessage]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat completion.

        Yields TextDelta events as text arrives, one ToolUseRequest per
        requested tool, and a final StreamComplete. The deadline applies
        to the gap between consecutive events.

        Raises:
            LLMError: translated SDK failure or deadline exceeded
        """
        kwargs = self._build_kwargs(system, messages, tools, tool_choice)
        start_time = time.time()
        logger.info(json.dumps({
            "step": "LLM_STREAM",
            "status": "starting",
            "model": self.model,
            "params": {"messages": len(kwargs["messages"]), "tools": len(tools or [])},
        }))

        try:
            async with self.async_client.messages.stream(**kwargs) as stream:
                events = stream.__aiter__()
                while True:
                    try:
                        event = await asyncio.wait_for(events.__anext__(), timeout=self.timeout)
                    except StopAsyncIteration:
                        break
                    if event.type == "text" and event.text:
                        yield TextDelta(text=event.text)
                final = await asyncio.wait_for(stream.get_final_message(), timeout=self.timeout)
        except LLMError:
            raise
        except (anthropic.APIError, asyncio.TimeoutError) as e:
            logger.error(f"{self.model} stream failed: {type(e).__name__}")
            raise translate_error(e, self.model, self.timeout) from e

        complete = self._parse_final(final)
        for call in complete.tool_calls:
            yield call

        logger.info(json.dumps({
            "step": "LLM_STREAM",
            "status": "complete",
            "model": self.model,
            "output": {"response_length": len(complete.text), "tool_calls": len(complete.tool_calls)},
            "duration_ms": int((time.time() - start_time) * 1000),
        }))
        yield complete

    async def complete(self, system: str, prompt: str) -> str:
        """Non-streaming completion returning the text output."""
        kwargs = self._build_kwargs(system, [ChatMessage.text("user", prompt)])
        try:
            response = await asyncio.wait_for(
                self.async_client.messages.create(**kwargs), timeout=self.timeout
            )
        except (anthropic.APIError, asyncio.TimeoutError) as e:
            logger.error(f"{self.model} call failed: {type(e).__name__}")
            raise translate_error(e, self.model, self.timeout) from e
        return self._parse_final(response).text
