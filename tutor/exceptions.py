"""
Custom Exception Hierarchy for Tutor Module

Every error carries a `kind` used to decide how it reaches the user:
transient (retryable banner), validation (structured error), parse
(swallowed), session_state (caller error, rejected synchronously) and
fatal_config (feature disabled).

Exception Hierarchy:
    TutorError (base)
    ├── LLMError                         transient
    │   ├── LLMServiceError
    │   ├── LLMTimeoutError
    │   └── LLMRateLimitError
    ├── TranscriptError                  transient
    │   ├── HistoryFetchError
    │   ├── TranscriptWriteError
    │   └── ObjectStorageError
    ├── ValidationFailure                validation
    │   ├── PracticeValidationError
    │   └── WhiteboardImageError
    ├── StructuredContextError           parse
    ├── SessionError                     session_state
    │   ├── SessionBusyError
    │   ├── VoiceSessionActiveError
    │   ├── NothingToResumeError
    │   ├── ConversationNotFoundError
    │   └── PracticeSessionNotFoundError
    ├── StateError                       session_state
    │   └── StateTransitionError
    ├── TurnCancelledError
    ├── PromptError
    │   └── PromptTemplateError
    └── ConfigurationError               fatal_config
"""

from typing import Literal, Optional

ErrorKind = Literal["transient", "validation", "parse", "session_state", "fatal_config", "cancelled"]


class TutorError(Exception):
    """Base exception for all tutor errors."""

    kind: ErrorKind = "transient"
    retryable: bool = False
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# LLM / external service errors

class LLMError(TutorError):
    """Base exception for model and media service errors."""

    kind = "transient"
    retryable = True
    user_message = "The AI service is temporarily unavailable. Please try again."


class LLMServiceError(LLMError):
    """Raised when an external service call fails."""

    def __init__(self, message: str, model_name: Optional[str] = None, attempts: Optional[int] = None):
        super().__init__(message)
        self.model_name = model_name
        self.attempts = attempts


class LLMTimeoutError(LLMError):
    """Raised when an external service call exceeds its deadline."""

    user_message = "The AI service took too long to respond. Please try again."

    def __init__(self, timeout_seconds: float, model_name: Optional[str] = None):
        message = f"LLM call timed out after {timeout_seconds}s"
        if model_name:
            message += f" (model: {model_name})"
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.model_name = model_name


class LLMRateLimitError(LLMError):
    """Raised when a rate limit is exceeded."""

    def __init__(self, retry_after: Optional[int] = None):
        message = "LLM rate limit exceeded"
        if retry_after:
            message += f". Retry after {retry_after}s"
        super().__init__(message)
        self.retry_after = retry_after


# Transcript store errors

class TranscriptError(TutorError):
    """Base exception for transcript store failures."""

    kind = "transient"
    retryable = True
    user_message = "Could not reach the conversation history. Please try again."


class HistoryFetchError(TranscriptError):
    """Raised when recent history cannot be read before a model call."""

    def __init__(self, conversation_id: str, reason: str):
        super().__init__(f"History fetch failed for {conversation_id}: {reason}")
        self.conversation_id = conversation_id


class TranscriptWriteError(TranscriptError):
    """Raised when a message cannot be appended."""

    def __init__(self, conversation_id: str, reason: str):
        super().__init__(f"Transcript append failed for {conversation_id}: {reason}")
        self.conversation_id = conversation_id


class ObjectStorageError(TranscriptError):
    """Raised when an uploaded image cannot be stored or fetched."""

    def __init__(self, operation: str, key: str = ""):
        super().__init__(f"Object storage {operation} failed" + (f" for {key}" if key else ""))
        self.operation = operation
        self.key = key


# Validation errors

class ValidationFailure(TutorError):
    """Base exception for generated content that fails validation."""

    kind = "validation"
    user_message = "The generated content was invalid. Please try again."


class PracticeValidationError(ValidationFailure):
    """Raised when a generated practice set violates its contract."""

    def __init__(self, reason: str, problem_index: Optional[int] = None):
        message = f"Invalid practice problems: {reason}"
        if problem_index is not None:
            message += f" (problem {problem_index + 1})"
        super().__init__(message, details={"reason": reason, "problem_index": problem_index})
        self.reason = reason
        self.problem_index = problem_index


class WhiteboardImageError(ValidationFailure):
    """Raised when a rendered canvas image cannot be decoded."""

    user_message = "The whiteboard image could not be read."

    def __init__(self, reason: str):
        super().__init__(f"Unreadable whiteboard image: {reason}", details={"reason": reason})
        self.reason = reason


# Parse errors

class StructuredContextError(TutorError):
    """Raised for a malformed progress block. Never escapes the extractor."""

    kind = "parse"


# Session errors

class SessionError(TutorError):
    """Base exception for session-state violations."""

    kind = "session_state"


class SessionBusyError(SessionError):
    """Raised when a turn is submitted while a cycle is active."""

    def __init__(self, conversation_id: str, status: str):
        super().__init__(f"Conversation {conversation_id} is busy (status: {status})")
        self.conversation_id = conversation_id
        self.status = status


class VoiceSessionActiveError(SessionError):
    """Raised when a second voice session is requested for a conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Voice session already active for conversation {conversation_id}")
        self.conversation_id = conversation_id


class NothingToResumeError(SessionError):
    """Raised when resume is requested but no user message awaits a reply."""

    def __init__(self, conversation_id: str):
        super().__init__(f"No pending user message in conversation {conversation_id}")
        self.conversation_id = conversation_id


class ConversationNotFoundError(SessionError):
    """Raised when a conversation does not exist."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class PracticeSessionNotFoundError(SessionError):
    """Raised when a practice session does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Practice session not found: {session_id}")
        self.session_id = session_id


# State Errors

class StateError(TutorError):
    """Base exception for state machine errors."""

    kind = "session_state"


class StateTransitionError(StateError):
    """Raised when state transition is invalid."""

    def __init__(self, from_state: str, to_state: str, reason: str):
        message = f"Invalid state transition from '{from_state}' to '{to_state}': {reason}"
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason


class TurnCancelledError(TutorError):
    """Raised inside a cycle that was cancelled; nothing is persisted."""

    kind = "cancelled"

    def __init__(self, conversation_id: str):
        super().__init__(f"Turn cancelled for conversation {conversation_id}")
        self.conversation_id = conversation_id


# Prompt Errors

class PromptError(TutorError):
    """Base exception for prompt-related errors."""

    kind = "fatal_config"


class PromptTemplateError(PromptError):
    """Raised when prompt template rendering fails."""

    def __init__(self, template_name: str, missing_vars: list[str]):
        message = f"Prompt template '{template_name}' missing variables: {', '.join(missing_vars)}"
        super().__init__(message)
        self.template_name = template_name
        self.missing_vars = missing_vars


# Configuration Errors

class ConfigurationError(TutorError):
    """Raised when configuration is invalid or missing."""

    kind = "fatal_config"

    def __init__(self, config_key: str, reason: str):
        message = f"Configuration error for '{config_key}': {reason}"
        super().__init__(message)
        self.config_key = config_key
        self.reason = reason
        self.user_message = f"This feature is unavailable: {reason}"
