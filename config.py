"""
Configuration management for the Math Tutor backend.

Centralizes all configuration using Pydantic settings with environment variable support.
"""

import logging
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./math_tutor.db",
        description="SQLAlchemy connection URL (PostgreSQL in deployment)"
    )
    db_pool_size: int = Field(
        default=5,
        description="Database connection pool size"
    )
    db_max_overflow: int = Field(
        default=10,
        description="Maximum overflow connections"
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Connection pool timeout in seconds"
    )

    # API Configuration
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )

    # Chat model (Anthropic)
    anthropic_api_key: str = Field(
        default="",
        description="Anthropic API key (chat and practice generation)"
    )
    chat_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for tutoring chat"
    )
    chat_max_tokens: int = Field(
        default=4096,
        description="Max tokens per chat completion"
    )

    # Speech, vision and realtime (OpenAI)
    openai_api_key: str = Field(
        default="",
        description="OpenAI API key (transcription, speech, vision, realtime voice)"
    )
    transcription_model: str = Field(default="whisper-1", description="Speech-to-text model")
    transcription_language: str = Field(default="en", description="Speech-to-text language hint")
    tts_model: str = Field(default="tts-1", description="Text-to-speech model")
    tts_voice: str = Field(default="alloy", description="Text-to-speech voice")
    tts_format: str = Field(default="mp3", description="Text-to-speech audio format")
    vision_model: str = Field(default="gpt-4o", description="Whiteboard description model")
    vision_max_tokens: int = Field(default=300, description="Max tokens for a whiteboard description")
    realtime_model: str = Field(
        default="gpt-4o-realtime-preview-2024-12-17",
        description="Realtime model the ephemeral voice token is scoped to"
    )
    realtime_token_url: str = Field(
        default="https://api.openai.com/v1/realtime/client_secrets",
        description="Ephemeral credential issuance endpoint"
    )

    # External call policy
    external_call_timeout: float = Field(
        default=30.0,
        description="Deadline in seconds for every external service call"
    )
    max_retries: int = Field(
        default=3,
        description="Attempts for retryable (non-streaming) external calls"
    )
    initial_retry_delay: float = Field(
        default=1.0,
        description="First backoff delay in seconds, doubled per attempt"
    )

    # Conversation policy
    history_limit: int = Field(
        default=15,
        description="Durable messages fetched before each model call"
    )
    live_conversation_limit: int = Field(
        default=256,
        description="Idle in-memory chat sessions and whiteboard channels kept before the least recent are dropped"
    )
    quiz_summary_window: Optional[int] = Field(
        default=None,
        description="Most recent fetched messages that get a quiz summary appended (None = all)"
    )
    practice_context_messages: int = Field(
        default=5,
        description="Recent messages passed to practice generation as context"
    )
    practice_context_chars: int = Field(
        default=200,
        description="Truncation length for each practice context message"
    )
    progress_block_key: str = Field(
        default="problemContext",
        description="Top-level key of the progress payload inside a fenced block"
    )
    progress_block_tag: str = Field(
        default="json",
        description="Fence tag marking candidate progress blocks"
    )

    # Whiteboard and voice
    whiteboard_autosave_seconds: float = Field(
        default=2.0,
        description="Quiet period before a whiteboard change burst is persisted"
    )
    voice_image_max_size: int = Field(
        default=512,
        description="Max edge in pixels of the whiteboard image sent for description"
    )
    voice_image_quality: int = Field(
        default=80,
        description="JPEG quality of the whiteboard image sent for description"
    )
    speech_rms_threshold: float = Field(
        default=0.005,
        description="RMS level below which captured audio counts as silence"
    )

    # Application Settings
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production"
    )

    # AWS Configuration (uploaded images)
    aws_region: str = Field(
        default="us-east-1",
        description="AWS region for S3 bucket"
    )
    aws_s3_bucket: str = Field(
        default="math-tutor-uploads",
        description="S3 bucket name for uploaded images"
    )
    # AWS credentials are auto-detected from ~/.aws/credentials or environment

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    Returns:
        Settings: Application settings
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings():
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


def validate_required_settings() -> list[str]:
    """
    Validate settings at startup.

    Missing model credentials disable only the features that need them, so
    they are reported rather than raised. Raises ValueError if the database
    URL is missing.

    Returns:
        Names of the features disabled by missing credentials.
    """
    settings = get_settings()

    if not settings.database_url:
        raise ValueError("DATABASE_URL is required but not set")

    disabled = []
    if not settings.anthropic_api_key:
        disabled.extend(["chat", "practice"])
    if not settings.openai_api_key:
        disabled.extend(["voice", "speech-to-text", "text-to-speech", "vision"])

    for feature in disabled:
        logger.warning(f"Feature '{feature}' disabled: required API key is not configured")

    return disabled
