"""Translation of tutor errors into HTTP responses."""
from fastapi import HTTPException, status

from tutor.exceptions import (
    TutorError,
    ConversationNotFoundError,
    PracticeSessionNotFoundError,
    ConfigurationError,
    WhiteboardImageError,
)


def error_payload(error: TutorError) -> dict:
    """UI-facing error indicator. Never includes raw transport text."""
    return {
        "kind": error.kind,
        "message": error.user_message,
        "retryable": error.retryable,
    }


def to_http_exception(error: TutorError) -> HTTPException:
    """Map a tutor error to the HTTP status for its kind."""
    if isinstance(error, (ConversationNotFoundError, PracticeSessionNotFoundError)):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error.message,
        )

    if error.kind == "session_state":
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error.message,
        )

    if isinstance(error, WhiteboardImageError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error.user_message,
        )

    if error.kind == "validation":
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": error.message, "details": error.details},
        )

    if isinstance(error, ConfigurationError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error.user_message,
        )

    if error.kind == "fatal_config":
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Service misconfigured",
        )

    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=error.user_message,
    )
