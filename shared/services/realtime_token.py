"""Ephemeral credential issuance for realtime voice sessions."""

import logging

import httpx

from tutor.exceptions import ConfigurationError, LLMServiceError, LLMTimeoutError

logger = logging.getLogger(__name__)


class RealtimeTokenIssuer:
    """Requests a short-lived client secret scoped to one realtime session."""

    def __init__(
        self,
        api_key: str,
        model: str,
        url: str = "https://api.openai.com/v1/realtime/client_secrets",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout = timeout

    async def issue(self) -> str:
        """
        Issue an ephemeral token.

        Raises:
            ConfigurationError: API key not configured
            LLMTimeoutError: Issuance exceeded the deadline
            LLMServiceError: Issuance rejected or malformed response
        """
        if not self.api_key:
            raise ConfigurationError("openai_api_key", "OpenAI API key not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"session": {"type": "realtime", "model": self.model}},
                )
        except httpx.TimeoutException as e:
            logger.error("Realtime token request timed out")
            raise LLMTimeoutError(self.timeout, self.model) from e
        except httpx.HTTPError as e:
            logger.error(f"Realtime token request failed: {type(e).__name__}")
            raise LLMServiceError("Failed to generate realtime token", model_name=self.model) from e

        if response.status_code != 200:
            logger.error(f"Realtime token request rejected with status {response.status_code}")
            raise LLMServiceError("Failed to generate realtime token", model_name=self.model)

        token = response.json().get("value")
        if not token:
            raise LLMServiceError("Realtime token response missing value", model_name=self.model)

        logger.info("Realtime token generated")
        return token
