"""
Analysis Provider - Provider-agnostic interface to the external vision model.

The core owns prompt construction and reply parsing; a provider only turns
(instruction, images) into free-form text.
"""

from typing import Protocol

import anthropic
from structlog import get_logger

from app.exceptions import TransportError
from app.models.domain import InlineImage

logger = get_logger(__name__)


class AnalysisProvider(Protocol):
    """
    Analysis provider protocol.

    Any text/vision model vendor must implement this interface.
    """

    @property
    def model_version(self) -> str:
        """Identifier recorded as ``performed_by`` in the valuation history."""
        ...

    async def analyze(self, instruction: str, images: list[InlineImage]) -> str:
        """
        Send one instruction with inline images and return the reply text.

        Raises:
            TransportError: network, authentication or rate-limit failure
        """
        ...


class AnthropicAnalysisProvider:
    """Anthropic Messages API implementation."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        timeout_seconds: float = 60.0,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        # Retries are owned by the valuation client so they can be bounded
        # and logged in one place.
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=0,
        )

    @property
    def model_version(self) -> str:
        return self.model

    async def analyze(self, instruction: str, images: list[InlineImage]) -> str:
        content: list[dict] = [{"type": "text", "text": instruction}]
        for image in images:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.media_type,
                        "data": image.data_base64,
                    },
                }
            )

        try:
            message = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APITimeoutError as exc:
            raise TransportError("Analysis provider timed out", retryable=True) from exc
        except anthropic.APIConnectionError as exc:
            raise TransportError("Could not reach analysis provider", retryable=True) from exc
        except anthropic.RateLimitError as exc:
            raise TransportError(
                "Analysis provider rate limit exceeded", retryable=True, status_code=429
            ) from exc
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
            logger.error("analysis_provider_auth_failed", status_code=exc.status_code)
            raise TransportError(
                "Analysis provider rejected credentials",
                retryable=False,
                status_code=exc.status_code,
            ) from exc
        except anthropic.APIStatusError as exc:
            raise TransportError(
                f"Analysis provider returned HTTP {exc.status_code}",
                retryable=exc.status_code >= 500,
                status_code=exc.status_code,
            ) from exc

        return "\n".join(block.text for block in message.content if block.type == "text")

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()
