"""Clients for the external text-classification endpoint."""
import abc
from typing import Optional

import anthropic
import httpx
from anthropic import Anthropic

from errors import PermanentAPIError, TransientAPIError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

# Provider is overloaded; treated like a rate limit
_OVERLOADED_STATUS = 529


class BaseClassificationClient(abc.ABC):
    """Sends a rendered prompt to a model and returns its raw text answer."""

    @abc.abstractmethod
    def complete(self, prompt: str) -> str:
        """Return the model's free-form response for `prompt`.

        Raises:
            TransientAPIError: timeout, connection failure or rate limit
            PermanentAPIError: request rejected for a non-retryable reason
        """
        pass


class AnthropicClassificationClient(BaseClassificationClient):
    """Classification endpoint backed by the Anthropic Messages API."""

    def __init__(
        self,
        client: Optional[Anthropic] = None,
        model: str = config.CLASSIFIER_MODEL,
        temperature: float = config.CLASSIFIER_TEMPERATURE,
        max_tokens: int = config.CLASSIFIER_MAX_TOKENS,
        timeout_seconds: float = config.CLASSIFICATION_TIMEOUT_SECONDS
    ):
        """Initialize client.

        Args:
            client: Pre-built Anthropic client (one is created when omitted)
            model: Model name to use
            temperature: Sampling temperature
            max_tokens: Response token cap
            timeout_seconds: Fixed per-request timeout
        """
        # Retries are owned by RetryPolicy, not the SDK
        self.client = client or Anthropic(
            api_key=config.ANTHROPIC_API_KEY,
            timeout=httpx.Timeout(timeout_seconds),
            max_retries=0
        )
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def complete(self, prompt: str) -> str:
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}]
            )
        except (anthropic.APITimeoutError, httpx.TimeoutException) as e:
            raise TransientAPIError(f"Classification request timed out: {e}") from e
        except (anthropic.APIConnectionError, httpx.TransportError) as e:
            raise TransientAPIError(f"Classification endpoint unreachable: {e}") from e
        except (anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise TransientAPIError(f"Classification endpoint busy: {e}") from e
        except anthropic.APIStatusError as e:
            if e.status_code == _OVERLOADED_STATUS:
                raise TransientAPIError(f"Classification endpoint overloaded: {e}") from e
            raise PermanentAPIError(f"Classification request rejected ({e.status_code}): {e}") from e

        return "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
