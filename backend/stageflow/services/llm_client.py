# stageflow/services/llm_client.py
import logging
from abc import ABC, abstractmethod
from typing import Optional

from openai import AsyncOpenAI, APIError, APIConnectionError, OpenAIError, RateLimitError

from stageflow.core.config import settings

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """The model call failed; the message is safe to store on an attempt log."""


class LLMClient(ABC):
    """Model-invocation interface used by the stage runner."""

    @abstractmethod
    async def complete(self, model_id: str, prompt: str) -> str:
        """Send ``prompt`` to ``model_id`` and return the raw text response."""


class OpenAIClient(LLMClient):
    """Chat-completions client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.3,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.base_url = base_url or settings.OPENAI_BASE_URL
        self.temperature = temperature
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        # Created on first use so a missing API key only fails the stage attempt
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def complete(self, model_id: str, prompt: str) -> str:
        logger.info(f"Calling {model_id} with prompt: {prompt[:50]}...")
        try:
            response = await self._get_client().chat.completions.create(
                model=model_id,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
            )
        except RateLimitError as e:
            logger.error(f"OpenAI Rate Limit Error: {str(e)}")
            raise LLMError(f"Rate limited by model provider: {str(e)}")
        except APIConnectionError as e:
            logger.error(f"OpenAI API Connection Error: {str(e)}")
            raise LLMError(f"Could not reach model provider: {str(e)}")
        except APIError as e:
            logger.error(f"OpenAI API Error: {str(e)}", exc_info=True)
            raise LLMError(f"Model provider error: {str(e)}")
        except OpenAIError as e:
            logger.error(f"OpenAI client error: {str(e)}")
            raise LLMError(f"Model client misconfigured: {str(e)}")

        if not response.choices:
            raise LLMError(f"Model {model_id} returned no choices")
        content = response.choices[0].message.content
        return (content or "").strip()
