"""Answer generation with the chat model."""
import asyncio
from typing import Optional

import httpx
import structlog

from librarian import config
from librarian.errors import GenerationError, ProviderError
from librarian.llm_client import OllamaClient

logger = structlog.get_logger()


class AnswerGenerator:
    """Single non-streaming chat completion per answer."""

    def __init__(
        self,
        client: Optional[OllamaClient] = None,
        model: str = None,
        temperature: float = None,
        timeout: float = None,
    ):
        self.client = client or OllamaClient()
        self.model = model or config.CHAT_MODEL
        self.temperature = config.CHAT_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or config.PROVIDER_TIMEOUT

    async def generate(self, system_prompt: str, user_query: str) -> str:
        """Generate an answer for the query under the given system prompt.

        Raises:
            GenerationError: On provider failure, timeout or an empty reply
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_query},
        ]

        try:
            async with asyncio.timeout(self.timeout):
                response = await self.client.chat(
                    messages, model=self.model, temperature=self.temperature
                )
        except asyncio.TimeoutError as e:
            logger.error("generation_timeout", model=self.model, timeout=self.timeout)
            raise GenerationError(f"Generation timed out after {self.timeout}s") from e
        except (httpx.HTTPError, ProviderError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error(
                "generation_failed",
                model=self.model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GenerationError(f"Generation failed: {e}") from e

        message = response.get("message") if isinstance(response, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.error("malformed_generation_response", model=self.model)
            raise GenerationError("Chat reply has no message content")

        answer = content.strip()
        if not answer:
            logger.error("empty_generation_response", model=self.model)
            raise GenerationError("Empty response from LLM")

        return answer
