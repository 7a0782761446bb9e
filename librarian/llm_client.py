"""Thin async transport for the Ollama HTTP API.

Transport failures surface as httpx errors. A reply that arrives but can't be
read (non-JSON body, wrong shape) raises ProviderError.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from librarian import config
from librarian.errors import ProviderError

logger = structlog.get_logger()


def _decode_json(response: httpx.Response, endpoint: str) -> Dict[str, Any]:
    """Parse a reply body that must be a JSON object."""
    try:
        data = response.json()
    except ValueError as e:
        logger.error(
            "ollama_malformed_response",
            endpoint=endpoint,
            body_preview=response.text[:100],
        )
        raise ProviderError(f"Non-JSON reply from {endpoint}") from e

    if not isinstance(data, dict):
        logger.error("ollama_malformed_response", endpoint=endpoint, body_type=type(data).__name__)
        raise ProviderError(f"Unexpected reply from {endpoint}: expected an object")
    return data


class OllamaClient:
    """Async client for the chat, embed and tags endpoints."""

    def __init__(self, base_url: str = None, timeout: float = None):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Request timeout in seconds (defaults to config.PROVIDER_TIMEOUT)
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.timeout = timeout or config.PROVIDER_TIMEOUT

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}{endpoint}", json=payload)
                response.raise_for_status()
        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", endpoint=endpoint, error=str(e), base_url=self.base_url)
            raise
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                endpoint=endpoint,
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

        return _decode_json(response, endpoint)

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a non-streaming chat completion request.

        Returns:
            Response dict whose 'message' is a dict with 'content'

        Raises:
            httpx.HTTPError: On transport errors and error statuses
            ProviderError: If the reply isn't a chat response
        """
        model = model or config.CHAT_MODEL

        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.info("ollama_chat_request", model=model, message_count=len(messages))
        data = await self._post("/api/chat", payload)

        message = data.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content", ""), str):
            logger.error("ollama_malformed_chat", model=model, message_type=type(message).__name__)
            raise ProviderError("Chat reply has no message object")

        logger.info(
            "ollama_chat_response",
            model=model,
            response_length=len(message.get("content", "")),
        )
        return data

    async def embed(self, inputs: List[str], model: str = None) -> Dict[str, Any]:
        """Embed a batch of texts.

        Returns:
            Response dict whose 'embeddings' is a list of vectors

        Raises:
            httpx.HTTPError: On transport errors and error statuses
            ProviderError: If the reply has no list of vectors
        """
        model = model or config.EMBEDDING_MODEL

        logger.debug("ollama_embedding_request", model=model, input_count=len(inputs))
        data = await self._post("/api/embed", {"model": model, "input": inputs})

        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or not all(isinstance(v, list) for v in embeddings):
            logger.error("ollama_malformed_embeddings", model=model)
            raise ProviderError("Embed reply has no list of vectors")

        logger.debug("ollama_embedding_response", model=model, vector_count=len(embeddings))
        return data

    async def list_models(self) -> List[str]:
        """Names of the locally installed models.

        Raises:
            httpx.HTTPError: On transport errors and error statuses
            ProviderError: If the reply can't be read
        """
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise

        models = _decode_json(response, "/api/tags").get("models") or []
        try:
            return [m["name"] for m in models]
        except (KeyError, TypeError) as e:
            raise ProviderError("Unexpected model list from /api/tags") from e
