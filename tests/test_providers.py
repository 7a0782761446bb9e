"""Tests for the Ollama client, embedding provider and answer generator."""
import asyncio
import json

import httpx
import pytest

from librarian.errors import GenerationError, ProviderError
from librarian.llm_client import OllamaClient
from librarian.rag.embeddings import EmbeddingProvider
from librarian.rag.generator import AnswerGenerator


class StubClient:
    """Stands in for OllamaClient with canned responses."""

    def __init__(self, embed_response=None, chat_response=None, error=None, delay=0.0):
        self.embed_response = embed_response
        self.chat_response = chat_response
        self.error = error
        self.delay = delay
        self.embed_batches = []
        self.chat_requests = []

    async def embed(self, inputs, model=None):
        self.embed_batches.append(list(inputs))
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if callable(self.embed_response):
            return self.embed_response(inputs)
        return self.embed_response

    async def chat(self, messages, model=None, temperature=None):
        self.chat_requests.append({"messages": messages, "model": model, "temperature": temperature})
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.chat_response


def _vectors(inputs, dimension=4):
    return {"embeddings": [[float(len(text))] * dimension for text in inputs]}


@pytest.fixture
def mock_ollama(monkeypatch):
    """Route OllamaClient's HTTP calls to an in-process handler."""
    requests = []
    responses = {}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = responses[request.url.path]
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return requests, responses


async def test_client_embed_posts_batch(mock_ollama):
    requests, responses = mock_ollama
    responses["/api/embed"] = (200, {"embeddings": [[0.1, 0.2]]})

    data = await OllamaClient(base_url="http://ollama.test").embed(["hello"], model="embedder")

    assert data == {"embeddings": [[0.1, 0.2]]}
    assert json.loads(requests[0].content) == {"model": "embedder", "input": ["hello"]}


async def test_client_chat_is_non_streaming_with_temperature(mock_ollama):
    requests, responses = mock_ollama
    responses["/api/chat"] = (200, {"message": {"role": "assistant", "content": "hi"}})

    await OllamaClient(base_url="http://ollama.test").chat(
        [{"role": "user", "content": "hello"}], model="chat", temperature=0.7
    )

    payload = json.loads(requests[0].content)
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.7}


async def test_client_raises_on_http_error(mock_ollama):
    _, responses = mock_ollama
    responses["/api/chat"] = (500, {"error": "boom"})

    with pytest.raises(httpx.HTTPStatusError):
        await OllamaClient(base_url="http://ollama.test").chat([{"role": "user", "content": "x"}])


async def test_client_lists_models(mock_ollama):
    _, responses = mock_ollama
    responses["/api/tags"] = (200, {"models": [{"name": "gemma3:12b"}, {"name": "mxbai-embed-large:latest"}]})

    models = await OllamaClient(base_url="http://ollama.test").list_models()

    assert models == ["gemma3:12b", "mxbai-embed-large:latest"]


async def test_embed_batches_and_preserves_order():
    client = StubClient(embed_response=_vectors)
    provider = EmbeddingProvider(client=client, dimension=4, batch_size=2)

    vectors = await provider.embed(["a", "bb", "ccc", "dddd", "eeeee"])

    assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert [len(b) for b in client.embed_batches] == [2, 2, 1]


async def test_embed_empty_input_makes_no_call():
    client = StubClient(embed_response=_vectors)
    assert await EmbeddingProvider(client=client, dimension=4).embed([]) == []
    assert client.embed_batches == []


async def test_embed_count_mismatch_is_provider_error():
    client = StubClient(embed_response={"embeddings": [[1.0, 1.0, 1.0, 1.0]]})
    provider = EmbeddingProvider(client=client, dimension=4)

    with pytest.raises(ProviderError):
        await provider.embed(["one", "two"])


async def test_embed_dimension_mismatch_is_provider_error():
    client = StubClient(embed_response={"embeddings": [[1.0, 1.0]]})
    provider = EmbeddingProvider(client=client, dimension=4)

    with pytest.raises(ProviderError):
        await provider.embed_query("one")


async def test_embed_http_failure_is_provider_error():
    client = StubClient(error=httpx.ConnectError("connection refused"))
    provider = EmbeddingProvider(client=client, dimension=4)

    with pytest.raises(ProviderError):
        await provider.embed_query("one")


async def test_embed_timeout_is_provider_error():
    client = StubClient(embed_response=_vectors, delay=0.5)
    provider = EmbeddingProvider(client=client, dimension=4, timeout=0.05)

    with pytest.raises(ProviderError):
        await provider.embed_query("one")


async def test_generate_sends_system_and_user_messages():
    client = StubClient(chat_response={"message": {"content": "  The answer.  "}})
    generator = AnswerGenerator(client=client, model="chat", temperature=0.7)

    answer = await generator.generate("system prompt", "user question")

    assert answer == "The answer."
    request = client.chat_requests[0]
    assert request["messages"] == [
        {"role": "system", "content": "system prompt"},
        {"role": "user", "content": "user question"},
    ]
    assert request["temperature"] == 0.7


async def test_generate_empty_reply_is_generation_error():
    client = StubClient(chat_response={"message": {"content": "   "}})

    with pytest.raises(GenerationError):
        await AnswerGenerator(client=client).generate("system", "question")


async def test_generate_http_failure_is_generation_error():
    client = StubClient(error=httpx.ReadTimeout("slow"))

    with pytest.raises(GenerationError):
        await AnswerGenerator(client=client).generate("system", "question")


async def test_generate_timeout_is_generation_error():
    client = StubClient(chat_response={"message": {"content": "late"}}, delay=0.5)

    with pytest.raises(GenerationError):
        await AnswerGenerator(client=client, timeout=0.05).generate("system", "question")


async def test_client_non_json_reply_is_provider_error(mock_ollama):
    _, responses = mock_ollama
    responses["/api/embed"] = (200, "<html>proxy error</html>")

    with pytest.raises(ProviderError):
        await OllamaClient(base_url="http://ollama.test").embed(["hello"])


async def test_client_chat_without_message_object_is_provider_error(mock_ollama):
    _, responses = mock_ollama
    responses["/api/chat"] = (200, {"message": "oops"})

    with pytest.raises(ProviderError):
        await OllamaClient(base_url="http://ollama.test").chat([{"role": "user", "content": "x"}])


async def test_client_malformed_model_list_is_provider_error(mock_ollama):
    _, responses = mock_ollama
    responses["/api/tags"] = (200, {"models": ["gemma3:12b"]})

    with pytest.raises(ProviderError):
        await OllamaClient(base_url="http://ollama.test").list_models()


async def test_embedding_provider_over_html_reply_is_provider_error(mock_ollama):
    _, responses = mock_ollama
    responses["/api/embed"] = (200, "<html>proxy error</html>")
    provider = EmbeddingProvider(client=OllamaClient(base_url="http://ollama.test"), dimension=4)

    with pytest.raises(ProviderError):
        await provider.embed_query("hello")


async def test_generator_over_malformed_chat_reply_is_generation_error(mock_ollama):
    _, responses = mock_ollama
    responses["/api/chat"] = (200, {"message": "oops"})
    generator = AnswerGenerator(client=OllamaClient(base_url="http://ollama.test"))

    with pytest.raises(GenerationError):
        await generator.generate("system", "question")


@pytest.mark.parametrize("payload", [
    {"embeddings": "nope"},
    {"embeddings": [["a", "b", "c", "d"]]},
    {"embeddings": [None]},
    {},
    ["not", "a", "dict"],
])
async def test_embed_malformed_payload_is_provider_error(payload):
    provider = EmbeddingProvider(client=StubClient(embed_response=payload), dimension=4)

    with pytest.raises(ProviderError):
        await provider.embed_query("one")


@pytest.mark.parametrize("payload", [{"message": "oops"}, {"message": {"content": 42}}, {}, None])
async def test_generate_malformed_payload_is_generation_error(payload):
    client = StubClient(chat_response=payload)

    with pytest.raises(GenerationError):
        await AnswerGenerator(client=client).generate("system", "question")


async def test_generate_client_value_error_is_generation_error():
    client = StubClient(error=ValueError("Expecting value"))

    with pytest.raises(GenerationError):
        await AnswerGenerator(client=client).generate("system", "question")
