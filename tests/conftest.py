import json

import httpx
import pytest
import pytest_asyncio

from llmrelay.context import ModelConfig, ProviderConfig, RequestContext, StaticChatContext


@pytest.fixture
def mock_env(monkeypatch, tmp_path):
    """Mock environment variables for API keys (and run outside any real .env)."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")
    monkeypatch.delenv("OLLAMA_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_BASE", raising=False)


API_BASES = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "deepseek": "https://api.deepseek.com",
    "ollama": "http://localhost:11434",
}


@pytest.fixture
def make_context():
    """Factory for a StaticChatContext with sensible test defaults."""
    def _make(provider="openai", model="test-model", capabilities=None, **options):
        return StaticChatContext(
            ProviderConfig(name=provider, api_base=API_BASES.get(provider, "http://test"), api_key="test-key"),
            ModelConfig(name=model, capabilities=capabilities or {}),
            **options,
        )
    return _make


@pytest.fixture
def make_request_context(make_context):
    """Factory for the immutable per-request snapshot."""
    def _make(provider="openai", model="test-model", capabilities=None, **options):
        return RequestContext.from_chat_context(make_context(provider, model, capabilities, **options))
    return _make


class RecordingTransport(httpx.MockTransport):
    """
    MockTransport that replays queued responses and records request bodies.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("Unexpected request to %s" % request.url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def payloads(self):
        return [json.loads(request.content) for request in self.requests]


@pytest_asyncio.fixture
async def mock_http():
    """
    Build an AsyncClient backed by queued responses. Clients are closed
    on teardown.

    Usage:
        client, transport = mock_http([httpx.Response(200, content=b"...")])
    """
    clients = []

    def _make(responses):
        transport = RecordingTransport(responses)
        client = httpx.AsyncClient(transport=transport)
        clients.append(client)
        return client, transport

    yield _make
    for client in clients:
        await client.aclose()


def sse(*events, done=True):
    """Encode dicts as an SSE body, optionally terminated by [DONE]."""
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def json_lines(*records):
    return "".join(json.dumps(record) + "\n" for record in records).encode("utf-8")


@pytest.fixture
def sse_body():
    return sse


@pytest.fixture
def json_lines_body():
    return json_lines
