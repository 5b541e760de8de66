from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.providers import AnthropicProvider, OpenAIProvider, ProviderError, get_provider  # noqa: E402


def _mock_async_client(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def _factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _factory)


def test_get_provider_drops_models_from_another_vendor():
    provider = get_provider("openai", "sk-test", reasoning_model="claude-sonnet", utility_model="gpt-4.1-mini")
    assert isinstance(provider, OpenAIProvider)
    assert provider.get_reasoning_model() == OpenAIProvider.DEFAULT_REASONING_MODEL
    assert provider.get_utility_model() == "gpt-4.1-mini"
    with pytest.raises(ValueError):
        get_provider("google", "key")


def test_openai_chat_retries_with_alternate_token_field(monkeypatch):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        if "max_tokens" in body:
            return httpx.Response(400, text="Unsupported parameter: 'max_tokens'")
        return httpx.Response(200, json={
            "choices": [{"message": {"content": '{"quests": []}'}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 4},
            "model": "gpt-4o",
        })

    _mock_async_client(monkeypatch, handler)
    provider = OpenAIProvider("sk-test")

    result = asyncio.run(provider.chat([{"role": "user", "content": "hi"}], "gpt-4o", system="json please", max_tokens=50))

    assert result["content"] == '{"quests": []}'
    assert result["tokens_in"] == 12
    assert bodies[0]["messages"][0] == {"role": "system", "content": "json please"}
    assert bodies[0]["response_format"] == {"type": "json_object"}
    assert bodies[1]["max_completion_tokens"] == 50


def test_anthropic_chat_joins_text_blocks_and_raises_on_error(monkeypatch):
    replies = [
        httpx.Response(200, json={
            "content": [{"type": "text", "text": '{"a": '}, {"type": "text", "text": "1}"}],
            "usage": {"input_tokens": 7, "output_tokens": 3},
        }),
        httpx.Response(529, text="overloaded"),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "sk-ant"
        return replies.pop(0)

    _mock_async_client(monkeypatch, handler)
    provider = AnthropicProvider("sk-ant")

    result = asyncio.run(provider.chat([{"role": "user", "content": "hi"}], provider.get_reasoning_model()))
    assert result["content"] == '{"a": 1}'
    assert result["tokens_out"] == 3

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.chat([{"role": "user", "content": "hi"}], provider.get_reasoning_model()))
    assert exc_info.value.status_code == 529

