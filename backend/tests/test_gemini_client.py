import asyncio

import httpx
import pytest

from app.ai.gemini_client import (
    STRUCTURED_FUNCTION_NAME,
    GeminiClient,
    GeminiRequestError,
    GeminiResponseError,
)
from app.ai.prompt import ANSWER_SCHEMA


def _run(coro):
    return asyncio.run(coro)


def _client() -> GeminiClient:
    return GeminiClient(api_key="key", model="gemini-test", embedding_model="embed-test")


def _install_post(monkeypatch, client, payload=None, error=None):
    sent = []

    async def fake_post(url, body):
        sent.append((url, body))
        if error is not None:
            raise error
        return payload

    monkeypatch.setattr(client, "_post", fake_post)
    return sent


def test_complete_forces_structured_function_call(monkeypatch) -> None:
    client = _client()
    sent = _install_post(
        monkeypatch,
        client,
        payload={
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"functionCall": {"name": STRUCTURED_FUNCTION_NAME, "args": {"answer": "Hi"}}},
                        ]
                    }
                }
            ]
        },
    )

    result = _run(
        client.complete(
            "system",
            [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}],
            "now",
            ANSWER_SCHEMA,
        )
    )

    assert result == {"answer": "Hi"}
    url, body = sent[0]
    assert url.endswith("/gemini-test:generateContent")
    assert [item["role"] for item in body["contents"]] == ["user", "model", "user"]
    assert body["toolConfig"]["functionCallingConfig"]["mode"] == "ANY"
    assert body["tools"][0]["functionDeclarations"][0]["parameters"] is ANSWER_SCHEMA


def test_complete_without_function_call_is_response_error(monkeypatch) -> None:
    client = _client()
    _install_post(monkeypatch, client, payload={"candidates": [{"content": {"parts": [{"text": "plain"}]}}]})

    with pytest.raises(GeminiResponseError):
        _run(client.complete("system", [], "now", ANSWER_SCHEMA))


def test_function_call_args_may_be_json_text() -> None:
    result = _client()._parse_response(
        {"candidates": [{"content": {"parts": [{"functionCall": {"name": "respond", "args": '{"answer": "x"}'}}]}}]}
    )

    assert result.tool_calls[0].arguments == {"answer": "x"}


def test_embed_returns_float_vector(monkeypatch) -> None:
    client = _client()
    sent = _install_post(monkeypatch, client, payload={"embedding": {"values": [1, 0.5, -2]}})

    assert _run(client.embed("hello")) == [1.0, 0.5, -2.0]
    url, body = sent[0]
    assert url.endswith("/embed-test:embedContent")
    assert body["content"]["parts"][0]["text"] == "hello"


def test_embed_missing_values_is_response_error(monkeypatch) -> None:
    client = _client()
    _install_post(monkeypatch, client, payload={"embedding": {}})

    with pytest.raises(GeminiResponseError):
        _run(client.embed("hello"))


def test_transport_errors_become_request_errors(monkeypatch) -> None:
    class FailingAsyncClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, *args, **kwargs):
            raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr(httpx, "AsyncClient", FailingAsyncClient)

    with pytest.raises(GeminiRequestError) as exc_info:
        _run(_client().embed("hello"))

    assert exc_info.value.status_code == 503
