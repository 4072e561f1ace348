"""Tests for the chat-completions client."""
import asyncio
import json

import httpx
import pytest

from delisio.errors import UpstreamFailure
from delisio.services import llm_client
from delisio.services.llm_client import LLMClient


def use_transport(monkeypatch, handler):
    seen = []

    def wrapped(request):
        seen.append(request)
        return handler(request)

    monkeypatch.setattr(
        llm_client, "get_http_client",
        lambda platform: httpx.AsyncClient(transport=httpx.MockTransport(wrapped)),
    )
    return seen


def completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestCompleteJson:
    def test_sends_history_and_returns_content(self, monkeypatch):
        seen = use_transport(monkeypatch, lambda req: completion('{"reply": "ok"}'))
        client = LLMClient(api_key="sk-test", model="gpt-test", base_url="https://llm.test/v1/")

        history = [
            {"role": "user", "content": "hi"},
            {"role": "system", "content": "ignored"},
            {"role": "assistant", "content": ""},
        ]
        out = asyncio.run(client.complete_json("be helpful", "dinner?", history=history))
        assert out == '{"reply": "ok"}'

        req = seen[0]
        assert str(req.url) == "https://llm.test/v1/chat/completions"
        assert req.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(req.content)
        assert body["model"] == "gpt-test"
        assert body["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in body["messages"]] == ["system", "user", "user"]

    def test_http_error_becomes_upstream_failure(self, monkeypatch):
        use_transport(monkeypatch, lambda req: httpx.Response(429, text="slow down"))
        client = LLMClient(api_key="sk-test", model="gpt-test")
        with pytest.raises(UpstreamFailure) as exc_info:
            asyncio.run(client.complete_json("s", "u"))
        assert exc_info.value.extra["upstreamStatus"] == 429

    def test_transport_error_becomes_upstream_failure(self, monkeypatch):
        def boom(req):
            raise httpx.ConnectError("refused", request=req)

        use_transport(monkeypatch, boom)
        with pytest.raises(UpstreamFailure):
            asyncio.run(LLMClient(api_key="sk-test", model="m").complete_json("s", "u"))

    def test_empty_content(self, monkeypatch):
        use_transport(monkeypatch, lambda req: completion(""))
        with pytest.raises(UpstreamFailure, match="empty"):
            asyncio.run(LLMClient(api_key="sk-test", model="m").complete_json("s", "u"))

    def test_missing_api_key(self):
        with pytest.raises(UpstreamFailure, match="not configured"):
            asyncio.run(LLMClient(api_key="", model="m").complete_json("s", "u"))
