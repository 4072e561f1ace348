"""OpenAI chat-completions client used by the recipe and chat pipelines.

Requests JSON-mode output and returns the raw message content; parsing is
left to ``delisio.utils.json_utils``. Transport and HTTP errors are
wrapped in ``UpstreamFailure`` so the worker's retry policy sees a single
exception type.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from delisio.errors import UpstreamFailure
from delisio.services.http_client_manager import get_http_client

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings) -> "LLMClient":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.GPT_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[dict[str, str]] | None = None,
        temperature: float | None = None,
    ) -> str:
        """Send one chat-completions request and return the message text."""
        if not self.api_key:
            raise UpstreamFailure("OpenAI API key is not configured")

        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for turn in history or []:
            if turn.get("role") in ("user", "assistant") and turn.get("content"):
                messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": user_prompt})

        client = get_http_client("openai")
        try:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": self.temperature if temperature is None else temperature,
                    "max_tokens": self.max_tokens,
                    "response_format": {"type": "json_object"},
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            logger.warning("OpenAI returned HTTP %d: %s", code, exc.response.text[:200])
            raise UpstreamFailure(f"LLM request failed with HTTP {code}", upstreamStatus=code) from exc
        except httpx.HTTPError as exc:
            logger.warning("OpenAI request error: %s", exc)
            raise UpstreamFailure(f"LLM request failed: {exc}") from exc

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError) as exc:
            raise UpstreamFailure("LLM returned an unexpected response shape") from exc
        if not content:
            raise UpstreamFailure("LLM returned an empty response")
        return content
