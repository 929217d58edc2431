from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from openai import OpenAI


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    raw: dict[str, Any]
    finish_reason: str | None = None


class OpenAICompatibleChatClient:
    """Minimal OpenAI-compatible chat client wrapper.

    Providers are swapped through OpenAI-compatible gateways (`OPENAI_API_BASE`).
    SDK exceptions (timeouts, rate limits, API errors) are not translated here; callers
    decide what an upstream failure means for them.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        # Retries are owned by the job queue (backoff between worker runs), not the SDK.
        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s, max_retries=0)

    def chat(
        self,
        *,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> ChatCompletionResult:
        return self.chat_messages(
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )

    def chat_messages(
        self,
        *,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> ChatCompletionResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": float(temperature),
        }
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        resp = self._client.chat.completions.create(**payload)
        raw = resp.model_dump()
        if not resp.choices:
            return ChatCompletionResult(content="", raw=raw, finish_reason=None)
        choice = resp.choices[0]
        return ChatCompletionResult(
            content=(choice.message.content or "").strip(),
            raw=raw,
            finish_reason=getattr(choice, "finish_reason", None),
        )
