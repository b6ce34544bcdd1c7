from __future__ import annotations

"""OpenAI-compatible /chat/completions client (OpenRouter, Ollama, any custom gateway)."""

import json
from dataclasses import dataclass, field
from typing import Any

import requests

from .errors import ProviderCommunicationFailure


class LLMError(ProviderCommunicationFailure):
    pass


@dataclass
class ProviderConfig:
    name: str  # openrouter|ollama|custom
    base_url: str
    api_key: str
    planning_model: str = ""
    vision_model: str = ""
    extra_headers: dict[str, str] = field(default_factory=dict)

    def normalized(self) -> "ProviderConfig":
        return ProviderConfig(
            name=self.name,
            base_url=(self.base_url or "").strip().rstrip("/"),
            api_key=(self.api_key or "").strip(),
            planning_model=(self.planning_model or "").strip(),
            vision_model=(self.vision_model or "").strip(),
            extra_headers=dict(self.extra_headers or {}),
        )


class OpenAICompatibleClient:
    def __init__(self, cfg: ProviderConfig, timeout: int = 300, session: requests.Session | None = None):
        self.cfg = cfg.normalized()
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fail(self, message: str) -> LLMError:
        return LLMError(f"Provider '{self.cfg.name}' {message}")

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.cfg.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.cfg.extra_headers)
        return headers

    def chat_completions(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        """Send one non-streaming completion request and return the reply text."""
        for what, value in (("base_url", self.cfg.base_url), ("api_key", self.cfg.api_key), ("model", model)):
            if not value:
                raise self._fail(f"is not usable: {what} is empty")

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            resp = self.session.post(
                f"{self.cfg.base_url}/chat/completions",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise self._fail(f"timed out after {self.timeout}s (model {model})") from e
        except requests.RequestException as e:
            raise self._fail(f"request failed: {e}") from e
        resp.encoding = "utf-8"

        if resp.status_code == 401:
            raise self._fail("rejected the request: invalid API key (HTTP 401)")
        if resp.status_code >= 400:
            try:
                detail: Any = resp.json()
            except ValueError:
                detail = resp.text
            raise self._fail(f"returned HTTP {resp.status_code}: {detail}")

        try:
            data = resp.json()
        except ValueError as e:
            raise self._fail(f"sent invalid JSON: {e}\n{resp.text[:1000]}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise self._fail(f"sent an unexpected response schema: {json.dumps(data)[:1200]}")
        return (content or "").strip()
