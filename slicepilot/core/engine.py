from __future__ import annotations

"""Inference provider: the three LLM calls the pipeline needs.

plan_selection   -> SelectionPlan (text-only planning model)
analyze_images   -> str           (vision model, one call with every image)
continue_conversation -> str      (planning model, history only)
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .llm_client import LLMError, OpenAICompatibleClient, ProviderConfig
from .plan import MAX_IMAGES, SelectionPlan, parse_plan_response
from .prompts import (
    ChatMessage,
    ViewportContext,
    build_analysis_system_prompt,
    build_analysis_user_prompt,
    build_follow_up_system_prompt,
    build_selection_system_prompt,
    build_selection_user_prompt,
)
from .settings import Settings, _read_setting
from .study import Study

logger = logging.getLogger(__name__)

PROVIDERS = ("openrouter", "ollama", "custom")


@dataclass
class EngineResult:
    text: str
    provider_used: str
    model_used: str


def _image_to_data_url(data: bytes, mime: str = "image/jpeg") -> str:
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{b64}"


def image_budget(settings: Settings) -> int:
    """Configured image budget, never above the hard limit of MAX_IMAGES."""
    n = _read_setting(settings, "max_images", int, MAX_IMAGES)
    return max(1, min(n, MAX_IMAGES))


class InferenceEngine:
    def __init__(self, settings: Settings | None = None, *, client_factory=OpenAICompatibleClient):
        self.settings = settings or Settings()
        self._client_factory = client_factory
        self.last_result: Optional[EngineResult] = None

    # ---------- provider resolution ----------
    def _provider_configs(self) -> dict[str, ProviderConfig]:
        s = self.settings
        openrouter = ProviderConfig(
            name="openrouter",
            base_url=_read_setting(s, "openrouter_base_url", str, "https://openrouter.ai/api/v1"),
            api_key=_read_setting(s, "openrouter_api_key", str, ""),
            planning_model=_read_setting(s, "openrouter_model_planning", str, ""),
            vision_model=_read_setting(s, "openrouter_model_vision", str, ""),
            extra_headers={"X-Title": "slicepilot"},
        )
        ollama = ProviderConfig(
            name="ollama",
            base_url=_read_setting(s, "ollama_base_url", str, "http://localhost:11434/v1"),
            api_key=_read_setting(s, "ollama_api_key", str, "ollama"),
            planning_model=_read_setting(s, "ollama_model_planning", str, ""),
            vision_model=_read_setting(s, "ollama_model_vision", str, ""),
        )
        custom = ProviderConfig(
            name="custom",
            base_url=_read_setting(s, "custom_base_url", str, ""),
            api_key=_read_setting(s, "custom_api_key", str, ""),
            planning_model=_read_setting(s, "model_planning", str, ""),
            vision_model=_read_setting(s, "model_vision", str, ""),
        )
        return {"openrouter": openrouter, "ollama": ollama, "custom": custom}

    def _provider_order(self) -> list[str]:
        mode = (_read_setting(self.settings, "provider_mode", str, "auto") or "auto").lower().strip()
        if mode in PROVIDERS:
            return [mode]
        order = []
        if (_read_setting(self.settings, "custom_base_url", str, "") or "").strip():
            order.append("custom")
        order.extend(["openrouter", "ollama"])
        return order

    def _provider_order_usable(self) -> list[ProviderConfig]:
        configs = self._provider_configs()
        usable: list[ProviderConfig] = []
        for name in self._provider_order():
            cfg = configs.get(name)
            if not cfg:
                continue
            if not (cfg.base_url or "").strip():
                continue
            if not (cfg.api_key or "").strip():
                continue
            usable.append(cfg)
        return usable

    def model_labels(self) -> tuple[str, str]:
        """(planning model, vision model) of the first usable provider, for display."""
        usable = self._provider_order_usable()
        if not usable:
            return "", ""
        return usable[0].planning_model, usable[0].vision_model

    # ---------- provider calling ----------
    def _call_first_available(
        self, *, kind: str, messages: list[dict[str, Any]], temperature: float, max_tokens: int
    ) -> EngineResult:
        providers = self._provider_order_usable()
        if not providers:
            raise LLMError(
                "No provider configured. Set OPENROUTER_API_KEY, run a local Ollama, "
                "or configure SLICEPILOT_BASE_URL / SLICEPILOT_API_KEY."
            )

        timeout = _read_setting(self.settings, "request_timeout", int, 300)
        last_err: Exception | None = None
        for cfg in providers:
            model = cfg.vision_model if kind == "vision" else cfg.planning_model
            if not model:
                continue
            client = self._client_factory(cfg, timeout=timeout)
            try:
                text = client.chat_completions(
                    model=model, messages=messages, temperature=temperature, max_tokens=max_tokens
                )
            except LLMError as e:
                logger.warning("Provider '%s' failed (%s); trying the next one", cfg.name, e)
                last_err = e
                continue
            logger.debug("Provider '%s' model '%s' answered %d chars", cfg.name, model, len(text))
            self.last_result = EngineResult(text=text, provider_used=cfg.name, model_used=model)
            return self.last_result
        raise LLMError(str(last_err) if last_err else f"No provider has a {kind} model configured")

    # ---------- provider contract ----------
    def plan_selection(
        self, study: Study, hint: str, viewport_context: Optional[ViewportContext] = None
    ) -> SelectionPlan:
        budget = image_budget(self.settings)
        messages = [
            {"role": "system", "content": build_selection_system_prompt(budget)},
            {"role": "user", "content": build_selection_user_prompt(study, hint, viewport_context)},
        ]
        result = self._call_first_available(
            kind="planning",
            messages=messages,
            temperature=_read_setting(self.settings, "planning_temperature", float, 0.1),
            max_tokens=_read_setting(self.settings, "planning_max_tokens", int, 1024),
        )
        logger.debug("Raw plan response: %s", result.text)
        return parse_plan_response(result.text, study)

    def analyze_images(
        self,
        images: Sequence[bytes],
        study: Study,
        hint: str,
        plan: SelectionPlan,
        labels: Sequence[str],
    ) -> str:
        parts: list[dict[str, Any]] = []
        for i, data in enumerate(images):
            parts.append({"type": "image_url", "image_url": {"url": _image_to_data_url(data)}})
            parts.append({"type": "text", "text": labels[i] if i < len(labels) else f"Image {i + 1}"})
        parts.append({"type": "text", "text": build_analysis_user_prompt(study, hint, plan, labels)})

        messages = [
            {"role": "system", "content": build_analysis_system_prompt()},
            {"role": "user", "content": parts},
        ]
        result = self._call_first_available(
            kind="vision",
            messages=messages,
            temperature=_read_setting(self.settings, "analysis_temperature", float, 0.5),
            max_tokens=_read_setting(self.settings, "analysis_max_tokens", int, 4096),
        )
        return result.text

    def continue_conversation(self, history: Sequence[ChatMessage], study: Study) -> str:
        messages: list[dict[str, Any]] = [{"role": "system", "content": build_follow_up_system_prompt(study)}]
        for m in history:
            if m.role not in {"user", "assistant"}:
                continue
            messages.append({"role": m.role, "content": m.content})
        result = self._call_first_available(
            kind="planning",
            messages=messages,
            temperature=_read_setting(self.settings, "follow_up_temperature", float, 0.5),
            max_tokens=_read_setting(self.settings, "follow_up_max_tokens", int, 4096),
        )
        return result.text
