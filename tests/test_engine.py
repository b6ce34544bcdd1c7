from __future__ import annotations

import base64
import json

import pytest

from slicepilot.core.engine import InferenceEngine, image_budget
from slicepilot.core.errors import MalformedPlanResponse
from slicepilot.core.llm_client import LLMError
from slicepilot.core.plan import SelectionPlan, SeriesSelection
from slicepilot.core.prompts import ChatMessage
from slicepilot.core.settings import Settings

PLAN_JSON = json.dumps(
    {
        "reasoning": "thin axials",
        "selections": [
            {"seriesNumber": "3", "role": "primary", "sliceRange": [1, 300], "samplingStrategy": "uniform",
             "samplingParam": 12, "windowCenter": -600, "windowWidth": 1500}
        ],
        "totalImages": 12,
    }
)


class FakeClient:
    def __init__(self, cfg, replies, calls):
        self.cfg = cfg
        self.replies = replies
        self.calls = calls

    def chat_completions(self, *, model, messages, temperature, max_tokens):
        self.calls.append(
            {"provider": self.cfg.name, "model": model, "messages": messages,
             "temperature": temperature, "max_tokens": max_tokens}
        )
        reply = self.replies[self.cfg.name]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _engine(replies, **overrides):
    calls = []

    def factory(cfg, timeout=300):
        return FakeClient(cfg, replies, calls)

    engine = InferenceEngine(Settings(overrides, environ={}), client_factory=factory)
    return engine, calls


def test_local_provider_used_when_no_keys(chest_study):
    engine, calls = _engine({"ollama": PLAN_JSON})
    plan = engine.plan_selection(chest_study, "nodules?")

    assert isinstance(plan, SelectionPlan)
    assert plan.target_series == "3"
    call = calls[0]
    assert call["provider"] == "ollama"
    assert call["model"] == "alibayram/medgemma:4b"
    assert call["temperature"] == 0.1
    assert [m["role"] for m in call["messages"]] == ["system", "user"]
    assert "nodules?" in call["messages"][1]["content"]
    assert engine.last_result.provider_used == "ollama"


def test_falls_back_to_next_provider(chest_study):
    engine, calls = _engine(
        {"openrouter": LLMError("HTTP 502"), "ollama": PLAN_JSON}, openrouter_api_key="sk-test"
    )
    engine.plan_selection(chest_study, "q")
    assert [c["provider"] for c in calls] == ["openrouter", "ollama"]


def test_custom_provider_goes_first():
    engine, _ = _engine({}, custom_base_url="http://llm.local/v1", custom_api_key="k", openrouter_api_key="x")
    assert [c.name for c in engine._provider_order_usable()] == ["custom", "openrouter", "ollama"]


def test_explicit_mode_without_key_is_an_error(chest_study):
    engine, calls = _engine({}, provider_mode="openrouter")
    with pytest.raises(LLMError) as ei:
        engine.plan_selection(chest_study, "q")
    assert "No provider configured" in str(ei.value)
    assert calls == []


def test_last_failure_is_raised_when_every_provider_fails(chest_study):
    engine, _ = _engine({"ollama": LLMError("connection refused")})
    with pytest.raises(LLMError, match="connection refused"):
        engine.plan_selection(chest_study, "q")


def test_malformed_plan_reply(chest_study):
    engine, _ = _engine({"ollama": "I am not sure which slices to pick."})
    with pytest.raises(MalformedPlanResponse):
        engine.plan_selection(chest_study, "q")


def test_analyze_sends_each_image_followed_by_its_label(chest_study):
    engine, calls = _engine({"ollama": "No nodules."})
    plan = SelectionPlan.build("r", [SeriesSelection("3", (1, 2))])
    text = engine.analyze_images([b"one", b"two"], chest_study, "q", plan, ["Slice 1/300", "Slice 2/300"])

    assert text == "No nodules."
    call = calls[0]
    assert call["model"] == "gemma3:4b"
    parts = call["messages"][1]["content"]
    assert [p["type"] for p in parts] == ["image_url", "text", "image_url", "text", "text"]
    url = parts[0]["image_url"]["url"]
    assert url.startswith("data:image/jpeg;base64,")
    assert base64.b64decode(url.split(",", 1)[1]) == b"one"
    assert parts[1]["text"] == "Slice 1/300"
    assert parts[3]["text"] == "Slice 2/300"
    assert "Analyze ONLY the following 2 images" in parts[4]["text"]


def test_follow_up_sends_history(chest_study):
    engine, calls = _engine({"ollama": "It looks normal."})
    history = [ChatMessage.user("q"), ChatMessage.assistant("a"), ChatMessage.user("and the liver?")]
    assert engine.continue_conversation(history, chest_study) == "It looks normal."
    msgs = calls[0]["messages"]
    assert [m["role"] for m in msgs] == ["system", "user", "assistant", "user"]
    assert msgs[-1]["content"] == "and the liver?"


def test_model_labels():
    engine, _ = _engine({}, ollama_model_planning="llama3", ollama_model_vision="llava")
    assert engine.model_labels() == ("llama3", "llava")


@pytest.mark.parametrize("value,expected", [("12", 12), ("20", 20), ("64", 20), ("0", 1), ("lots", 20)])
def test_image_budget_never_exceeds_the_hard_limit(value, expected):
    assert image_budget(Settings({"max_images": value}, environ={})) == expected
