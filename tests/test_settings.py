from __future__ import annotations

from slicepilot.core.defaults import DEFAULTS
from slicepilot.core.settings import Settings, _read_setting
from slicepilot.core.utils import float_list, opt_float, opt_int, round_half_up


def test_lookup_order():
    env = {"SLICEPILOT_PROVIDER": "ollama", "OPENROUTER_API_KEY": "env-key"}
    s = Settings({"openrouter_api_key": "override"}, environ=env)
    assert s.get_setting("openrouter_api_key") == "override"
    assert s.get_setting("provider_mode") == "ollama"
    assert s.get_setting("max_images") == DEFAULTS["max_images"]
    assert s.get_setting("no_such_key", "fallback") == "fallback"


def test_blank_environment_values_are_ignored():
    s = Settings(environ={"SLICEPILOT_PROVIDER": "   "})
    assert s.get_setting("provider_mode") == "auto"


def test_read_setting_casts_and_falls_back():
    s = Settings({"request_timeout": "abc", "max_images": 12}, environ={})
    assert _read_setting(s, "max_images", int, 20) == 12
    assert _read_setting(s, "request_timeout", int, 300) == 300
    assert _read_setting(s, "planning_temperature", float, 1.0) == 0.1
    assert _read_setting(s, "missing", int, 7) == 7


def test_as_dict_includes_overrides():
    d = Settings({"extra": "1"}, environ={}).as_dict()
    assert d["extra"] == "1"
    assert d["provider_mode"] == "auto"


def test_numeric_helpers():
    assert round_half_up(2.5) == 3
    assert round_half_up(-0.5) == 0
    assert opt_float("1e3") == 1000.0
    assert opt_float(float("nan")) is None
    assert opt_float(True) is None
    assert opt_int("12") == 12
    assert float_list("1\\2\\3", 3) == [1.0, 2.0, 3.0]
    assert float_list([1, "x", 3], 3) is None
    assert float_list([1, 2], 3) is None
