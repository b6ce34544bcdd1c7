from __future__ import annotations

import os
from typing import Any, Mapping

from .defaults import DEFAULTS, ENV_MAP


class Settings:
    """Read-only settings view.

    Lookup order: explicit override, then environment (ENV_MAP), then DEFAULTS.
    """

    def __init__(self, overrides: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None):
        self._overrides = {k: str(v) for k, v in (overrides or {}).items() if v is not None}
        self._environ = os.environ if environ is None else environ

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        if key in self._overrides:
            return self._overrides[key]
        env_name = ENV_MAP.get(key)
        if env_name:
            v = self._environ.get(env_name)
            if v is not None and v.strip():
                return v.strip()
        if key in DEFAULTS:
            return DEFAULTS[key]
        return default

    def as_dict(self) -> dict[str, str]:
        keys = set(DEFAULTS) | set(self._overrides)
        return {k: self.get_setting(k, "") or "" for k in sorted(keys)}


def _read_setting(settings: Settings, key: str, cast=str, default=None):
    v = settings.get_setting(key, default=None)
    if v is None:
        return default
    try:
        return cast(v)
    except Exception:
        return default
