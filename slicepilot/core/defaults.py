from __future__ import annotations

"""Default settings.

All values are strings, like the values an env var would carry.
Every key can be overridden via the environment (see ENV_MAP) or explicitly
when building a Settings object.
"""

DEFAULTS: dict[str, str] = {
    # Provider routing
    "provider_mode": "auto",  # auto|openrouter|ollama|custom
    "openrouter_base_url": "https://openrouter.ai/api/v1",
    "ollama_base_url": "http://localhost:11434/v1",
    "custom_base_url": "",

    # API keys (prefer environment variables)
    "openrouter_api_key": "",
    "ollama_api_key": "ollama",  # Ollama ignores the key but the header must be present
    "custom_api_key": "",

    # Model routing. Planning is text-only; analysis needs a vision model.
    "openrouter_model_planning": "anthropic/claude-sonnet-4.5",
    "openrouter_model_vision": "anthropic/claude-sonnet-4.5",
    "ollama_model_planning": "alibayram/medgemma:4b",
    "ollama_model_vision": "gemma3:4b",
    "model_planning": "",
    "model_vision": "",

    # Generation params per call
    "planning_temperature": "0.1",
    "planning_max_tokens": "1024",
    "analysis_temperature": "0.5",
    "analysis_max_tokens": "4096",
    "follow_up_temperature": "0.5",
    "follow_up_max_tokens": "4096",
    "request_timeout": "300",

    # Selection / export
    "max_images": "20",
    "export_max_workers": "4",
}

# Environment variable names (optional)
ENV_MAP: dict[str, str] = {
    "provider_mode": "SLICEPILOT_PROVIDER",
    "openrouter_api_key": "OPENROUTER_API_KEY",
    "custom_api_key": "SLICEPILOT_API_KEY",
    "custom_base_url": "SLICEPILOT_BASE_URL",

    # Optional base URLs
    "openrouter_base_url": "OPENROUTER_BASE_URL",
    "ollama_base_url": "OLLAMA_BASE_URL",

    # Optional model ids
    "openrouter_model_planning": "OPENROUTER_MODEL_PLANNING",
    "openrouter_model_vision": "OPENROUTER_MODEL_VISION",
    "ollama_model_planning": "OLLAMA_MODEL_PLANNING",
    "ollama_model_vision": "OLLAMA_MODEL_VISION",
    "model_planning": "SLICEPILOT_MODEL_PLANNING",
    "model_vision": "SLICEPILOT_MODEL_VISION",

    "request_timeout": "SLICEPILOT_REQUEST_TIMEOUT",
    "export_max_workers": "SLICEPILOT_EXPORT_WORKERS",
}
