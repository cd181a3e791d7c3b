from __future__ import annotations

from chat.adapters.openrouter_adapter import OpenRouterAdapter
from chat.llm_client import LlmClient
from env_loader import env_float, env_str, load_env_once

DEFAULT_MODEL = "openai/gpt-4o-mini"


def build_llm_client(
    *,
    model: str | None = None,
    api_key: str | None = None,
) -> LlmClient:
    load_env_once()

    return OpenRouterAdapter(
        model=model or env_str("OPENROUTER_MODEL", DEFAULT_MODEL),
        api_key=api_key
        or env_str("OPENROUTER_API_KEY")
        or env_str("OPENROUTER_KEY"),
        app_name=env_str("OPENROUTER_APP_NAME", "Pro Chat"),
        http_referer=env_str("OPENROUTER_HTTP_REFERER"),
        timeout_s=env_float("OPENROUTER_TIMEOUT_SECONDS", 120.0, minimum=1.0),
    )
