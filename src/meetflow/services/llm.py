"""LLM provider abstraction via LiteLLM Router.

Configures model aliases used by the analysis capability:
- "reasoning": Claude Sonnet 4 primary, GPT-4o fallback
- "fast": Claude Haiku primary, GPT-4o-mini fallback

Only providers with an API key configured are registered. With no keys
the router is None and LLMCapability falls back to its default model id,
which litellm resolves from the environment.
"""

from __future__ import annotations

import structlog
from litellm import Router

from src.meetflow.config import Settings, get_settings

logger = structlog.get_logger(__name__)


_PROVIDER_MODELS: dict[str, dict[str, str]] = {
    "anthropic": {
        "reasoning": "anthropic/claude-sonnet-4-20250514",
        "fast": "anthropic/claude-haiku-3-20240307",
    },
    "openai": {
        "reasoning": "openai/gpt-4o",
        "fast": "openai/gpt-4o-mini",
    },
}


def build_model_list(settings: Settings) -> list[dict]:
    """Router deployments in priority order (first listed is primary)."""
    keys = {
        "anthropic": settings.ANTHROPIC_API_KEY,
        "openai": settings.OPENAI_API_KEY,
    }
    model_list: list[dict] = []
    for provider, api_key in keys.items():
        if not api_key:
            continue
        for alias, model in _PROVIDER_MODELS[provider].items():
            model_list.append({
                "model_name": alias,
                "litellm_params": {"model": model, "api_key": api_key},
            })
    return model_list


class LLMService:
    """Holds the LiteLLM Router shared by analysis capability calls."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        model_list = build_model_list(settings)

        if not model_list:
            logger.warning("No LLM API keys configured -- LLM router unavailable")
            self.router = None
            return

        self.router = Router(
            model_list=model_list,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )
        logger.info(
            "llm_router_configured",
            deployments=len(model_list),
            aliases=sorted({m["model_name"] for m in model_list}),
        )

    @property
    def available(self) -> bool:
        return self.router is not None
