from __future__ import annotations

from typing import Any

from fastapi import Depends
from pydantic import BaseModel
from pydantic_ai.models import Model, ModelSettings, infer_model

from toolweave.config import Config, get_config
from toolweave.log import logger

SUPPORTED_PROVIDERS = [
    "openai",
    "anthropic",
    "google-gla",
    "groq",
    "mistral",
    "deepseek",
]

KNOWN_MODELS = {
    "openai": ["gpt-4o", "gpt-4o-mini", "o3-mini"],
    "anthropic": [
        "claude-sonnet-4-5",
        "claude-sonnet-4-5-thinking",
        "claude-haiku-4-5",
    ],
    "google-gla": ["gemini-2.5-flash", "gemini-2.5-flash-lite", "gemini-2.5-pro-thinking"],
    "groq": ["llama-3.3-70b-versatile"],
    "mistral": ["mistral-large-latest"],
    "deepseek": ["deepseek-chat", "deepseek-reasoner"],
}

THINKING_SUFFIX = "-thinking"


class ModelInitParams(BaseModel):
    provider: str
    model_name: str


def split_model_id(model_id: str) -> tuple[str | None, str]:
    """``"anthropic:claude-sonnet-4-5"`` -> ``("anthropic", "claude-sonnet-4-5")``."""
    if ":" in model_id:
        provider, model_name = model_id.split(":", 1)
        return provider, model_name
    if "/" in model_id:
        provider, model_name = model_id.split("/", 1)
        return provider, model_name
    return None, model_id


def is_reasoning_model(model_name: str) -> bool:
    return "reasoning" in model_name or model_name.endswith(THINKING_SUFFIX)


def init_model(params: ModelInitParams) -> Model:
    if params.provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported provider: {params.provider}")
    # The thinking suffix selects reasoning options, it is not part of the provider's model id
    model_name = params.model_name.removesuffix(THINKING_SUFFIX)
    logger.debug(f"Initializing model {params.provider}:{model_name}")
    return infer_model(f"{params.provider}:{model_name}")


def get_default_model(config: Config = Depends(get_config)) -> Model | None:
    if not config.default_model_provider or not config.default_model_name:
        return None
    try:
        return init_model(
            ModelInitParams(
                provider=config.default_model_provider,
                model_name=config.default_model_name,
            )
        )
    except Exception as e:
        logger.exception(f"Failed to initialize default model: {e}")
        return None


def reasoning_settings(provider: str | None, model_name: str, budget_tokens: int) -> ModelSettings | None:
    """Provider specific options that turn on extended reasoning.

    Only request payloads change; the agent loop is the same for every model.
    """
    if not is_reasoning_model(model_name):
        return None
    if provider == "anthropic":
        return ModelSettings(anthropic_thinking={"type": "enabled", "budget_tokens": budget_tokens})
    if provider and provider.startswith("google"):
        return ModelSettings(google_thinking_config={"include_thoughts": True, "thinking_budget": budget_tokens})
    if provider == "openai":
        return ModelSettings(openai_reasoning_effort="high", openai_reasoning_summary="detailed")
    return None


def merge_model_settings(*settings: dict[str, Any] | None) -> ModelSettings | None:
    """Later settings win key by key; ``None`` when nothing is set."""
    merged: dict[str, Any] = {}
    for s in settings:
        if s:
            merged.update(s)
    return ModelSettings(**merged) if merged else None
