from __future__ import annotations

from prpanel_core.providers.anthropic import AnthropicInvoker
from prpanel_core.providers.openai import OpenAIInvoker


def get_invoker(config: dict):
    model = config["model"]
    if model == "anthropic":
        return AnthropicInvoker(api_key=config["anthropic_api_key"])
    if model == "openai":
        return OpenAIInvoker(api_key=config["openai_api_key"])
    raise ValueError(f"Unknown model provider: {model!r}. Choose 'anthropic' or 'openai'.")
