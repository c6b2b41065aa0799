from typing import Any, Dict, Type

from ..context import RequestContext

from .base import BaseChatProvider
from .openai import OpenAIChatProvider
from .anthropic import AnthropicChatProvider
from .ollama import OllamaChatProvider
from .deepseek import DeepSeekChatProvider

PROVIDERS: Dict[str, Type[BaseChatProvider]] = {
    "openai": OpenAIChatProvider,
    "anthropic": AnthropicChatProvider,
    "ollama": OllamaChatProvider,
    "deepseek": DeepSeekChatProvider,
}

# Alternate names accepted from settings
ALIASES: Dict[str, str] = {
    "claude": "anthropic",
    "openai-compatible": "openai",
}


def get_provider_class(name: str) -> Type[BaseChatProvider]:
    """
    Resolve a provider name (or alias) to its adapter class.

    Raises:
        ValueError: If the provider is not supported.
    """
    key = name.lower()
    key = ALIASES.get(key, key)
    if key not in PROVIDERS:
        raise ValueError(f"Provider '{name}' not configured or not supported.")
    return PROVIDERS[key]


def create_provider(name: str, context: RequestContext, **kwargs: Any) -> BaseChatProvider:
    """
    Build an adapter for one request.

    Args:
        name (str): Provider name or alias.
        context (RequestContext): Snapshot the adapter works from.
        **kwargs: Passed to the adapter (``http_client``, ``fetch_concurrency``).
    """
    return get_provider_class(name)(context, **kwargs)


__all__ = [
    "BaseChatProvider",
    "OpenAIChatProvider",
    "AnthropicChatProvider",
    "OllamaChatProvider",
    "DeepSeekChatProvider",
    "PROVIDERS",
    "get_provider_class",
    "create_provider",
]
