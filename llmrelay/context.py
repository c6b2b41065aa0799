"""
Chat context: provider and model configuration plus conversation state.

The engine reads a ``ChatContext`` exactly once per ``chat()`` call and works
from the resulting immutable ``RequestContext`` snapshot, so settings changed
by the application while a stream is active never leak into that stream.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import dotenv

from .types import ChatTurn

# Default API bases per provider
DEFAULT_API_BASES: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "deepseek": "https://api.deepseek.com",
    "ollama": "http://localhost:11434",
}

# Environment variable names per provider: (api key, api base)
ENV_KEYS: Dict[str, Tuple[str, str]] = {
    "openai": ("OPENAI_API_KEY", "OPENAI_API_BASE"),
    "anthropic": ("ANTHROPIC_API_KEY", "ANTHROPIC_API_BASE"),
    "deepseek": ("DEEPSEEK_API_KEY", "DEEPSEEK_API_BASE"),
    "ollama": ("OLLAMA_API_KEY", "OLLAMA_API_BASE"),
}


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    api_base: str
    api_key: str = ""


@dataclass(frozen=True)
class ModelConfig:
    """
    Model name plus capability flags (``vision``, ``tools``, ``audio``).
    """
    name: str
    capabilities: Dict[str, bool] = field(default_factory=dict)

    def supports(self, capability: str) -> bool:
        return bool(self.capabilities.get(capability, False))


class ChatContext(Protocol):
    """
    Interface the surrounding application implements to feed the engine.
    """

    def get_provider(self) -> ProviderConfig: ...

    def get_model(self) -> ModelConfig: ...

    def get_temperature(self) -> float: ...

    def get_max_tokens(self) -> Optional[int]: ...

    def get_system_message(self) -> Optional[str]: ...

    def get_ctx_messages(self, msg_id: Optional[str] = None) -> List[ChatTurn]: ...

    def is_stream(self) -> bool: ...

    def is_tools_enabled(self) -> bool: ...


@dataclass(frozen=True)
class RequestContext:
    """
    Read-once snapshot of a ``ChatContext`` for a single ``chat()`` call.
    """
    provider: ProviderConfig
    model: ModelConfig
    temperature: float = 1.0
    max_tokens: Optional[int] = None
    stream: bool = True
    system_message: Optional[str] = None
    history: Tuple[ChatTurn, ...] = ()
    tools_enabled: bool = False

    @classmethod
    def from_chat_context(cls, ctx: ChatContext, msg_id: Optional[str] = None) -> "RequestContext":
        return cls(
            provider=ctx.get_provider(),
            model=ctx.get_model(),
            temperature=ctx.get_temperature(),
            max_tokens=ctx.get_max_tokens(),
            stream=ctx.is_stream(),
            system_message=ctx.get_system_message(),
            history=tuple(ctx.get_ctx_messages(msg_id)),
            tools_enabled=ctx.is_tools_enabled(),
        )

    @property
    def tools_available(self) -> bool:
        """Tools are sent only if the user enabled them and the model supports them."""
        return self.tools_enabled and self.model.supports("tools")


class StaticChatContext:
    """
    Minimal in-memory ``ChatContext`` for scripts and tests.

    ``history`` is a list of persisted turns; ``get_ctx_messages(msg_id)``
    returns the turns before the turn with that id (used when regenerating).
    """

    def __init__(
        self,
        provider: ProviderConfig,
        model: ModelConfig,
        *,
        temperature: float = 1.0,
        max_tokens: Optional[int] = None,
        system_message: Optional[str] = None,
        history: Optional[List[ChatTurn]] = None,
        stream: bool = True,
        tools_enabled: bool = False,
    ):
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_message = system_message
        self.history = list(history or [])
        self.stream = stream
        self.tools_enabled = tools_enabled

    def get_provider(self) -> ProviderConfig:
        return self.provider

    def get_model(self) -> ModelConfig:
        return self.model

    def get_temperature(self) -> float:
        return self.temperature

    def get_max_tokens(self) -> Optional[int]:
        return self.max_tokens

    def get_system_message(self) -> Optional[str]:
        return self.system_message

    def get_ctx_messages(self, msg_id: Optional[str] = None) -> List[ChatTurn]:
        if msg_id is None:
            return list(self.history)
        for index, turn in enumerate(self.history):
            if turn.get("id") == msg_id:
                return self.history[:index]
        return list(self.history)

    def is_stream(self) -> bool:
        return self.stream

    def is_tools_enabled(self) -> bool:
        return self.tools_enabled


# =============================================================================
# Configuration Loading
# =============================================================================

def _read_setting(key: str, env_file: str) -> Optional[str]:
    # .env wins over the process environment
    value = dotenv.get_key(env_file, key) if os.path.exists(env_file) else None
    return value or os.environ.get(key)


def load_provider_config(provider: str, env_file: str = ".env") -> ProviderConfig:
    """
    Build a ``ProviderConfig`` from ``.env`` / environment variables.

    Args:
        provider (str): One of 'openai', 'anthropic', 'deepseek', 'ollama'.
        env_file (str): Path of the dotenv file to read.

    Returns:
        ProviderConfig: Config with the API key (may be empty for Ollama) and
        the API base, falling back to the provider's public endpoint.

    Raises:
        ValueError: If the provider is unknown.
    """
    provider = provider.lower()
    if provider not in ENV_KEYS:
        raise ValueError(f"Unknown provider: {provider}. Use one of {', '.join(ENV_KEYS)}")
    key_name, base_name = ENV_KEYS[provider]
    return ProviderConfig(
        name=provider,
        api_base=_read_setting(base_name, env_file) or DEFAULT_API_BASES[provider],
        api_key=_read_setting(key_name, env_file) or "",
    )


def context_from_env(
    provider: str,
    model: str,
    capabilities: Optional[Dict[str, Any]] = None,
    env_file: str = ".env",
    **options: Any,
) -> StaticChatContext:
    """
    Convenience constructor: provider config from the environment plus a model.
    """
    return StaticChatContext(
        load_provider_config(provider, env_file),
        ModelConfig(name=model, capabilities=dict(capabilities or {})),
        **options,
    )
