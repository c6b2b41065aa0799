from .abort import AbortController
from .context import (
    ChatContext, ModelConfig, ProviderConfig, RequestContext, StaticChatContext,
    context_from_env, load_provider_config,
)
from .converter import ContentBlockConverter
from .engine import ChatEngine, ChatState, ToolHost
from .errors import (
    Aborted, CapabilityUnsupported, ChatError, MalformedPayload, NetworkError,
    ProviderError, ToolExecutionError, TruncatedStream,
)
from .providers import create_provider, get_provider_class
from .types import ChatResult, ContentBlock, Message, ToolCall, ToolResult, Provider
from .mcp_client import mcp_executor, MCPToolExecutor
from .rich_llm_printer import RichStreamPrinter

__all__ = [
    "AbortController",
    "ChatContext",
    "ModelConfig",
    "ProviderConfig",
    "RequestContext",
    "StaticChatContext",
    "context_from_env",
    "load_provider_config",
    "ContentBlockConverter",
    "ChatEngine",
    "ChatState",
    "ToolHost",
    "Aborted",
    "CapabilityUnsupported",
    "ChatError",
    "MalformedPayload",
    "NetworkError",
    "ProviderError",
    "ToolExecutionError",
    "TruncatedStream",
    "get_provider_class",
    "create_provider",
    "ChatResult",
    "ContentBlock",
    "Message",
    "ToolCall",
    "ToolResult",
    "Provider",
    "mcp_executor",
    "MCPToolExecutor",
    "RichStreamPrinter",
]
