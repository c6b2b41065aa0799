"""Exception hierarchy for llmrelay."""

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base exception for all chat engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NetworkError(ChatError):
    """The HTTP transport failed before a response body was available."""


class ProviderError(ChatError):
    """The vendor answered with an error status or an error payload."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message, details={"status_code": status_code, "body": body})
        self.status_code = status_code
        self.body = body


class TruncatedStream(ChatError):
    """The response body ended before the vendor signalled completion."""


class MalformedPayload(ChatError):
    """Accumulated tool-call arguments are not valid JSON."""

    def __init__(self, tool_name: Optional[str], raw_arguments: str) -> None:
        super().__init__(
            f"Invalid JSON arguments for tool '{tool_name or '?'}'",
            details={"tool_name": tool_name, "raw_arguments": raw_arguments},
        )
        self.tool_name = tool_name
        self.raw_arguments = raw_arguments


class CapabilityUnsupported(ChatError):
    """Content the target vendor or model cannot represent."""

    def __init__(self, content_type: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Unsupported content type: {content_type}",
            details={"content_type": content_type},
        )
        self.content_type = content_type


class ToolExecutionError(ChatError):
    """The tool host failed to execute a tool."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message, details={"tool_name": tool_name})
        self.tool_name = tool_name


class Aborted(ChatError):
    """The chat was cancelled by the caller."""

    def __init__(self, message: str = "Chat aborted") -> None:
        super().__init__(message)
