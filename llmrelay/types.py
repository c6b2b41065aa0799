from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Type Definitions
# =============================================================================

# Supported LLM providers
Provider = Literal["openai", "anthropic", "ollama", "deepseek"]

Role = Literal["system", "user", "assistant", "tool"]


class TextContent(TypedDict, total=False):
    """
    Text content part for multimodal messages.
    """
    type: Literal["text"]
    text: str


class ImageUrlDetail(TypedDict, total=False):
    """
    Image URL with optional detail level.
    """
    url: str
    detail: Literal["auto", "low", "high"]  # OpenAI-specific


class ImageContent(TypedDict, total=False):
    """
    Image content part for multimodal messages (OpenAI format).
    """
    type: Literal["image_url"]
    image_url: ImageUrlDetail


class InputAudio(TypedDict):
    data: str
    format: str


class AudioContent(TypedDict, total=False):
    """
    Audio content part (OpenAI ``input_audio`` format).
    """
    type: Literal["input_audio"]
    input_audio: InputAudio


# Content can be a simple string or a list of content parts (text + images)
ContentPart = Union[TextContent, ImageContent, AudioContent, Dict[str, Any]]
MessageContent = Union[str, List[ContentPart]]


# =============================================================================
# MCP Content Blocks
# =============================================================================

class ContentBlock(TypedDict, total=False):
    """
    Vendor-agnostic content block as produced by an MCP tool host.

    ``type`` is one of ``text``, ``image``, ``audio``, ``resource_link`` or
    ``resource``. Image ``data`` may be base64 or an http(s) URL.
    """
    type: str
    text: str
    data: str
    mimeType: str
    uri: str
    name: str
    resource: Dict[str, Any]


class FinalContentBlock(TypedDict, total=False):
    """
    A content block after conversion. Resource links are resolved and
    ``data`` is always present for non-text blocks.
    """
    type: Literal["text", "image", "audio"]
    text: str
    source: Literal["base64", "url"]
    data: str
    mimeType: str


class ResourceEntry(TypedDict, total=False):
    """
    One entry returned by a resource read.
    """
    uri: str
    mimeType: str
    text: str
    blob: str


# =============================================================================
# Tool Calling Type Definitions
# =============================================================================

class MCPToolSchema(TypedDict, total=False):
    """
    Tool definition as listed by the tool host.
    """
    name: str
    description: str
    inputSchema: Dict[str, Any]


class ToolCall(TypedDict, total=False):
    """
    Tool call from an LLM response.
    """
    id: str
    name: str
    arguments: Dict[str, Any]  # Parsed JSON arguments


class ToolResult(TypedDict, total=False):
    """
    Result of a tool execution as reported by the tool host.
    """
    isError: bool
    content: Union[str, List[ContentBlock]]
    error: Any
    structuredContent: Any


# =============================================================================
# Message Type (depends on ToolCall)
# =============================================================================

class Message(TypedDict, total=False):
    """
    Chat message with optional multimodal content and tool support.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response
    - "tool": Tool execution result
    """
    role: Role
    content: MessageContent
    tool_call_id: str  # For tool result messages
    tool_calls: List[Dict[str, Any]]  # For assistant messages with tool calls
    name: str
    images: List[str]  # Ollama only


class ChatTurn(TypedDict, total=False):
    """
    A persisted prompt/reply pair from the conversation history.

    ``structured_prompts`` is either a JSON string or a list of
    ``{"role", "content"}`` messages that replace ``prompt``.
    """
    id: str
    prompt: str
    reply: str
    structured_prompts: Union[str, List[Message], None]


# =============================================================================
# Stream Events
# =============================================================================

class Usage(TypedDict, total=False):
    input_tokens: Optional[int]
    output_tokens: Optional[int]
    total_tokens: Optional[int]
    raw: Optional[Dict[str, Any]]


class TextDelta(TypedDict):
    type: Literal["text"]
    text: str


class ReasoningDelta(TypedDict):
    type: Literal["reasoning"]
    text: str


class ToolCallDelta(TypedDict, total=False):
    type: Literal["tool_call_delta"]
    index: int
    id: str
    name: str
    arguments: str  # Partial JSON text


class ToolCallComplete(TypedDict):
    type: Literal["tool_call"]
    tool_call: ToolCall


class Done(TypedDict, total=False):
    type: Literal["done"]
    usage: Usage
    stop_reason: Optional[str]


class ErrorEvent(TypedDict, total=False):
    type: Literal["error"]
    error: Exception
    aborted: bool


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCallDelta, ToolCallComplete, Done, ErrorEvent]


class ChatResult(TypedDict):
    """
    Final aggregate of a ``chat()`` call across all tool rounds.
    """
    content: str
    reasoning: str
    usage: Usage
    tool_rounds: int
    stop_reason: Optional[str]


class ToolRunning(TypedDict):
    type: Literal["tool_running"]
    name: str


class Complete(TypedDict):
    type: Literal["complete"]
    result: ChatResult


EngineEvent = Union[TextDelta, ReasoningDelta, ToolCallDelta, ToolCallComplete, ToolRunning, Complete, ErrorEvent]
