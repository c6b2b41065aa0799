import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

import httpx

from ..context import RequestContext
from ..converter import ContentBlockConverter, Dialect, ResourceResolver
from ..errors import CapabilityUnsupported, NetworkError, ProviderError
from ..readers.base import BaseChatReader
from ..types import (
    ContentBlock, FinalContentBlock, MCPToolSchema, Message, ToolCall, ToolResult,
)
from ..utils import (
    DEFAULT_FETCH_CONCURRENCY, PromptSegment, encode_image_url, gather_bounded,
    parse_data_uri, remove_additional_properties, url_join,
)

logger = logging.getLogger(__name__)

TOOL_RESULT_SEPARATOR = "\n\n\n"


class BaseChatProvider(ABC):
    """
    Abstract base class for provider adapters.

    An adapter translates between the internal message model and one
    vendor's wire format: prompt content, message history, tool-call
    round trips, tool schemas, the request payload and the HTTP request.
    It is built from a ``RequestContext`` snapshot and holds no other state.
    """

    name = "base"
    chat_path = "/chat/completions"
    dialect: Dialect = "openai"
    reader_class: Type[BaseChatReader]

    def __init__(
        self,
        context: RequestContext,
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_concurrency: int = DEFAULT_FETCH_CONCURRENCY,
    ):
        self.context = context
        self.http_client = http_client
        self.fetch_concurrency = fetch_concurrency

    def get_model_name(self) -> str:
        return self.context.model.name

    @property
    def vision_enabled(self) -> bool:
        return self.context.model.supports("vision")

    def get_reader(self) -> BaseChatReader:
        """Return a fresh reader for one response body."""
        return self.reader_class(stream=self.context.stream)

    # =========================================================================
    # Messages
    # =========================================================================

    @abstractmethod
    async def convert_prompt_content(self, content: str) -> Any:
        """
        Convert a raw (possibly HTML) prompt into vendor content.
        """

    @abstractmethod
    async def make_tool_messages(
        self,
        tool_call: ToolCall,
        tool_result: Any,
        content: Optional[str] = None,
        resolve_resource: Optional[ResourceResolver] = None,
    ) -> List[Message]:
        """
        Encode a tool call and its result as follow-up vendor messages.

        Args:
            tool_call (ToolCall): The call issued by the model.
            tool_result (ToolResult | str): What the tool host returned.
            content (str, optional): Assistant text produced before the call.
            resolve_resource (ResourceResolver, optional): Resolver for
                ``resource_link`` blocks in the result.
        """

    @abstractmethod
    def make_tool(self, tool: MCPToolSchema) -> Dict[str, Any]:
        """Translate an MCP tool schema into the vendor tool dialect."""

    @abstractmethod
    async def make_payload(
        self,
        messages: List[Message],
        tools: Optional[List[MCPToolSchema]] = None,
        used_tool_names: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """Assemble the full request body."""

    @abstractmethod
    def make_headers(self) -> Dict[str, str]:
        ...

    async def make_messages(self, messages: List[Message]) -> List[Message]:
        """
        Merge persisted history with the new turn in vendor shape.
        """
        history = [self._convert_history_message(msg) for msg in self.history_messages()]
        processed = await gather_bounded(
            (self._convert_message(msg) for msg in messages),
            self.fetch_concurrency,
        )
        return history + processed

    def history_messages(self) -> List[Message]:
        """
        Expand persisted turns into role/content pairs.

        Raises:
            ValueError: If a turn's structured prompts are not valid JSON.
        """
        result: List[Message] = []
        for turn in self.context.history:
            structured = turn.get("structured_prompts")
            if structured:
                if isinstance(structured, str):
                    try:
                        structured = json.loads(structured)
                    except json.JSONDecodeError as exc:
                        raise ValueError("Failed to parse structured prompts") from exc
                for prompt in structured:
                    result.append({"role": prompt["role"], "content": prompt["content"]})
            else:
                result.append({"role": "user", "content": turn.get("prompt", "")})
            result.append({"role": "assistant", "content": turn.get("reply", "")})
        return result

    def _convert_history_message(self, msg: Message) -> Message:
        content = msg.get("content")
        if isinstance(content, list):
            return {"role": msg["role"], "content": self._convert_parts(content)}
        return {"role": msg["role"], "content": content or ""}

    @abstractmethod
    async def _convert_message(self, msg: Message) -> Message:
        ...

    @abstractmethod
    def _convert_part(self, part: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def _convert_parts(self, parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = []
        for part in parts:
            try:
                converted.append(self._convert_part(part))
            except CapabilityUnsupported as exc:
                logger.warning("%s: %s, converting to empty text", self.name, exc)
                converted.append({"type": "text", "text": ""})
        return converted

    async def _load_images(self, segments: List[PromptSegment]) -> List[Optional[Tuple[str, str]]]:
        """
        Resolve the image segments of a split prompt to (base64, mime).

        Non-image segments and images that fail to load map to None.
        """
        async def _resolve(segment: PromptSegment) -> Optional[Tuple[str, str]]:
            if segment["type"] != "image":
                return None
            if segment.get("data_type") == "base64":
                return parse_data_uri(segment["data"])
            try:
                return await encode_image_url(segment["data"], self.http_client)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                logger.warning("Failed to fetch image %s: %s", segment["data"], exc)
                return None

        return await gather_bounded((_resolve(s) for s in segments), self.fetch_concurrency)

    # =========================================================================
    # Tool results
    # =========================================================================

    async def convert_tool_result(
        self,
        tool_result: Any,
        resolve_resource: Optional[ResourceResolver] = None,
    ) -> List[FinalContentBlock]:
        """
        Turn a tool host result into final content blocks.

        Error results become a single text block with the JSON-encoded
        error so the model can react to it.
        """
        if isinstance(tool_result, str):
            return [{"type": "text", "text": tool_result}]
        if tool_result.get("isError"):
            error = tool_result.get("error", tool_result.get("content"))
            return [{"type": "text", "text": json.dumps(error, default=str)}]

        content = tool_result.get("content")
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        if not content:
            structured = tool_result.get("structuredContent")
            if structured is not None:
                return [{"type": "text", "text": json.dumps(structured, default=str)}]
            return []

        return await gather_bounded(
            (self._convert_block(block, resolve_resource) for block in content),
            self.fetch_concurrency,
        )

    async def _convert_block(
        self,
        block: ContentBlock,
        resolve_resource: Optional[ResourceResolver],
    ) -> FinalContentBlock:
        try:
            return await ContentBlockConverter.convert(block, resolve_resource)
        except CapabilityUnsupported as exc:
            logger.warning("%s: %s, converting to empty text", self.name, exc)
            return {"type": "text", "text": ""}

    def to_legacy_content(self, block: FinalContentBlock) -> Dict[str, Any]:
        """
        Map a final block to this vendor's content part, degrading blocks
        the model cannot take to empty text.
        """
        try:
            if block.get("type") == "audio" and not self.context.model.supports("audio"):
                raise CapabilityUnsupported("audio", f"Model {self.get_model_name()} does not accept audio")
            return ContentBlockConverter.to_legacy_content(block, self.dialect)
        except CapabilityUnsupported as exc:
            logger.warning("%s: %s, converting to empty text", self.name, exc)
            return {"type": "text", "text": ""}

    # =========================================================================
    # Tools
    # =========================================================================

    def unused_tools(
        self,
        tools: Optional[List[MCPToolSchema]],
        used_tool_names: Iterable[str],
    ) -> List[Dict[str, Any]]:
        """
        Vendor tool definitions for every tool not yet called in this run.

        Empty when tools are disabled or the model lacks tool support.
        """
        if not tools or not self.context.tools_available:
            return []
        used = set(used_tool_names)
        return [self.make_tool(tool) for tool in tools if tool.get("name") not in used]

    @staticmethod
    def tool_parameters(tool: MCPToolSchema) -> Dict[str, Any]:
        schema = tool.get("inputSchema") or {}
        return {
            "type": schema.get("type", "object"),
            "properties": remove_additional_properties(schema.get("properties")) or {},
            "required": list(schema.get("required") or []),
        }

    # =========================================================================
    # HTTP
    # =========================================================================

    def request_url(self) -> str:
        return url_join(self.chat_path, self.context.provider.api_base)

    async def make_request(self, payload: Dict[str, Any]) -> httpx.Response:
        """
        POST the payload and return the response with its body unread.

        Raises:
            NetworkError: If the connection fails.
            ProviderError: If the vendor answers with an error status.
        """
        url = self.request_url()
        logger.debug("About to make a request to %s, payload: %s", url, payload)
        if self.http_client is None:
            raise RuntimeError(f"{self.name} provider has no HTTP client")

        request = self.http_client.build_request("POST", url, headers=self.make_headers(), json=payload)
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise NetworkError(f"Request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise ProviderError(
                self._error_message(body, response.status_code),
                status_code=response.status_code,
                body=body.decode("utf-8", errors="replace"),
            )
        return response

    @staticmethod
    def _error_message(body: bytes, status_code: int) -> str:
        try:
            data = json.loads(body)
        except ValueError:
            text = body.decode("utf-8", errors="replace").strip()
            return f"HTTP {status_code}: {text}" if text else f"HTTP {status_code}"
        error = data.get("error", data) if isinstance(data, dict) else data
        if isinstance(error, dict):
            error = error.get("message") or error
        return f"HTTP {status_code}: {error}"

    # =========================================================================
    # Discovery
    # =========================================================================

    async def get_models(self) -> List[str]:
        """
        Get list of available models from the provider API.

        Returns:
            List[str]: Model ids. Empty if the API call fails.
        """
        return []
