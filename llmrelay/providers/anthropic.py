import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from anthropic import AsyncAnthropic

from .base import BaseChatProvider, TOOL_RESULT_SEPARATOR
from ..converter import ResourceResolver
from ..errors import CapabilityUnsupported
from ..readers.anthropic import AnthropicChatReader
from ..types import MCPToolSchema, Message, ToolCall
from ..utils import parse_data_uri, split_by_img, strip_html_tags

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

# Anthropic requires max_tokens on every request
DEFAULT_MAX_TOKENS = 4096

REDIRECT_NOTE = (
    "NOTE: This tool output is only a placeholder. See the following parts of this "
    "message for the actual tool result. Please use that for processing."
)

# Blocks already in Anthropic shape pass through untouched
_NATIVE_PART_TYPES = ("image", "tool_use", "tool_result", "document")


class AnthropicChatProvider(BaseChatProvider):
    """
    Adapter for the Anthropic Messages API.

    Differences from the OpenAI family:
    - the system prompt is a top-level ``system`` field,
    - there is no ``tool`` role; tool results are ``tool_result`` blocks in a
      ``user`` message, and that message may also carry image parts, so rich
      tool output stays in the same message,
    - images are ``{"type": "image", "source": {...}}`` blocks.
    """

    name = "anthropic"
    chat_path = "/messages"
    dialect = "anthropic"
    reader_class = AnthropicChatReader

    async def convert_prompt_content(self, content: str) -> Any:
        if not self.vision_enabled:
            return strip_html_tags(content)

        segments = split_by_img(content)
        images = await self._load_images(segments)
        parts: List[Dict[str, Any]] = []
        for segment, image in zip(segments, images):
            if segment["type"] == "text":
                parts.append({"type": "text", "text": segment["data"]})
            elif image is not None:
                b64_data, mime_type = image
                parts.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime_type, "data": b64_data},
                })
        return parts

    async def _convert_message(self, msg: Message) -> Message:
        role = msg.get("role", "user")
        content = msg.get("content")

        if role == "tool":
            tool_content = content if isinstance(content, str) else json.dumps(content, default=str)
            return {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_call_id", ""),
                    "content": tool_content,
                }],
            }

        if role == "assistant" and msg.get("tool_calls"):
            blocks: List[Dict[str, Any]] = []
            if isinstance(content, str) and content:
                blocks.append({"type": "text", "text": content})
            for tool_call in msg["tool_calls"]:
                blocks.append(self._tool_use_block(tool_call))
            return {"role": "assistant", "content": blocks}

        if isinstance(content, str):
            if role == "user":
                return {"role": role, "content": await self.convert_prompt_content(content)}
            return {"role": role, "content": content}

        if isinstance(content, list):
            return {"role": role, "content": self._convert_parts(content)}

        return {"role": role, "content": ""}

    def _convert_part(self, part: Dict[str, Any]) -> Dict[str, Any]:
        part_type = part.get("type")
        if part_type == "text":
            return {"type": "text", "text": part.get("text", "")}
        if part_type in _NATIVE_PART_TYPES:
            return dict(part)
        if part_type == "image_url":
            url = (part.get("image_url") or {}).get("url", "")
            if url.startswith("data:"):
                data, mime_type = parse_data_uri(url)
                return {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}
            return {"type": "image", "source": {"type": "url", "url": url}}
        if part_type in ("input_audio", "audio"):
            raise CapabilityUnsupported("audio", "Audio content is not supported by Anthropic")
        raise CapabilityUnsupported(str(part_type))

    @staticmethod
    def _tool_use_block(tool_call: Dict[str, Any]) -> Dict[str, Any]:
        # Accept both internal ToolCall and OpenAI-style entries
        if "function" in tool_call:
            function = tool_call["function"]
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                arguments = json.loads(arguments) if arguments.strip() else {}
            return {"type": "tool_use", "id": tool_call.get("id", ""), "name": function.get("name", ""), "input": arguments}
        return {
            "type": "tool_use",
            "id": tool_call.get("id", ""),
            "name": tool_call.get("name", ""),
            "input": tool_call.get("arguments") or {},
        }

    async def make_tool_messages(
        self,
        tool_call: ToolCall,
        tool_result: Any,
        content: Optional[str] = None,
        resolve_resource: Optional[ResourceResolver] = None,
    ) -> List[Message]:
        blocks = await self.convert_tool_result(tool_result, resolve_resource)
        parts: List[Dict[str, Any]] = []

        if all(block["type"] == "text" for block in blocks):
            parts.append({
                "type": "tool_result",
                "tool_use_id": tool_call["id"],
                "content": TOOL_RESULT_SEPARATOR.join(block.get("text", "") for block in blocks),
            })
        else:
            parts.append({
                "type": "tool_result",
                "tool_use_id": tool_call["id"],
                "content": REDIRECT_NOTE,
            })
            parts.extend(self.to_legacy_content(block) for block in blocks)

        assistant_content: List[Dict[str, Any]] = [self._tool_use_block(tool_call)]
        if content:
            assistant_content.insert(0, {"type": "text", "text": content})

        return [
            {"role": "assistant", "content": assistant_content},
            {"role": "user", "content": parts},
        ]

    def make_tool(self, tool: MCPToolSchema) -> Dict[str, Any]:
        return {
            "name": tool["name"],
            "description": tool.get("description") or "",
            "input_schema": self.tool_parameters(tool),
        }

    async def make_payload(
        self,
        messages: List[Message],
        tools: Optional[List[MCPToolSchema]] = None,
        used_tool_names: Iterable[str] = (),
    ) -> Dict[str, Any]:
        system_text, chat_messages = self._split_system(messages)
        payload: Dict[str, Any] = {
            "model": self.get_model_name(),
            "messages": await self.make_messages(chat_messages),
            "temperature": self.context.temperature,
            "stream": self.context.stream,
            "max_tokens": self.context.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system_text:
            payload["system"] = system_text
        unused_tools = self.unused_tools(tools, used_tool_names)
        if unused_tools:
            payload["tools"] = unused_tools
            payload["tool_choice"] = {"type": "auto", "disable_parallel_tool_use": True}
        return payload

    def _split_system(self, messages: List[Message]) -> Tuple[Optional[str], List[Message]]:
        """
        Pull system text out of the message list; Anthropic takes it as a
        separate top-level parameter.
        """
        system_parts: List[str] = []
        if self.context.system_message and self.context.system_message.strip():
            system_parts.append(self.context.system_message)
        chat_messages: List[Message] = []
        for msg in messages:
            if msg.get("role") != "system":
                chat_messages.append(msg)
                continue
            content = msg.get("content", "")
            if isinstance(content, str):
                system_parts.append(content)
            else:
                system_parts.extend(part.get("text", "") for part in content if part.get("type") == "text")
        return ("\n\n".join(system_parts) if system_parts else None), chat_messages

    def make_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
            "x-api-key": self.context.provider.api_key.strip(),
        }

    async def get_models(self) -> List[str]:
        provider = self.context.provider
        # The SDK appends /v1 itself
        base_url = provider.api_base.rstrip("/")
        if base_url.endswith("/v1"):
            base_url = base_url[:-3]
        client = AsyncAnthropic(api_key=provider.api_key, base_url=base_url)
        try:
            models = await client.models.list()
            return [m.id for m in models.data]
        except Exception as exc:
            logger.warning("Failed to list %s models: %s", self.name, exc)
            return []
