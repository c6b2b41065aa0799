import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from openai import AsyncOpenAI

from .base import BaseChatProvider, TOOL_RESULT_SEPARATOR
from ..converter import ResourceResolver
from ..errors import CapabilityUnsupported
from ..readers.openai import OpenAIChatReader
from ..types import ContentPart, MCPToolSchema, Message, ToolCall
from ..utils import split_by_img, strip_html_tags

logger = logging.getLogger(__name__)

REDIRECT_NOTE = (
    "NOTE: This tool output is only a placeholder. The actual result from the tool "
    'is included in the next message with role "user". Please use that for processing.'
)


class OpenAIChatProvider(BaseChatProvider):
    """
    Adapter for OpenAI-compatible chat completion APIs.

    DeepSeek and Ollama adapters derive from this one and override only
    what differs.
    """

    name = "openai"
    chat_path = "/chat/completions"
    reader_class = OpenAIChatReader

    async def convert_prompt_content(self, content: str) -> Any:
        """
        Convert prompt HTML to OpenAI content.

        Text-only models get plain text. Vision models get a list of text
        and ``image_url`` parts; remote images are downloaded and inlined
        as data URIs, and an image that fails to download is dropped.
        """
        if not self.vision_enabled:
            return strip_html_tags(content)

        segments = split_by_img(content)
        images = await self._load_images(segments)
        parts: List[ContentPart] = []
        for segment, image in zip(segments, images):
            if segment["type"] == "text":
                parts.append({"type": "text", "text": segment["data"]})
            elif image is not None:
                b64_data, mime_type = image
                parts.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64_data}"}})
        return parts

    async def _convert_message(self, msg: Message) -> Message:
        role = msg.get("role", "user")
        content = msg.get("content")

        # Tool results are separate messages with role "tool"
        if role == "tool":
            tool_msg: Message = {
                "role": "tool",
                "tool_call_id": msg.get("tool_call_id", ""),
                "content": content if isinstance(content, str) else self._convert_parts(content or []),
            }
            return tool_msg

        if role == "assistant" and msg.get("tool_calls"):
            return dict(msg)

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
        if part_type == "image_url":
            if not self.vision_enabled:
                raise CapabilityUnsupported("image_url", f"Model {self.get_model_name()} has no vision support")
            return {"type": "image_url", "image_url": dict(part.get("image_url") or {})}
        if part_type == "input_audio":
            if not self.context.model.supports("audio"):
                raise CapabilityUnsupported("input_audio", f"Model {self.get_model_name()} does not accept audio")
            return {"type": "input_audio", "input_audio": dict(part.get("input_audio") or {})}
        raise CapabilityUnsupported(str(part_type))

    async def make_tool_messages(
        self,
        tool_call: ToolCall,
        tool_result: Any,
        content: Optional[str] = None,
        resolve_resource: Optional[ResourceResolver] = None,
    ) -> List[Message]:
        blocks = await self.convert_tool_result(tool_result, resolve_resource)
        supplement: Optional[Message] = None

        if all(block["type"] == "text" for block in blocks):
            tool_content = TOOL_RESULT_SEPARATOR.join(block.get("text", "") for block in blocks)
        else:
            # Tool messages only hold text; rich output goes into a user turn
            tool_content = json.dumps({"message": REDIRECT_NOTE})
            supplement = {
                "role": "user",
                "content": [self.to_legacy_content(block) for block in blocks],
            }

        result: List[Message] = [
            {
                "role": "assistant",
                "content": content or None,
                "tool_calls": [self._tool_call_entry(tool_call)],
            },
            {
                "role": "tool",
                "tool_call_id": tool_call["id"],
                "content": tool_content,
            },
        ]
        if supplement:
            result.append(supplement)
        return result

    def _tool_call_entry(self, tool_call: ToolCall) -> Dict[str, Any]:
        return {
            "id": tool_call["id"],
            "type": "function",
            "function": {
                "name": tool_call["name"],
                "arguments": json.dumps(tool_call.get("arguments") or {}),
            },
        }

    def make_tool(self, tool: MCPToolSchema) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description") or "",
                "parameters": self.tool_parameters(tool),
            },
        }

    def system_messages(self) -> List[Message]:
        system = self.context.system_message
        if system and system.strip():
            return [{"role": "system", "content": system}]
        return []

    async def make_payload(
        self,
        messages: List[Message],
        tools: Optional[List[MCPToolSchema]] = None,
        used_tool_names: Iterable[str] = (),
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.get_model_name(),
            "messages": self.system_messages() + await self.make_messages(messages),
            "temperature": self.context.temperature,
            "stream": self.context.stream,
        }
        if self.context.max_tokens:
            payload["max_tokens"] = self.context.max_tokens
        unused_tools = self.unused_tools(tools, used_tool_names)
        if unused_tools:
            payload["tools"] = unused_tools
            payload["tool_choice"] = "auto"
        return payload

    def make_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.context.provider.api_key.strip()}",
        }

    async def get_models(self) -> List[str]:
        provider = self.context.provider
        client = AsyncOpenAI(api_key=provider.api_key or "EMPTY", base_url=provider.api_base)
        try:
            models = await client.models.list()
            return [m.id for m in models.data]
        except Exception as exc:
            logger.warning("Failed to list %s models: %s", self.name, exc)
            return []
