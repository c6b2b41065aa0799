import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .openai import OpenAIChatProvider
from .base import TOOL_RESULT_SEPARATOR
from ..converter import ResourceResolver
from ..errors import CapabilityUnsupported
from ..readers.ollama import OllamaChatReader
from ..types import MCPToolSchema, Message, ToolCall
from ..utils import gather_bounded, resolve_image_to_base64, split_by_img, strip_html_tags, url_join

logger = logging.getLogger(__name__)


class OllamaChatProvider(OpenAIChatProvider):
    """
    Adapter for Ollama's native ``/api/chat`` endpoint.

    Ollama messages carry plain string content; images go in a sibling
    ``images`` array of bare base64 strings. Tool-call arguments are
    objects, not JSON strings.
    """

    name = "ollama"
    chat_path = "/api/chat"
    reader_class = OllamaChatReader

    async def convert_prompt_content(self, content: str) -> Dict[str, Any]:
        """
        Convert prompt HTML into a message fragment ``{content, images?}``.
        """
        if not self.vision_enabled:
            return {"content": strip_html_tags(content)}

        segments = split_by_img(content)
        text = "\n".join(segment["data"] for segment in segments if segment["type"] == "text")
        images = [image[0] for image in await self._load_images(segments) if image is not None]
        fragment: Dict[str, Any] = {"content": text}
        if images:
            fragment["images"] = images
        return fragment

    async def _convert_message(self, msg: Message) -> Message:
        if msg.get("role") == "user" and isinstance(msg.get("content"), str):
            return {"role": "user", **await self.convert_prompt_content(msg["content"])}
        converted = await super()._convert_message(msg)
        if msg.get("role") == "tool" and msg.get("name"):
            converted["name"] = msg["name"]
        return converted

    def _convert_part(self, part: Dict[str, Any]) -> Dict[str, Any]:
        # Images are collected into the "images" array by make_messages
        if part.get("type") == "image_url":
            return {"type": "image_url", "image_url": dict(part.get("image_url") or {})}
        if part.get("type") == "input_audio":
            raise CapabilityUnsupported("input_audio", "Audio content is not supported by Ollama")
        return super()._convert_part(part)

    async def make_messages(self, messages: List[Message]) -> List[Message]:
        """
        Flatten content-part arrays into ``content`` text plus ``images``.
        """
        result = await super().make_messages(messages)
        return await gather_bounded(
            (self._flatten_message(msg) for msg in result),
            self.fetch_concurrency,
        )

    async def _flatten_message(self, message: Message) -> Message:
        content = message.get("content")
        if not isinstance(content, list):
            if content is None:
                return {**message, "content": ""}
            return message

        texts = [part.get("text") or "" for part in content if part.get("type") == "text"]
        image_refs = list(message.get("images") or [])
        image_refs.extend(
            (part.get("image_url") or {}).get("url", "")
            for part in content
            if part.get("type") == "image_url"
        )
        flattened: Message = {**message, "content": TOOL_RESULT_SEPARATOR.join(texts)}
        flattened.pop("images", None)
        if self.vision_enabled:
            images = await gather_bounded(
                (self._image_to_base64(ref) for ref in image_refs),
                self.fetch_concurrency,
            )
            images = [image for image in images if image]
            if images:
                flattened["images"] = images
        return flattened

    async def _image_to_base64(self, ref: str) -> str:
        if not ref.startswith(("data:", "http:", "https:")):
            # Already bare base64
            return ref
        try:
            b64_data, _ = await resolve_image_to_base64(ref, self.http_client)
            return b64_data
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Failed to convert image to base64: %s", exc)
            return ""

    async def make_tool_messages(
        self,
        tool_call: ToolCall,
        tool_result: Any,
        content: Optional[str] = None,
        resolve_resource: Optional[ResourceResolver] = None,
    ) -> List[Message]:
        result = await super().make_tool_messages(tool_call, tool_result, content, resolve_resource)
        assistant, tool_msg = result[0], result[1]
        assistant["content"] = content or ""
        # Unlike OpenAI, Ollama tool arguments are not a string
        assistant["tool_calls"] = [{
            "id": tool_call["id"],
            "type": "function",
            "function": {
                "name": tool_call["name"],
                "arguments": tool_call.get("arguments") or {},
            },
        }]
        tool_msg["name"] = tool_call["name"]
        return result

    async def make_payload(
        self,
        messages: List[Message],
        tools: Optional[List[MCPToolSchema]] = None,
        used_tool_names: Iterable[str] = (),
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {"temperature": self.context.temperature}
        if self.context.max_tokens:
            options["num_predict"] = self.context.max_tokens
        payload: Dict[str, Any] = {
            "model": self.get_model_name(),
            "messages": self.system_messages() + await self.make_messages(messages),
            "stream": self.context.stream,
            "options": options,
        }
        unused_tools = self.unused_tools(tools, used_tool_names)
        if unused_tools:
            payload["tools"] = unused_tools
        return payload

    def make_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.context.provider.api_key.strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def get_models(self) -> List[str]:
        url = url_join("/api/tags", self.context.provider.api_base)
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, headers=self.make_headers())
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.get(url, headers=self.make_headers())
            response.raise_for_status()
            return [model["name"] for model in response.json().get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Failed to list %s models: %s", self.name, exc)
            return []
