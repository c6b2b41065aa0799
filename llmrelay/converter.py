"""
Conversion between MCP content blocks and vendor message content.

MCP tools (and MCP prompts) return content as typed blocks: text, image,
audio, links to resources and embedded resources. Vendors only understand
their own legacy content parts, so every block goes through two steps:

1. ``convert``: resolve links and embedded resources into a
   ``FinalContentBlock`` (text, image or audio with inline data).
2. ``to_legacy_content``: map the final block to the vendor dialect.

Both steps are pure given the same resolver output.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from .errors import CapabilityUnsupported
from .types import ContentBlock, FinalContentBlock, ResourceEntry
from .utils import DEFAULT_FETCH_CONCURRENCY, gather_bounded

logger = logging.getLogger(__name__)

ResourceResolver = Callable[[str], Awaitable[List[ResourceEntry]]]

Dialect = Literal["openai", "anthropic"]

# OpenAI input_audio only accepts a format name
_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
}


def _empty_block() -> FinalContentBlock:
    return {"type": "text", "text": ""}


def _is_url(data: str) -> bool:
    return data.startswith(("http://", "https://"))


class ContentBlockConverter:
    """
    Stateless converter for MCP content blocks.
    """

    @staticmethod
    async def convert(
        block: ContentBlock,
        resolve_resource: Optional[ResourceResolver] = None,
    ) -> FinalContentBlock:
        """
        Convert one MCP content block into a final block.

        Args:
            block (ContentBlock): Block as returned by the tool host.
            resolve_resource (ResourceResolver, optional): Async callable
                returning the entries of a resource URI. Required to inline
                ``resource_link`` blocks.

        Returns:
            FinalContentBlock: Text, image or audio block with inline data.

        Raises:
            CapabilityUnsupported: If the block type (or an embedded blob's
                MIME type) has no final representation.
        """
        block_type = block.get("type")

        if block_type == "text":
            return {"type": "text", "text": block.get("text", "")}

        if block_type == "image":
            data = block.get("data", "")
            return {
                "type": "image",
                "source": "url" if _is_url(data) else "base64",
                "data": data,
                "mimeType": block.get("mimeType", "image/png"),
            }

        if block_type == "audio":
            return {
                "type": "audio",
                "data": block.get("data", ""),
                "mimeType": block.get("mimeType", "audio/wav"),
            }

        if block_type == "resource":
            return ContentBlockConverter._convert_entry(block.get("resource") or {})

        if block_type == "resource_link":
            uri = block.get("uri", "")
            if resolve_resource is None:
                logger.warning("No resource resolver for %s, dropping link", uri)
                return _empty_block()
            try:
                entries = await resolve_resource(uri)
            except Exception as exc:
                # A broken link only empties this block
                logger.warning("Failed to read resource %s: %s", uri, exc)
                return _empty_block()
            return ContentBlockConverter._convert_entries(entries or [])

        raise CapabilityUnsupported(str(block_type))

    @staticmethod
    async def convert_all(
        blocks: List[ContentBlock],
        resolve_resource: Optional[ResourceResolver] = None,
        limit: int = DEFAULT_FETCH_CONCURRENCY,
    ) -> List[FinalContentBlock]:
        """
        Convert several blocks concurrently, keeping their order.
        """
        return await gather_bounded(
            (ContentBlockConverter.convert(block, resolve_resource) for block in blocks),
            limit,
        )

    @staticmethod
    def _convert_entries(entries: List[ResourceEntry]) -> FinalContentBlock:
        if not entries:
            return _empty_block()
        texts = [entry["text"] for entry in entries if entry.get("text") is not None]
        if texts:
            return {"type": "text", "text": "\n".join(texts)}
        return ContentBlockConverter._convert_entry(entries[0])

    @staticmethod
    def _convert_entry(entry: Dict[str, Any]) -> FinalContentBlock:
        if entry.get("text") is not None:
            return {"type": "text", "text": entry["text"]}
        mime_type = entry.get("mimeType") or "application/octet-stream"
        blob = entry.get("blob")
        if blob is None:
            return _empty_block()
        if mime_type.startswith("image/"):
            return {"type": "image", "source": "base64", "data": blob, "mimeType": mime_type}
        if mime_type.startswith("audio/"):
            return {"type": "audio", "data": blob, "mimeType": mime_type}
        raise CapabilityUnsupported(mime_type, f"Unsupported resource type: {mime_type}")

    @staticmethod
    def to_legacy_content(block: FinalContentBlock, dialect: Dialect = "openai") -> Dict[str, Any]:
        """
        Map a final block to a vendor content part.

        Args:
            block (FinalContentBlock): Output of ``convert``.
            dialect (str): ``"openai"`` (also used by DeepSeek and Ollama) or
                ``"anthropic"``.

        Returns:
            Dict[str, Any]: The vendor content part.

        Raises:
            CapabilityUnsupported: If the dialect cannot represent the block.
        """
        block_type = block.get("type")

        if block_type == "text":
            return {"type": "text", "text": block.get("text", "")}

        if block_type == "image":
            data = block.get("data", "")
            mime_type = block.get("mimeType", "image/png")
            is_url = block.get("source") == "url"
            if dialect == "anthropic":
                if is_url:
                    return {"type": "image", "source": {"type": "url", "url": data}}
                return {
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime_type, "data": data},
                }
            url = data if is_url else f"data:{mime_type};base64,{data}"
            return {"type": "image_url", "image_url": {"url": url}}

        if block_type == "audio":
            if dialect == "anthropic":
                raise CapabilityUnsupported("audio")
            mime_type = block.get("mimeType", "audio/wav")
            audio_format = _AUDIO_FORMATS.get(mime_type, mime_type.split("/")[-1])
            return {
                "type": "input_audio",
                "input_audio": {"data": block.get("data", ""), "format": audio_format},
            }

        raise CapabilityUnsupported(str(block_type))
