from typing import List

from .openai import OpenAIChatProvider
from ..types import Message


class DeepSeekChatProvider(OpenAIChatProvider):
    """
    Adapter for DeepSeek (OpenAI-compatible, text-only message content).
    """

    name = "deepseek"

    async def make_messages(self, messages: List[Message]) -> List[Message]:
        """
        DeepSeek rejects content-part arrays, so list content is flattened
        to its text parts.
        """
        result = await super().make_messages(messages)
        formatted: List[Message] = []
        for msg in result:
            content = msg.get("content")
            if isinstance(content, list):
                msg = {**msg, "content": "\n".join(part.get("text") or "" for part in content)}
            formatted.append(msg)
        return formatted
