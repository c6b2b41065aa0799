from .base import BaseChatReader, ReaderState
from .openai import OpenAIChatReader
from .anthropic import AnthropicChatReader
from .ollama import OllamaChatReader

__all__ = ["BaseChatReader", "ReaderState", "OpenAIChatReader", "AnthropicChatReader", "OllamaChatReader"]
