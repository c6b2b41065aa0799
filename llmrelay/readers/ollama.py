import json
from typing import Any, Dict

from ..errors import ProviderError
from .base import BaseChatReader, load_json


class OllamaChatReader(BaseChatReader):
    """
    Reader for Ollama's ``/api/chat`` JSON-lines stream.

    Every line is a complete JSON record. Tool calls arrive whole, with
    arguments as an object rather than a string, and are released when the
    record with ``done: true`` arrives. Ollama does not assign tool-call ids,
    so ids are derived from the call position.
    """

    provider_name = "ollama"

    def __init__(self, stream: bool = True):
        super().__init__(stream)
        self._next_tool_index = 0

    def _handle_line(self, line: str) -> None:
        self._handle_record(load_json(line))

    def _handle_complete(self, data: Dict[str, Any]) -> None:
        self._handle_record(data)

    def _handle_record(self, record: Dict[str, Any]) -> None:
        if record.get("error"):
            raise ProviderError(str(record["error"]), body=record)

        message = record.get("message") or {}
        self._emit_reasoning(message.get("thinking"))
        self._emit_text(message.get("content"))
        for tool_call in message.get("tool_calls") or []:
            self._add_tool_call(tool_call)

        if record.get("done"):
            self.stop_reason = record.get("done_reason") or "stop"
            self._record_usage(
                input_tokens=record.get("prompt_eval_count"),
                output_tokens=record.get("eval_count"),
            )
            self._complete_tool_calls()
            self._complete()

    def _add_tool_call(self, tool_call: Dict[str, Any]) -> None:
        function = tool_call.get("function") or {}
        index = function.get("index", self._next_tool_index)
        self._next_tool_index = max(self._next_tool_index, index + 1)
        arguments = function.get("arguments") or {}
        self._append_tool_arguments(
            index,
            arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
            call_id=tool_call.get("id") or f"call_{index}",
            name=function.get("name"),
        )
        if not isinstance(arguments, str):
            self._tool_call(index).parsed = arguments
