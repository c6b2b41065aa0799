from typing import Any, Dict

from ..errors import ProviderError
from .base import BaseChatReader, load_json, parse_sse_data


class AnthropicChatReader(BaseChatReader):
    """
    Reader for the Anthropic Messages streaming API.

    Each SSE ``data:`` line holds a typed event (``message_start``,
    ``content_block_start``, ``content_block_delta``, ``content_block_stop``,
    ``message_delta``, ``message_stop``, ``ping``, ``error``). A ``tool_use``
    block's arguments stream as ``input_json_delta`` fragments and are
    complete at that block's ``content_block_stop``.
    """

    provider_name = "anthropic"

    def _handle_line(self, line: str) -> None:
        data = parse_sse_data(line)
        if data is None:
            # "event:" lines duplicate the type carried in the data payload
            return
        event = load_json(data)
        event_type = event.get("type")

        if event_type == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._record_usage(
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            )
        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            index = event.get("index", 0)
            if block.get("type") == "tool_use":
                self._append_tool_arguments(index, call_id=block.get("id"), name=block.get("name"))
            elif block.get("type") == "text":
                self._emit_text(block.get("text"))
            elif block.get("type") == "thinking":
                self._emit_reasoning(block.get("thinking"))
        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                self._emit_text(delta.get("text"))
            elif delta_type == "thinking_delta":
                self._emit_reasoning(delta.get("thinking"))
            elif delta_type == "input_json_delta":
                self._append_tool_arguments(event.get("index", 0), arguments=delta.get("partial_json"))
        elif event_type == "content_block_stop":
            self._complete_tool_call(event.get("index", 0))
        elif event_type == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self.stop_reason = delta["stop_reason"]
            usage = event.get("usage") or {}
            self._record_usage(
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            )
        elif event_type == "message_stop":
            self._complete_tool_calls()
            self._complete()
        elif event_type == "error":
            error = event.get("error") or {}
            raise ProviderError(str(error.get("message") or error), body=error)

    def _handle_complete(self, data: Dict[str, Any]) -> None:
        if data.get("type") == "error":
            error = data.get("error") or {}
            raise ProviderError(str(error.get("message") or error), body=error)
        usage = data.get("usage") or {}
        self._record_usage(
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )
        for index, block in enumerate(data.get("content") or []):
            block_type = block.get("type")
            if block_type == "text":
                self._emit_text(block.get("text"))
            elif block_type == "thinking":
                self._emit_reasoning(block.get("thinking"))
            elif block_type == "tool_use":
                self._append_tool_arguments(index, call_id=block.get("id"), name=block.get("name"))
                self._tool_call(index).parsed = block.get("input") or {}
        self.stop_reason = data.get("stop_reason")
        self._complete_tool_calls()
