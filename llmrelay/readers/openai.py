from typing import Any, Dict

from ..errors import ProviderError
from .base import BaseChatReader, load_json, parse_sse_data


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class OpenAIChatReader(BaseChatReader):
    """
    Reader for OpenAI-compatible chat completion streams (OpenAI, DeepSeek).

    The body is Server-Sent Events; each ``data:`` line carries one
    ``chat.completion.chunk`` object and the stream ends with
    ``data: [DONE]``. Tool-call arguments arrive as string fragments keyed
    by ``index`` and are complete once a ``finish_reason`` is set.
    """

    provider_name = "openai"

    def _handle_line(self, line: str) -> None:
        data = parse_sse_data(line)
        if data is None:
            return
        if data == "[DONE]":
            self._complete_tool_calls()
            self._complete()
            return

        chunk = load_json(data)
        if chunk.get("error"):
            raise ProviderError(_error_message(chunk["error"]), body=chunk["error"])

        self._record_openai_usage(chunk.get("usage"))

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            self._emit_reasoning(delta.get("reasoning_content") or delta.get("reasoning"))
            self._emit_text(delta.get("content"))
            for position, tool_call in enumerate(delta.get("tool_calls") or []):
                function = tool_call.get("function") or {}
                self._append_tool_arguments(
                    tool_call.get("index", position),
                    arguments=function.get("arguments"),
                    call_id=tool_call.get("id"),
                    name=function.get("name"),
                )
            if choice.get("finish_reason"):
                self.stop_reason = choice["finish_reason"]
                self._complete_tool_calls()

    def _handle_end_of_body(self) -> None:
        # Some compatible servers omit [DONE] after a finish_reason
        if self.stop_reason is not None:
            self._complete_tool_calls()
            self._complete()
        else:
            super()._handle_end_of_body()

    def _handle_complete(self, data: Dict[str, Any]) -> None:
        if data.get("error"):
            raise ProviderError(_error_message(data["error"]), body=data["error"])
        self._record_openai_usage(data.get("usage"))
        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        message = choice.get("message") or {}
        self._emit_reasoning(message.get("reasoning_content") or message.get("reasoning"))
        self._emit_text(message.get("content"))
        for index, tool_call in enumerate(message.get("tool_calls") or []):
            function = tool_call.get("function") or {}
            self._append_tool_arguments(
                index,
                arguments=function.get("arguments"),
                call_id=tool_call.get("id"),
                name=function.get("name"),
            )
        self.stop_reason = choice.get("finish_reason")
        self._complete_tool_calls()

    def _record_openai_usage(self, usage: Any) -> None:
        if not usage:
            return
        self._record_usage(
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        )
