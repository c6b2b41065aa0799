import codecs
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from ..errors import ChatError, MalformedPayload, TruncatedStream
from ..types import StreamEvent, ToolCall, Usage

logger = logging.getLogger(__name__)


class ReaderState(Enum):
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class PendingToolCall:
    """Tool call whose arguments are still arriving."""

    def __init__(self, index: int):
        self.index = index
        self.id = ""
        self.name = ""
        self.arguments = ""
        self.parsed: Optional[Dict[str, Any]] = None


class BaseChatReader(ABC):
    """
    Incremental parser for one streaming HTTP response body.

    Raw chunks are pushed in with ``feed()``; each call returns the
    normalized events completed by that chunk. ``finish()`` is called once
    the body ends. A reader is single use: one instance per request.

    Subclasses implement ``_handle_line`` (one complete line of the body)
    and ``_handle_complete`` (the full body in buffered mode).
    """

    provider_name = "base"

    def __init__(self, stream: bool = True):
        self.stream = stream
        self.state = ReaderState.AWAITING_FIRST_CHUNK
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._events: List[StreamEvent] = []
        self._tool_calls: Dict[int, PendingToolCall] = {}
        self._usage: Dict[str, Any] = {}
        self.stop_reason: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state in (ReaderState.COMPLETED, ReaderState.FAILED)

    # =========================================================================
    # Push interface
    # =========================================================================

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """
        Feed a raw chunk and return the events it completes.

        Raises:
            RuntimeError: If the reader already finished.
        """
        if self.finished:
            raise RuntimeError("Reader already finished; create a new reader per request")
        if self.state is ReaderState.AWAITING_FIRST_CHUNK:
            self.state = ReaderState.STREAMING

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        if not self.stream:
            return []

        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._process_line(line)
            if self.finished:
                break
        return self._drain()

    def finish(self) -> List[StreamEvent]:
        """
        Signal end of body. Always produces a terminal event unless one
        was already emitted.
        """
        if self.finished:
            return self._drain()
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""

        if not self.stream:
            try:
                self._handle_complete(load_json(rest))
            except ChatError as exc:
                self._fail(exc)
            if not self.finished:
                self._complete()
            return self._drain()

        if rest.strip():
            self._process_line(rest)
        if not self.finished:
            try:
                self._handle_end_of_body()
            except ChatError as exc:
                self._fail(exc)
        return self._drain()

    def fail(self, error: ChatError) -> List[StreamEvent]:
        """Terminate the reader with an error (e.g. transport failure)."""
        if not self.finished:
            self._fail(error)
        return self._drain()

    async def read(self, chunks: AsyncIterator[Union[bytes, str]]) -> AsyncIterator[StreamEvent]:
        """
        Drive the reader from an async byte iterator.

        Transport errors raised while the body is being read become a
        terminal ``TruncatedStream`` error.
        """
        try:
            async for chunk in chunks:
                for event in self.feed(chunk):
                    yield event
                if self.finished:
                    return
        except httpx.RequestError as exc:
            for event in self.fail(TruncatedStream(f"Connection dropped mid-stream: {exc}")):
                yield event
            return
        for event in self.finish():
            yield event

    # =========================================================================
    # Hooks
    # =========================================================================

    def _process_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            self._handle_line(line)
        except ChatError as exc:
            self._fail(exc)

    @abstractmethod
    def _handle_line(self, line: str) -> None:
        ...

    @abstractmethod
    def _handle_complete(self, data: Dict[str, Any]) -> None:
        ...

    def _handle_end_of_body(self) -> None:
        # Body ended without the vendor's completion marker
        self._fail(TruncatedStream("Stream ended before completion"))

    # =========================================================================
    # Event helpers
    # =========================================================================

    def _emit_text(self, text: Optional[str]) -> None:
        if text:
            self._events.append({"type": "text", "text": text})

    def _emit_reasoning(self, text: Optional[str]) -> None:
        if text:
            self._events.append({"type": "reasoning", "text": text})

    def _tool_call(self, index: int) -> PendingToolCall:
        if index not in self._tool_calls:
            self._tool_calls[index] = PendingToolCall(index)
        return self._tool_calls[index]

    def _append_tool_arguments(
        self,
        index: int,
        arguments: Optional[str] = None,
        call_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        call = self._tool_call(index)
        if call_id:
            call.id = call_id
        if name:
            call.name = name
        event = {"type": "tool_call_delta", "index": index, "arguments": arguments or ""}
        if call_id:
            event["id"] = call_id
        if name:
            event["name"] = name
        if arguments:
            call.arguments += arguments
        self._events.append(event)

    def _complete_tool_call(self, index: int) -> None:
        """Parse the accumulated arguments of one call and emit it."""
        call = self._tool_calls.pop(index, None)
        if call is None:
            return
        if call.parsed is not None:
            arguments = call.parsed
        else:
            raw = call.arguments.strip()
            try:
                arguments = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                raise MalformedPayload(call.name, call.arguments)
            if not isinstance(arguments, dict):
                raise MalformedPayload(call.name, call.arguments)
        tool_call: ToolCall = {"id": call.id, "name": call.name, "arguments": arguments}
        self._events.append({"type": "tool_call", "tool_call": tool_call})

    def _complete_tool_calls(self) -> None:
        for index in sorted(self._tool_calls):
            self._complete_tool_call(index)

    def _complete(self) -> None:
        self.state = ReaderState.COMPLETED
        self._events.append({"type": "done", "usage": self.usage(), "stop_reason": self.stop_reason})

    def _fail(self, error: ChatError) -> None:
        logger.debug("%s reader failed: %s", self.provider_name, error)
        self.state = ReaderState.FAILED
        self._events.append({"type": "error", "error": error})

    def _drain(self) -> List[StreamEvent]:
        events, self._events = self._events, []
        return events

    # =========================================================================
    # Usage
    # =========================================================================

    def _record_usage(self, **values: Optional[int]) -> None:
        self._usage.update({k: v for k, v in values.items() if v is not None})

    def usage(self) -> Usage:
        return self.normalize_usage(
            self.provider_name,
            input_tokens=self._usage.get("input_tokens"),
            output_tokens=self._usage.get("output_tokens"),
            total_tokens=self._usage.get("total_tokens"),
            raw=dict(self._usage) if self._usage else None,
        )

    @staticmethod
    def normalize_usage(
        provider: str,
        *,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        total_tokens: Optional[int],
        raw: Optional[Dict[str, Any]],
    ) -> Usage:
        """
        Normalize token usage information across providers.

        Args:
            provider (str): Name of the provider.
            input_tokens (int, optional): Number of prompt tokens.
            output_tokens (int, optional): Number of generated tokens.
            total_tokens (int, optional): Total token count.
            raw (dict, optional): Raw usage data from the provider response.

        Returns:
            Usage: Standardized usage dictionary.
        """
        # Calculate total if not provided
        if total_tokens is None and input_tokens is not None and output_tokens is not None:
            total_tokens = input_tokens + output_tokens

        return {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": total_tokens,
            "raw": {
                "provider": provider,
                **(raw or {}),
            } if raw is not None else None,
        }


def parse_sse_data(line: str) -> Optional[str]:
    """
    Return the payload of an SSE ``data:`` line, or None for other fields.
    """
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


def load_json(data: str) -> Dict[str, Any]:
    """Parse one complete JSON unit; a broken unit means the stream is corrupt."""
    try:
        value = json.loads(data)
    except json.JSONDecodeError as exc:
        raise TruncatedStream(f"Malformed stream record: {exc.msg}")
    if not isinstance(value, dict):
        raise TruncatedStream("Stream record is not a JSON object")
    return value
