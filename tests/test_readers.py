import json

import httpx
import pytest

from llmrelay.errors import MalformedPayload, ProviderError, TruncatedStream
from llmrelay.readers import AnthropicChatReader, OllamaChatReader, OpenAIChatReader, ReaderState

from conftest import json_lines, sse


def feed_all(reader, body, chunk_size=None):
    """Feed a body in chunks of ``chunk_size`` bytes (whole body if None) and finish."""
    events = []
    if chunk_size is None:
        events.extend(reader.feed(body))
    else:
        for start in range(0, len(body), chunk_size):
            if reader.finished:
                break
            events.extend(reader.feed(body[start:start + chunk_size]))
    events.extend(reader.finish())
    return events


def of_type(events, event_type):
    return [event for event in events if event["type"] == event_type]


def anthropic_sse(*events):
    return "".join(
        f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events
    ).encode("utf-8")


OPENAI_TEXT = sse(
    {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Héllo "}}]},
    {"choices": [{"index": 0, "delta": {"content": "wörld 👋"}}]},
    {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
     "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
)

OPENAI_TOOL = sse(
    {"choices": [{"index": 0, "delta": {"tool_calls": [
        {"index": 0, "id": "call_1", "type": "function", "function": {"name": "fs--read", "arguments": ""}}]}}]},
    {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": "{\"path\": "}}]}}]},
    {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": "\"/tmp\"}"}}]}}]},
    {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
)

ANTHROPIC_TOOL = anthropic_sse(
    {"type": "message_start", "message": {"usage": {"input_tokens": 10, "output_tokens": 1}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "ping"},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me check."}},
    {"type": "content_block_stop", "index": 0},
    {"type": "content_block_start", "index": 1,
     "content_block": {"type": "tool_use", "id": "toolu_1", "name": "fs--read", "input": {}}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"path\":"}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": " \"/tmp\"}"}},
    {"type": "content_block_stop", "index": 1},
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 20}},
    {"type": "message_stop"},
)

OLLAMA_TOOL = json_lines(
    {"message": {"role": "assistant", "content": "Hi"}, "done": False},
    {"message": {"role": "assistant", "content": "",
                 "tool_calls": [{"function": {"name": "fs--list", "arguments": {"path": "/"}}}]}, "done": False},
    {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop",
     "prompt_eval_count": 5, "eval_count": 7},
)


class TestOpenAIChatReader:

    def test_text_stream(self):
        reader = OpenAIChatReader()
        events = feed_all(reader, OPENAI_TEXT)

        assert "".join(e["text"] for e in of_type(events, "text")) == "Héllo wörld 👋"
        assert events[-1]["type"] == "done"
        assert events[-1]["stop_reason"] == "stop"
        assert events[-1]["usage"]["input_tokens"] == 3
        assert events[-1]["usage"]["output_tokens"] == 2
        assert events[-1]["usage"]["total_tokens"] == 5
        assert reader.state is ReaderState.COMPLETED

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64])
    def test_chunk_boundaries_do_not_change_events(self, chunk_size):
        expected = feed_all(OpenAIChatReader(), OPENAI_TEXT + b"")
        assert feed_all(OpenAIChatReader(), OPENAI_TEXT, chunk_size) == expected

    def test_tool_call_arguments_accumulate(self):
        events = feed_all(OpenAIChatReader(), OPENAI_TOOL)

        deltas = of_type(events, "tool_call_delta")
        assert len(deltas) == 3
        assert deltas[0]["id"] == "call_1"
        assert deltas[0]["name"] == "fs--read"
        assert of_type(events, "tool_call") == [
            {"type": "tool_call", "tool_call": {"id": "call_1", "name": "fs--read", "arguments": {"path": "/tmp"}}}
        ]
        assert events[-1]["type"] == "done"
        assert events[-1]["stop_reason"] == "tool_calls"

    def test_tool_call_bytewise(self):
        expected = feed_all(OpenAIChatReader(), OPENAI_TOOL)
        assert feed_all(OpenAIChatReader(), OPENAI_TOOL, 1) == expected

    def test_malformed_tool_arguments(self):
        body = sse(
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_1", "function": {"name": "calc", "arguments": "{bad"}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        )
        reader = OpenAIChatReader()
        events = feed_all(reader, body)

        errors = of_type(events, "error")
        assert len(errors) == 1
        assert isinstance(errors[0]["error"], MalformedPayload)
        assert errors[0]["error"].raw_arguments == "{bad"
        assert not of_type(events, "done")
        assert reader.state is ReaderState.FAILED

    def test_empty_arguments_are_empty_object(self):
        body = sse(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c", "function": {"name": "now"}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        )
        events = feed_all(OpenAIChatReader(), body)
        assert of_type(events, "tool_call")[0]["tool_call"]["arguments"] == {}

    def test_reasoning_content(self):
        body = sse(
            {"choices": [{"delta": {"reasoning_content": "thinking..."}}]},
            {"choices": [{"delta": {"content": "answer"}, "finish_reason": "stop"}]},
        )
        events = feed_all(OpenAIChatReader(), body)
        assert events[0] == {"type": "reasoning", "text": "thinking..."}
        assert events[1] == {"type": "text", "text": "answer"}

    def test_truncated_stream(self):
        body = sse({"choices": [{"delta": {"content": "partial"}}]}, done=False)
        events = feed_all(OpenAIChatReader(), body)

        assert events[0] == {"type": "text", "text": "partial"}
        assert isinstance(events[-1]["error"], TruncatedStream)

    def test_missing_done_after_finish_reason_is_tolerated(self):
        body = sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}, done=False)
        events = feed_all(OpenAIChatReader(), body)
        assert events[-1]["type"] == "done"

    def test_error_payload(self):
        body = sse({"error": {"message": "Rate limit exceeded", "type": "requests"}}, done=False)
        events = feed_all(OpenAIChatReader(), body)

        assert len(events) == 1
        assert isinstance(events[0]["error"], ProviderError)
        assert "Rate limit exceeded" in str(events[0]["error"])

    def test_broken_json_line_fails_stream(self):
        events = feed_all(OpenAIChatReader(), b"data: {\"choices\": [\n\n")
        assert isinstance(events[-1]["error"], TruncatedStream)

    def test_feed_after_finish(self):
        reader = OpenAIChatReader()
        feed_all(reader, OPENAI_TEXT)
        with pytest.raises(RuntimeError):
            reader.feed(b"data: {}\n")

    def test_buffered_response(self):
        body = json.dumps({
            "choices": [{
                "message": {
                    "role": "assistant",
                    "content": "Sure.",
                    "tool_calls": [{"id": "call_9", "type": "function",
                                    "function": {"name": "fs--read", "arguments": "{\"path\": \"/etc\"}"}}],
                },
                "finish_reason": "tool_calls",
            }],
            "usage": {"prompt_tokens": 4, "completion_tokens": 6},
        }).encode("utf-8")
        reader = OpenAIChatReader(stream=False)

        events = feed_all(reader, body, chunk_size=5)

        assert events[0] == {"type": "text", "text": "Sure."}
        assert of_type(events, "tool_call")[0]["tool_call"]["arguments"] == {"path": "/etc"}
        assert events[-1]["type"] == "done"
        assert events[-1]["usage"]["total_tokens"] == 10

    @pytest.mark.asyncio
    async def test_read_connection_drop(self):
        async def chunks():
            yield b'data: {"choices": [{"delta": {"content": "par"}}]}\n\n'
            raise httpx.ReadError("connection reset")

        events = [event async for event in OpenAIChatReader().read(chunks())]

        assert events[0] == {"type": "text", "text": "par"}
        assert len(events) == 2
        assert isinstance(events[1]["error"], TruncatedStream)

    @pytest.mark.asyncio
    async def test_read_stops_at_completion(self):
        async def chunks():
            yield OPENAI_TEXT
            yield b"data: ignored\n\n"

        events = [event async for event in OpenAIChatReader().read(chunks())]
        assert events[-1]["type"] == "done"
        assert len(of_type(events, "done")) == 1


class TestAnthropicChatReader:

    def test_text_and_tool_use(self):
        events = feed_all(AnthropicChatReader(), ANTHROPIC_TOOL)

        assert events[0] == {"type": "text", "text": "Let me check."}
        assert of_type(events, "tool_call") == [
            {"type": "tool_call", "tool_call": {"id": "toolu_1", "name": "fs--read", "arguments": {"path": "/tmp"}}}
        ]
        done = events[-1]
        assert done["type"] == "done"
        assert done["stop_reason"] == "tool_use"
        assert done["usage"]["input_tokens"] == 10
        assert done["usage"]["output_tokens"] == 20
        assert done["usage"]["total_tokens"] == 30

    @pytest.mark.parametrize("chunk_size", [1, 5, 17])
    def test_chunk_boundaries_do_not_change_events(self, chunk_size):
        expected = feed_all(AnthropicChatReader(), ANTHROPIC_TOOL)
        assert feed_all(AnthropicChatReader(), ANTHROPIC_TOOL, chunk_size) == expected

    def test_thinking_delta(self):
        body = anthropic_sse(
            {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}},
            {"type": "message_stop"},
        )
        events = feed_all(AnthropicChatReader(), body)
        assert events[0] == {"type": "reasoning", "text": "hmm"}

    def test_error_event(self):
        body = anthropic_sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        events = feed_all(AnthropicChatReader(), body)

        assert len(events) == 1
        assert isinstance(events[0]["error"], ProviderError)
        assert str(events[0]["error"]) == "Overloaded"

    def test_missing_message_stop(self):
        body = anthropic_sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "cut"}},
        )
        events = feed_all(AnthropicChatReader(), body)
        assert isinstance(events[-1]["error"], TruncatedStream)

    def test_buffered_response(self):
        body = json.dumps({
            "type": "message",
            "content": [
                {"type": "text", "text": "Checking"},
                {"type": "tool_use", "id": "toolu_2", "name": "fs--list", "input": {"path": "/"}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 8, "output_tokens": 3},
        }).encode("utf-8")

        events = feed_all(AnthropicChatReader(stream=False), body)

        assert events[0] == {"type": "text", "text": "Checking"}
        assert of_type(events, "tool_call")[0]["tool_call"] == {
            "id": "toolu_2", "name": "fs--list", "arguments": {"path": "/"},
        }
        assert events[-1]["stop_reason"] == "tool_use"


class TestOllamaChatReader:

    def test_json_lines_with_tool_call(self):
        events = feed_all(OllamaChatReader(), OLLAMA_TOOL)

        assert events[0] == {"type": "text", "text": "Hi"}
        assert of_type(events, "tool_call") == [
            {"type": "tool_call", "tool_call": {"id": "call_0", "name": "fs--list", "arguments": {"path": "/"}}}
        ]
        done = events[-1]
        assert done["stop_reason"] == "stop"
        assert done["usage"]["input_tokens"] == 5
        assert done["usage"]["output_tokens"] == 7
        assert done["usage"]["total_tokens"] == 12

    @pytest.mark.parametrize("chunk_size", [1, 4, 33])
    def test_chunk_boundaries_do_not_change_events(self, chunk_size):
        expected = feed_all(OllamaChatReader(), OLLAMA_TOOL)
        assert feed_all(OllamaChatReader(), OLLAMA_TOOL, chunk_size) == expected

    def test_thinking(self):
        body = json_lines(
            {"message": {"role": "assistant", "content": "", "thinking": "reasoning"}, "done": False},
            {"message": {"role": "assistant", "content": "ok"}, "done": True},
        )
        events = feed_all(OllamaChatReader(), body)
        assert events[0] == {"type": "reasoning", "text": "reasoning"}
        assert events[1] == {"type": "text", "text": "ok"}

    def test_last_line_without_newline(self):
        body = json_lines({"message": {"content": "a"}, "done": False}) + json.dumps(
            {"message": {"content": ""}, "done": True}).encode("utf-8")
        events = feed_all(OllamaChatReader(), body)
        assert events[-1]["type"] == "done"

    def test_missing_done(self):
        body = json_lines({"message": {"content": "a"}, "done": False})
        events = feed_all(OllamaChatReader(), body)
        assert isinstance(events[-1]["error"], TruncatedStream)

    def test_error_record(self):
        events = feed_all(OllamaChatReader(), json_lines({"error": "model 'x' not found"}))
        assert isinstance(events[0]["error"], ProviderError)

    def test_buffered_response(self):
        body = json.dumps({
            "message": {"role": "assistant", "content": "Full answer"},
            "done": True,
            "prompt_eval_count": 1,
            "eval_count": 2,
        }).encode("utf-8")
        events = feed_all(OllamaChatReader(stream=False), body)
        assert events[0] == {"type": "text", "text": "Full answer"}
        assert events[-1]["type"] == "done"
        assert len(events) == 2
