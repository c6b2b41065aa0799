"""
Chat engine: drives one conversation turn across any provider.

A turn is an explicit, bounded loop of tool-call rounds:

1. Build the vendor payload from the working message list.
2. Send it and feed the response body to the provider's reader.
3. If the model asked for tools, run them through the tool host, append
   the vendor-shaped tool messages to the working list and go to 1.
4. Otherwise finish with one ``complete`` event.

The caller can consume events directly with ``astream()`` or register
observers and call ``chat()``.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, aclosing
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Set

import httpx

from .abort import AbortController
from .context import ChatContext, RequestContext
from .converter import ResourceResolver
from .errors import Aborted, ChatError, ToolExecutionError
from .providers import BaseChatProvider, get_provider_class
from .types import (
    ChatResult, EngineEvent, MCPToolSchema, Message, ResourceEntry, ToolCall, ToolResult, Usage,
)
from .utils import DEFAULT_FETCH_CONCURRENCY, split_tool_name

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 10

DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=300.0, write=60.0, pool=10.0)


class ChatState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class ToolHost(Protocol):
    """
    The external MCP tool host.

    Tool names are composite ``<server key>--<tool name>`` identifiers.
    """

    async def list_tools(self) -> List[MCPToolSchema]: ...

    async def execute_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult: ...

    async def read_resource(self, server_key: str, uri: str) -> Dict[str, Any]: ...


class _ChatRun:
    """Accumulation state owned by exactly one ``chat()`` call."""

    def __init__(self, messages: List[Message]):
        self.state = ChatState.IDLE
        # Copy: the caller's list is never mutated
        self.messages: List[Message] = list(messages)
        self.used_tool_names: Set[str] = set()
        self.content = ""
        self.reasoning = ""
        self.rounds = 0
        self.stop_reason: Optional[str] = None
        self._usage: Dict[str, int] = {}

    def add_usage(self, usage: Optional[Usage]) -> None:
        if not usage:
            return
        for key in ("input_tokens", "output_tokens", "total_tokens"):
            value = usage.get(key)
            if value is not None:
                self._usage[key] = self._usage.get(key, 0) + value

    def result(self) -> ChatResult:
        return {
            "content": self.content,
            "reasoning": self.reasoning,
            "usage": {
                "input_tokens": self._usage.get("input_tokens"),
                "output_tokens": self._usage.get("output_tokens"),
                "total_tokens": self._usage.get("total_tokens"),
                "raw": None,
            },
            "tool_rounds": self.rounds,
            "stop_reason": self.stop_reason,
        }


async def _checked_chunks(
    chunks: AsyncIterator[bytes],
    controller: AbortController,
) -> AsyncIterator[bytes]:
    """Check the abort token before every read from the response body."""
    controller.check()
    async for chunk in chunks:
        yield chunk
        controller.check()


class ChatEngine:
    """
    Orchestrates requests, streaming and the tool-call loop for one chat.

    The provider adapter class is chosen here from the context's provider
    name; each ``chat()`` call snapshots the context and builds its own
    adapter and accumulation state, so concurrent calls never share a
    working message list, used-tool set or state. Cancellation is shared: one
    ``abort()`` stops every call made through this engine, except calls
    given their own ``abort_controller``.

    Example:
        engine = ChatEngine(context, tool_host=executor)
        engine.on_reading(lambda text, reasoning: print(text, end=""))
        engine.on_complete(lambda result: print(result["usage"]))
        engine.on_error(lambda err, aborted: print("error:", err))
        await engine.chat([{"role": "user", "content": "hello"}])
    """

    def __init__(
        self,
        context: ChatContext,
        tool_host: Optional[ToolHost] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        fetch_concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        self.context = context
        self.tool_host = tool_host
        self.http_client = http_client
        self.max_tool_rounds = max_tool_rounds
        self.fetch_concurrency = fetch_concurrency
        self.timeout = timeout
        self.provider_class = get_provider_class(context.get_provider().name)
        self.abort_controller = AbortController()
        self._last_run: Optional[_ChatRun] = None

        self._on_reading: Optional[Callable] = None
        self._on_tool_calls: Optional[Callable] = None
        self._on_complete: Optional[Callable] = None
        self._on_error: Optional[Callable] = None

    # =========================================================================
    # Observers
    # =========================================================================

    def on_reading(self, callback: Callable[[str, str], Any]) -> None:
        self._on_reading = callback

    def on_tool_calls(self, callback: Callable[[str], Any]) -> None:
        self._on_tool_calls = callback

    def on_complete(self, callback: Callable[[ChatResult], Any]) -> None:
        self._on_complete = callback

    def on_error(self, callback: Callable[[Exception, bool], Any]) -> None:
        self._on_error = callback

    def abort(self) -> None:
        """Cancel all in-flight and future calls on this engine."""
        self.abort_controller.abort()

    @property
    def is_aborted(self) -> bool:
        return self.abort_controller.is_aborted

    @property
    def state(self) -> ChatState:
        """State of the most recently started call."""
        if self._last_run is None:
            return ChatState.IDLE
        return self._last_run.state

    # =========================================================================
    # Public API
    # =========================================================================

    async def chat(
        self,
        messages: List[Message],
        msg_id: Optional[str] = None,
        abort_controller: Optional[AbortController] = None,
    ) -> Optional[ChatResult]:
        """
        Run a turn and report it through the registered observers.

        Args:
            messages (List[Message]): The new turn (usually one user message).
            msg_id (str, optional): Id of an existing turn being regenerated;
                only history before it is sent.
            abort_controller (AbortController, optional): Token for this call
                only. Defaults to the engine's shared token.

        Returns:
            ChatResult: The aggregated result, or None on error or abort.
        """
        controller = abort_controller or self.abort_controller
        run = _ChatRun(messages)
        result: Optional[ChatResult] = None
        async with aclosing(self._stream(run, msg_id, controller)) as events:
            async for event in events:
                event_type = event["type"]
                if event_type == "error":
                    await self._notify(self._on_error, event["error"], event.get("aborted", False))
                elif controller.is_aborted:
                    if event_type == "complete":
                        run.state = ChatState.ABORTED
                        await self._notify(self._on_error, Aborted(), True)
                elif event_type == "text":
                    await self._notify(self._on_reading, event["text"], "")
                elif event_type == "reasoning":
                    await self._notify(self._on_reading, "", event["text"])
                elif event_type == "tool_running":
                    await self._notify(self._on_tool_calls, event["name"])
                elif event_type == "complete":
                    result = event["result"]
                    await self._notify(self._on_complete, result)
        return result

    async def astream(
        self,
        messages: List[Message],
        msg_id: Optional[str] = None,
        abort_controller: Optional[AbortController] = None,
    ) -> AsyncIterator[EngineEvent]:
        """
        Run a turn and yield engine events.

        Yields text, reasoning and tool-call deltas as they arrive,
        ``tool_running`` before each tool execution, and finally exactly one
        ``complete`` or ``error`` event (``aborted=True`` after ``abort()``).
        """
        controller = abort_controller or self.abort_controller
        async with aclosing(self._stream(_ChatRun(messages), msg_id, controller)) as events:
            async for event in events:
                yield event

    async def _stream(
        self,
        run: _ChatRun,
        msg_id: Optional[str],
        controller: AbortController,
    ) -> AsyncIterator[EngineEvent]:
        self._last_run = run
        try:
            controller.check()
            request_context = RequestContext.from_chat_context(self.context, msg_id)
            async with AsyncExitStack() as stack:
                client = self.http_client
                if client is None:
                    client = await stack.enter_async_context(httpx.AsyncClient(timeout=self.timeout))
                provider = self.provider_class(
                    request_context,
                    http_client=client,
                    fetch_concurrency=self.fetch_concurrency,
                )
                async with aclosing(self._run(provider, run, controller)) as events:
                    async for event in events:
                        yield event
        except Aborted as exc:
            run.state = ChatState.ABORTED
            yield {"type": "error", "error": exc, "aborted": True}
        except (ChatError, ValueError) as exc:
            logger.error("Chat failed: %s", exc)
            run.state = ChatState.FAILED
            yield {"type": "error", "error": exc, "aborted": False}

    # =========================================================================
    # Tool loop
    # =========================================================================

    async def _run(
        self,
        provider: BaseChatProvider,
        run: _ChatRun,
        controller: AbortController,
    ) -> AsyncIterator[EngineEvent]:
        tools = await self._list_tools(provider.context)

        while True:
            controller.check()
            run.state = ChatState.SENDING
            payload = await provider.make_payload(run.messages, tools, run.used_tool_names)
            controller.check()
            response = await provider.make_request(payload)

            round_text = ""
            tool_calls: List[ToolCall] = []
            try:
                run.state = ChatState.STREAMING
                reader = provider.get_reader()
                chunks = _checked_chunks(response.aiter_bytes(), controller)
                async with aclosing(reader.read(chunks)) as events:
                    async for event in events:
                        controller.check()
                        event_type = event["type"]
                        if event_type == "text":
                            run.content += event["text"]
                            round_text += event["text"]
                        elif event_type == "reasoning":
                            run.reasoning += event["text"]
                        elif event_type == "tool_call":
                            tool_calls.append(event["tool_call"])
                        elif event_type == "done":
                            run.add_usage(event.get("usage"))
                            run.stop_reason = event.get("stop_reason")
                            continue
                        elif event_type == "error":
                            raise event["error"]
                        yield event
            finally:
                await response.aclose()

            if not tool_calls:
                break
            if run.rounds >= self.max_tool_rounds:
                logger.warning("Stopping after %d tool rounds", run.rounds)
                run.stop_reason = "max_tool_rounds"
                break

            run.rounds += 1
            run.state = ChatState.TOOL_PENDING
            preceding_text: Optional[str] = round_text or None
            for tool_call in tool_calls:
                controller.check()
                yield {"type": "tool_running", "name": tool_call["name"]}
                controller.check()
                tool_result = await self._execute_tool(tool_call)
                controller.check()
                tool_messages = await provider.make_tool_messages(
                    tool_call,
                    tool_result,
                    preceding_text,
                    self._resource_resolver(tool_call["name"]),
                )
                # Only the first call of a round carries the assistant text
                preceding_text = None
                run.messages.extend(tool_messages)
                run.used_tool_names.add(tool_call["name"])

        controller.check()
        run.state = ChatState.COMPLETED
        yield {"type": "complete", "result": run.result()}

    async def _list_tools(self, context: RequestContext) -> List[MCPToolSchema]:
        if self.tool_host is None or not context.tools_available:
            return []
        try:
            return list(await self.tool_host.list_tools())
        except Exception as exc:
            logger.warning("Failed to list tools, continuing without tools: %s", exc)
            return []

    async def _execute_tool(self, tool_call: ToolCall) -> ToolResult:
        """
        Run one tool call. Failures become error results so the model can
        see what went wrong and react.
        """
        name = tool_call.get("name", "")
        if self.tool_host is None:
            return {"isError": True, "error": f"No tool host available to run '{name}'"}
        try:
            return await self.tool_host.execute_tool(name, tool_call.get("arguments") or {})
        except Exception as exc:
            error = ToolExecutionError(name, f"Error executing tool '{name}': {exc}")
            logger.warning("%s", error)
            return {"isError": True, "error": error.message}

    def _resource_resolver(self, tool_name: str) -> Optional[ResourceResolver]:
        if self.tool_host is None:
            return None
        tool_host = self.tool_host
        server_key, _ = split_tool_name(tool_name)

        async def resolve(uri: str) -> List[ResourceEntry]:
            result = await tool_host.read_resource(server_key, uri)
            if result.get("isError"):
                return []
            return result.get("contents") or []

        return resolve

    @staticmethod
    async def _notify(callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
