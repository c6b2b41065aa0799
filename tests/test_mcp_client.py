from contextlib import asynccontextmanager

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from mcp.types import CallToolResult, ReadResourceResult, TextContent, TextResourceContents, Tool

from llmrelay.mcp_client import MCPToolExecutor, mcp_executor


def make_session(tools=None):
    session = MagicMock()
    session.initialize = AsyncMock()
    session.list_tools = AsyncMock(return_value=MagicMock(tools=tools if tools is not None else [
        Tool(name="read", description="Read a file", inputSchema={"type": "object", "properties": {}}),
    ]))
    session.call_tool = AsyncMock(return_value=CallToolResult(content=[TextContent(type="text", text="hi")]))
    session.read_resource = AsyncMock(return_value=ReadResourceResult(contents=[
        TextResourceContents(uri="file:///a.txt", mimeType="text/plain", text="body"),
    ]))
    return session


class TestMCPToolExecutor:

    @pytest.mark.asyncio
    async def test_tools_are_namespaced_by_server(self):
        async with MCPToolExecutor() as executor:
            await executor.register_session("fs", make_session())

            tools = await executor.list_tools()

        assert tools == [{
            "name": "fs--read",
            "description": "Read a file",
            "inputSchema": {"type": "object", "properties": {}},
        }]

    @pytest.mark.asyncio
    async def test_execute_tool_routes_to_server(self):
        session = make_session()
        async with MCPToolExecutor() as executor:
            await executor.register_session("fs", session)

            result = await executor.execute_tool("fs--read", {"path": "/tmp"})

        session.call_tool.assert_awaited_once_with("read", {"path": "/tmp"})
        assert result == {"isError": False, "content": [{"type": "text", "text": "hi"}]}

    @pytest.mark.asyncio
    async def test_execute_tool_error_result(self):
        session = make_session()
        session.call_tool.return_value = CallToolResult(
            content=[TextContent(type="text", text="permission denied")], isError=True,
        )
        async with MCPToolExecutor() as executor:
            await executor.register_session("fs", session)

            result = await executor.execute_tool("fs--read", {})

        assert result["isError"] is True
        assert result["error"] == "permission denied"

    @pytest.mark.asyncio
    async def test_execute_unknown_tool(self):
        async with MCPToolExecutor() as executor:
            with pytest.raises(ValueError, match="not found"):
                await executor.execute_tool("fs--missing", {})

    @pytest.mark.asyncio
    async def test_read_resource(self):
        session = make_session()
        async with MCPToolExecutor() as executor:
            await executor.register_session("fs", session)

            result = await executor.read_resource("fs", "file:///a.txt")

        session.read_resource.assert_awaited_once()
        assert result["isError"] is False
        assert result["contents"][0]["text"] == "body"
        assert result["contents"][0]["mimeType"] == "text/plain"

    @pytest.mark.asyncio
    async def test_read_resource_failures_are_reported(self):
        session = make_session()
        session.read_resource.side_effect = RuntimeError("no such resource")
        async with MCPToolExecutor() as executor:
            await executor.register_session("fs", session)

            failed = await executor.read_resource("fs", "file:///missing")
            unknown = await executor.read_resource("web", "https://example.com")

        assert failed["isError"] is True
        assert failed["contents"] == []
        assert unknown["isError"] is True

    @pytest.mark.asyncio
    async def test_requires_context(self):
        executor = MCPToolExecutor()
        with pytest.raises(RuntimeError, match="async context manager"):
            await executor.connect_stdio("fs", "npx")

    @pytest.mark.asyncio
    async def test_rejects_delimiter_in_server_name(self):
        async with MCPToolExecutor() as executor:
            with pytest.raises(ValueError):
                await executor.connect_stdio("my--fs", "npx")

    @pytest.mark.asyncio
    async def test_unsupported_transport(self):
        async with MCPToolExecutor() as executor:
            with pytest.raises(ValueError, match="Unsupported transport"):
                await executor.connect({"name": "x", "transport": "websocket", "url": "ws://x"})

    @pytest.mark.asyncio
    async def test_connect_stdio(self):
        session = make_session()
        transport_args = []

        @asynccontextmanager
        async def fake_stdio_client(params):
            transport_args.append(params)
            yield "read-stream", "write-stream"

        @asynccontextmanager
        async def fake_session(read_stream, write_stream):
            yield session

        with patch("llmrelay.mcp_client.stdio_client", fake_stdio_client), \
                patch("llmrelay.mcp_client.ClientSession", fake_session):
            async with mcp_executor([{"name": "fs", "command": "npx", "args": ["server"]}]) as executor:
                assert executor.tool_names == ["fs--read"]
                assert "fs" in executor.connections

        session.initialize.assert_awaited_once()
        assert transport_args[0].command == "npx"
        assert transport_args[0].args == ["server"]
        # Cleared on exit
        assert executor.tool_names == []

    @pytest.mark.asyncio
    async def test_duplicate_connection_name(self):
        async with MCPToolExecutor() as executor:
            await executor.register_session("fs", make_session())
            with pytest.raises(ValueError, match="already exists"):
                await executor.connect_sse("fs", "http://localhost/sse")
