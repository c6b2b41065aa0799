"""
MCP (Model Context Protocol) tool host for llmrelay.

Connects to MCP servers and exposes their tools to the ``ChatEngine``
through the ``ToolHost`` interface (``list_tools``, ``execute_tool``,
``read_resource``).

Tool names are namespaced by connection: a tool ``read_file`` on a server
connected as ``fs`` is listed as ``fs--read_file``. The engine splits that
name again to know which server to ask when a tool result links to a
resource.

Supported transports:
- stdio: local MCP servers spawned as a subprocess
- sse: HTTP/SSE-based MCP servers
- streamable-http: streamable HTTP MCP servers

Example Usage:
-------------
```python
from llmrelay import ChatEngine
from llmrelay.mcp_client import mcp_executor

async with mcp_executor() as executor:
    await executor.connect_stdio(
        name="fs",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
    )
    engine = ChatEngine(context, tool_host=executor)
    await engine.chat([{"role": "user", "content": "What is in /tmp?"}])
```
"""

import logging
from contextlib import asynccontextmanager, AsyncExitStack
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Literal,
    Optional,
    TypedDict,
)

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import AnyUrl, CallToolResult, Tool as MCPTool

from .types import MCPToolSchema, ResourceEntry, ToolResult
from .utils import TOOL_NAME_DELIMITER, split_tool_name

logger = logging.getLogger(__name__)


# =============================================================================
# Type Definitions
# =============================================================================

TransportType = Literal["stdio", "sse", "streamable-http"]


class MCPServerConfig(TypedDict, total=False):
    """
    Configuration dictionary for connecting to an MCP server.

    Fields:
        name: Unique key for this connection; prefixes its tool names
        transport: "stdio" (default), "sse" or "streamable-http"

        For stdio transport:
            command: Executable to run (e.g., "npx", "python", "uv")
            args: Command-line arguments
            env: Environment variables for the subprocess

        For HTTP-based transports:
            url: Server endpoint URL
            headers: HTTP headers (useful for authentication)
    """
    name: str
    transport: TransportType
    command: str
    args: List[str]
    env: Dict[str, str]
    url: str
    headers: Dict[str, str]


class ResourceReadResult(TypedDict, total=False):
    isError: bool
    contents: List[ResourceEntry]
    error: str


@dataclass
class MCPConnection:
    """
    An active connection to an MCP server.

    Attributes:
        name: Server key of this connection
        session: The MCP ClientSession for communication
        tools: Tools discovered on connect, with namespaced names
    """
    name: str
    session: ClientSession
    tools: List[MCPToolSchema] = field(default_factory=list)


class MCPToolExecutor:
    """
    Manages MCP server connections and tool execution.

    Connections are held open by an ``AsyncExitStack`` and closed in
    reverse order when the executor's context exits. The MCP SDK uses anyio,
    so the executor must be used as an async context manager:

        async with MCPToolExecutor() as executor:
            await executor.connect_stdio(...)
            ...
    """

    def __init__(self):
        self._connections: Dict[str, MCPConnection] = {}
        # Namespaced tool name -> (server key, name on that server)
        self._tool_map: Dict[str, tuple] = {}
        self._exit_stack: Optional[AsyncExitStack] = None

    async def __aenter__(self) -> "MCPToolExecutor":
        self._exit_stack = AsyncExitStack()
        await self._exit_stack.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._exit_stack:
            await self._exit_stack.__aexit__(exc_type, exc_val, exc_tb)
            self._exit_stack = None
        self._connections.clear()
        self._tool_map.clear()

    @property
    def connections(self) -> Dict[str, MCPConnection]:
        return self._connections

    @property
    def tool_names(self) -> List[str]:
        return list(self._tool_map.keys())

    def _ensure_context(self):
        if self._exit_stack is None:
            raise RuntimeError(
                "MCPToolExecutor must be used as an async context manager: "
                "async with MCPToolExecutor() as executor: ..."
            )

    def _check_name(self, name: str) -> None:
        if name in self._connections:
            raise ValueError(f"Connection '{name}' already exists")
        if TOOL_NAME_DELIMITER in name:
            raise ValueError(f"Connection name '{name}' must not contain '{TOOL_NAME_DELIMITER}'")

    # =========================================================================
    # Connections
    # =========================================================================

    async def connect_stdio(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Connect to an MCP server via stdio transport.

        Args:
            name: Server key for this connection (prefixes its tool names)
            command: Command to run (e.g., "npx", "python", "uv", "node")
            args: Command arguments
            env: Environment variables to set for the subprocess

        Raises:
            ValueError: If a connection with this name already exists
            RuntimeError: If not inside an async context
        """
        self._ensure_context()
        self._check_name(name)

        server_params = StdioServerParameters(command=command, args=args or [], env=env)
        read_stream, write_stream = await self._exit_stack.enter_async_context(
            stdio_client(server_params)
        )
        return await self._open_session(name, read_stream, write_stream)

    async def connect_sse(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Connect to an MCP server via SSE (Server-Sent Events) transport.
        """
        self._ensure_context()
        self._check_name(name)

        read_stream, write_stream = await self._exit_stack.enter_async_context(
            sse_client(url, headers=headers)
        )
        return await self._open_session(name, read_stream, write_stream)

    async def connect_http(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Connect to an MCP server via streamable HTTP transport.
        """
        self._ensure_context()
        self._check_name(name)

        # Third value is a session id getter
        read_stream, write_stream, _ = await self._exit_stack.enter_async_context(
            streamablehttp_client(url, headers=headers)
        )
        return await self._open_session(name, read_stream, write_stream)

    async def connect(self, config: MCPServerConfig) -> MCPConnection:
        """
        Connect to an MCP server using a configuration dictionary.

        Example:
            async with MCPToolExecutor() as executor:
                for config in configs:
                    await executor.connect(config)
        """
        transport = config.get("transport", "stdio")
        name = config["name"]

        if transport == "stdio":
            return await self.connect_stdio(
                name=name,
                command=config["command"],
                args=config.get("args"),
                env=config.get("env"),
            )
        elif transport == "sse":
            return await self.connect_sse(name=name, url=config["url"], headers=config.get("headers"))
        elif transport == "streamable-http":
            return await self.connect_http(name=name, url=config["url"], headers=config.get("headers"))
        else:
            raise ValueError(f"Unsupported transport: {transport}")

    async def _open_session(self, name: str, read_stream, write_stream) -> MCPConnection:
        session = await self._exit_stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
        return await self.register_session(name, session)

    async def register_session(self, name: str, session: ClientSession) -> MCPConnection:
        """
        Discover the tools of an initialized session and route them.
        """
        tools_response = await session.list_tools()
        tools = self._convert_mcp_tools(tools_response.tools, name)
        for tool in tools:
            self._tool_map[tool["name"]] = (name, split_tool_name(tool["name"])[1])

        connection = MCPConnection(name=name, session=session, tools=tools)
        self._connections[name] = connection
        logger.info("Connected to MCP server '%s' with %d tools", name, len(tools))
        return connection

    @staticmethod
    def _convert_mcp_tools(mcp_tools: List[MCPTool], server_name: str) -> List[MCPToolSchema]:
        converted: List[MCPToolSchema] = []
        for tool in mcp_tools:
            converted.append({
                "name": f"{server_name}{TOOL_NAME_DELIMITER}{tool.name}",
                "description": tool.description or "",
                "inputSchema": tool.inputSchema or {"type": "object", "properties": {}},
            })
        return converted

    # =========================================================================
    # Tool host interface
    # =========================================================================

    async def list_tools(self) -> List[MCPToolSchema]:
        """
        All tools from all connected servers, with namespaced names.
        """
        tools: List[MCPToolSchema] = []
        for conn in self._connections.values():
            tools.extend(conn.tools)
        return tools

    async def execute_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        """
        Execute a namespaced tool on its server.

        Returns:
            ToolResult: ``content`` holds the MCP content blocks as dicts.

        Raises:
            ValueError: If the tool is not found in any connected server
        """
        if name not in self._tool_map:
            raise ValueError(f"Tool '{name}' not found in any connected server")

        server_name, tool_name = self._tool_map[name]
        conn = self._connections[server_name]
        result = await conn.session.call_tool(tool_name, arguments)
        return self._to_tool_result(result)

    @staticmethod
    def _to_tool_result(result: CallToolResult) -> ToolResult:
        tool_result: ToolResult = {
            "isError": bool(result.isError),
            "content": [block.model_dump(mode="json", exclude_none=True) for block in result.content],
        }
        if result.structuredContent is not None:
            tool_result["structuredContent"] = result.structuredContent
        if result.isError:
            texts = [block.get("text", "") for block in tool_result["content"] if block.get("type") == "text"]
            tool_result["error"] = "\n".join(texts) or "Tool reported an error"
        return tool_result

    async def read_resource(self, server_key: str, uri: str) -> ResourceReadResult:
        """
        Read a resource from one server.

        Failures are reported in the result, not raised, so a broken link
        in a tool result does not fail the chat.
        """
        conn = self._connections.get(server_key)
        if conn is None:
            return {"isError": True, "contents": [], "error": f"Unknown MCP server '{server_key}'"}
        try:
            result = await conn.session.read_resource(AnyUrl(uri))
        except Exception as exc:
            logger.warning("Failed to read resource %s from '%s': %s", uri, server_key, exc)
            return {"isError": True, "contents": [], "error": str(exc)}
        return {
            "isError": False,
            "contents": [entry.model_dump(mode="json", exclude_none=True) for entry in result.contents],
        }

    async def list_resources(self, server_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List available resources from one or all connected servers.
        """
        names = [server_name] if server_name else list(self._connections)
        resources = []
        for name in names:
            conn = self._connections.get(name)
            if conn is None:
                continue
            try:
                result = await conn.session.list_resources()
            except Exception as exc:
                # Server may not support resources
                logger.debug("Server '%s' did not list resources: %s", name, exc)
                continue
            resources.extend(
                {"uri": str(r.uri), "name": r.name, "server": name}
                for r in result.resources
            )
        return resources


# =============================================================================
# Context Manager Helper
# =============================================================================

@asynccontextmanager
async def mcp_executor(configs: Optional[List[MCPServerConfig]] = None) -> AsyncIterator[MCPToolExecutor]:
    """
    Create an executor, optionally connect a list of servers, and clean
    everything up on exit.

    Example:
        async with mcp_executor([{"name": "fs", "command": "npx", "args": [...]}]) as executor:
            tools = await executor.list_tools()
    """
    async with MCPToolExecutor() as executor:
        for config in configs or []:
            await executor.connect(config)
        yield executor
