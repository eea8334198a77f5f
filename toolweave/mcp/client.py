from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from typing import Any, Optional, Union

from mcp import ClientSession, StdioServerParameters
from mcp import Tool as MCPToolInfo
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.types import CallToolResult, TextContent
from pydantic import BaseModel
from pydantic_ai.tools import ToolDefinition

from toolweave.log import logger
from toolweave.tools.base import ToolArgs, ToolContext


class SSEServerParameters(BaseModel):
    url: str
    headers: dict | None = None
    timeout: float = 5
    sse_read_timeout: float = 60 * 5


ServerParams = Union[StdioServerParameters, SSEServerParameters]


class MCPToolCallError(RuntimeError):
    pass


class MCPTool:
    """One tool of a connected MCP server, named ``<server>-<tool>``."""

    def __init__(self, client: MCPClient, info: MCPToolInfo, needs_approval: bool = False) -> None:
        self.client = client
        self.info = info
        self.name = f"{client.name}-{info.name}"
        self.description = info.description or ""
        self.input_schema: dict[str, Any] = info.inputSchema
        self.needs_approval = needs_approval

    async def invoke(self, args: ToolArgs, ctx: ToolContext) -> Any:
        result = await self.client.call_tool(self.info.name, args)
        text = "\n".join(c.text for c in result.content if isinstance(c, TextContent))
        if result.isError:
            raise MCPToolCallError(text or f"MCP tool {self.name} returned an error")
        if result.structuredContent is not None:
            return result.structuredContent
        return text

    def describe(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters_json_schema=self.input_schema,
        )


class MCPClient:
    """A tool provider backed by one MCP server (a subprocess or an SSE endpoint).

    The connection lives in its own task so that it can be opened by one request
    and closed from another; the MCP transports must be exited by the task that
    entered them.
    """

    server_params: ServerParams

    def __init__(self, name: str, server_params: ServerParams, needs_approval: bool = False):
        self.name = name
        self.session: Optional[ClientSession] = None
        self.server_params = server_params
        self.needs_approval = needs_approval

        self._task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._error: BaseException | None = None

    async def initialize(self) -> None:
        """Connect to an MCP server"""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._serve(), name=f"mcp-{self.name}")
        await self._ready.wait()
        if self._error is not None:
            raise self._error

    async def _connect(self, exit_stack: AsyncExitStack) -> ClientSession:
        if isinstance(self.server_params, StdioServerParameters):
            transport = await exit_stack.enter_async_context(stdio_client(self.server_params))
        elif isinstance(self.server_params, SSEServerParameters):
            transport = await exit_stack.enter_async_context(
                sse_client(
                    self.server_params.url,
                    headers=self.server_params.headers,
                    timeout=self.server_params.timeout,
                    sse_read_timeout=self.server_params.sse_read_timeout,
                ),
            )
        else:
            raise TypeError(f"Unsupported server parameters type: {type(self.server_params)}")
        read, write = transport[0], transport[1]
        session = await exit_stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        return session

    async def _serve(self) -> None:
        try:
            async with AsyncExitStack() as exit_stack:
                self.session = await self._connect(exit_stack)
                logger.info(f"Connected to MCP server {self.name}")
                self._ready.set()
                await self._closing.wait()
        except Exception as e:
            if not self._ready.is_set():
                self._error = e
            else:
                logger.exception(f"MCP server {self.name} connection failed: {e}")
        finally:
            self.session = None
            self._ready.set()

    async def list_tools(self) -> dict[str, MCPTool]:
        response = await self._session().list_tools()
        tools = [MCPTool(self, info, self.needs_approval) for info in response.tools]
        return {tool.name: tool for tool in tools}

    async def call_tool(self, tool_name: str, args: ToolArgs) -> CallToolResult:
        return await self._session().call_tool(tool_name, args)

    def _session(self) -> ClientSession:
        if self.session is None:
            raise RuntimeError(f"MCP server {self.name} is not connected")
        return self.session

    async def aclose(self) -> None:
        """Clean up resources"""
        if self._task is None:
            return
        self._closing.set()
        await self._task
        self._task = None
