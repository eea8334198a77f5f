from __future__ import annotations

import json
from contextlib import asynccontextmanager
from functools import cache
from os import PathLike
from pathlib import Path

from fastapi import Depends
from mcp import StdioServerParameters
from pydantic import BaseModel, ConfigDict, Field

from toolweave.config import Config, get_config
from toolweave.log import logger
from toolweave.mcp.client import MCPClient, ServerParams, SSEServerParameters
from toolweave.tools.registry import ToolProviderCache

ServerName = str


class MCPServerEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    enabled: bool = True
    needs_approval: bool = Field(False, alias="needsApproval")

    def server_params(self) -> ServerParams:
        params = self.model_dump(exclude={"enabled", "needs_approval"})
        if "url" in params:
            return SSEServerParameters.model_validate(params)
        return StdioServerParameters.model_validate(params)


class MCPConfig(BaseModel):
    mcp_servers: dict[ServerName, MCPServerEntry] = Field({}, alias="mcpServers")


class MCPManager:
    """Reads ``mcp.json`` and creates one tool provider per enabled server."""

    disabled_servers: list[ServerName]

    def __init__(self, config_path: PathLike | str) -> None:
        config_path = Path(config_path)
        self.disabled_servers = []
        if not config_path.exists():
            logger.info(f"No MCP config at {config_path}, MCP tools disabled")
            self.mcp_config = MCPConfig()
            return

        logger.info(f"Loading MCP config from {config_path}")
        self.mcp_config = MCPConfig.model_validate(json.loads(config_path.read_text()))
        for server_name, entry in self.mcp_config.mcp_servers.items():
            if not entry.enabled:
                self.disabled_servers.append(server_name)

    def providers(self) -> list[MCPClient]:
        return [
            MCPClient(server_name, entry.server_params(), needs_approval=entry.needs_approval)
            for server_name, entry in self.mcp_config.mcp_servers.items()
            if entry.enabled
        ]


def get_tool_cache(config: Config = Depends(get_config)) -> ToolProviderCache:
    return _get_tool_cache(config.mcp_config_path, config.cache_tool_providers, config.tool_timeout_seconds)


@asynccontextmanager
async def init_tool_cache(config: Config):
    tool_cache = get_tool_cache(config)
    if tool_cache.enabled:
        await tool_cache.get_tools()
    yield tool_cache
    await tool_cache.aclose()
    logger.info("Tool providers disposed")


@cache
def _get_tool_cache(config_path: str, enabled: bool, timeout: float) -> ToolProviderCache:
    manager = MCPManager(config_path)
    return ToolProviderCache(manager.providers, enabled=enabled, timeout=timeout)
