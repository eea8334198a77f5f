"""Merging tool providers into one registry, cached for the process lifetime."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from pydantic_ai.tools import ToolDefinition

from toolweave.log import logger
from toolweave.tools.base import Tool
from toolweave.tools.isolation import DEFAULT_TOOL_TIMEOUT, IsolatedTool


@runtime_checkable
class ToolProvider(Protocol):
    name: str

    async def initialize(self) -> None: ...

    async def list_tools(self) -> dict[str, Tool]: ...

    async def aclose(self) -> None: ...


class ToolRegistry(Mapping[str, IsolatedTool]):
    """Read-only name -> isolated tool mapping."""

    def __init__(self, tools: Mapping[str, IsolatedTool] | None = None) -> None:
        self._tools: dict[str, IsolatedTool] = dict(tools or {})

    def __getitem__(self, name: str) -> IsolatedTool:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return [tool.describe() for tool in self._tools.values()]

    def with_tools(self, tools: Iterable[Tool], timeout: float | None = DEFAULT_TOOL_TIMEOUT) -> ToolRegistry:
        """A new registry with ``tools`` layered on top; this one is left untouched."""
        merged = dict(self._tools)
        for tool in tools:
            merged[tool.name] = tool if isinstance(tool, IsolatedTool) else IsolatedTool(tool, timeout)
        return ToolRegistry(merged)


@dataclass
class ToolSet:
    registry: ToolRegistry
    # Providers the caller owns and must release. Empty when served from the cache.
    providers: list[ToolProvider] = field(default_factory=list)


async def _load_provider(provider: ToolProvider) -> dict[str, Tool]:
    await provider.initialize()
    return await provider.list_tools()


async def merge_providers(
    providers: Sequence[ToolProvider],
    timeout: float | None = DEFAULT_TOOL_TIMEOUT,
) -> tuple[ToolRegistry, list[ToolProvider]]:
    """Initialise ``providers`` concurrently and merge their tools.

    Providers that fail are logged, closed and dropped. On a name collision the
    later provider wins. Returns the registry and the providers that are live.
    """
    results = await asyncio.gather(*(_load_provider(p) for p in providers), return_exceptions=True)

    merged: dict[str, IsolatedTool] = {}
    live: list[ToolProvider] = []
    for provider, result in zip(providers, results):
        if isinstance(result, BaseException):
            logger.opt(exception=result).error(f"Tool provider {provider.name} failed to initialize: {result}")
            await _close_quietly(provider)
            continue
        live.append(provider)
        for name, tool in result.items():
            if name in merged:
                logger.warning(f"Tool {name} from {provider.name} overrides an existing tool")
            merged[name] = IsolatedTool(tool, timeout)
        logger.info(f"Tool provider {provider.name} loaded {len(result)} tools")
    return ToolRegistry(merged), live


async def _close_quietly(provider: ToolProvider) -> None:
    try:
        await provider.aclose()
    except Exception as e:
        logger.exception(f"Error closing tool provider {provider.name}: {e}")


async def cleanup_providers(providers: Sequence[ToolProvider]) -> None:
    """Release providers that were not served from the cache. Best effort."""
    if not providers:
        return
    for provider in providers:
        await _close_quietly(provider)
    logger.info(f"Released {len(providers)} tool providers")


class ToolProviderCache:
    """Process-wide tool registry, built once on first use.

    Concurrent first requests wait on the same lock, so providers are spawned
    once. Requests served from the cache get no providers back and must not
    tear anything down; ``aclose`` is for application shutdown.
    """

    def __init__(
        self,
        provider_factory,
        *,
        enabled: bool = True,
        timeout: float | None = DEFAULT_TOOL_TIMEOUT,
    ) -> None:
        self._provider_factory = provider_factory
        self.enabled = enabled
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self._registry: ToolRegistry | None = None
        self._providers: list[ToolProvider] = []

    @property
    def initialized(self) -> bool:
        return self._registry is not None

    async def get_tools(self) -> ToolSet:
        if not self.enabled:
            registry, providers = await merge_providers(self._provider_factory(), self.timeout)
            return ToolSet(registry, providers)

        if self._registry is not None:
            return ToolSet(self._registry)

        async with self._lock:
            if self._registry is None:
                registry, providers = await merge_providers(self._provider_factory(), self.timeout)
                self._providers = providers
                self._registry = registry
        return ToolSet(self._registry)

    async def aclose(self) -> None:
        async with self._lock:
            providers, self._providers = self._providers, []
            self._registry = None
        await cleanup_providers(providers)
