import asyncio

import pytest

from toolweave.tools import FunctionTool, IsolatedTool, ToolContext, ToolProviderCache, ToolValue, cleanup_providers
from toolweave.tools.registry import merge_providers


def constant_tool(name, value):
    async def fn(args, ctx):
        return value

    return FunctionTool(name=name, fn=fn)


class FakeProvider:
    def __init__(self, name, tools, fail=False, delay=0.0):
        self.name = name
        self._tools = tools
        self.fail = fail
        self.delay = delay
        self.initialized = 0
        self.closed = 0

    async def initialize(self):
        self.initialized += 1
        await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError(f"{self.name} is down")

    async def list_tools(self):
        return {tool.name: tool for tool in self._tools}

    async def aclose(self):
        self.closed += 1


async def test_merge_is_last_provider_wins():
    first = FakeProvider("first", [constant_tool("search", "first"), constant_tool("only-first", 1)])
    second = FakeProvider("second", [constant_tool("search", "second")])

    registry, live = await merge_providers([first, second])

    assert sorted(registry) == ["only-first", "search"]
    assert live == [first, second]
    assert all(isinstance(tool, IsolatedTool) for tool in registry.values())
    result = await registry["search"].invoke({}, ToolContext(tool_call_id="c"))
    assert result == ToolValue("second")


async def test_failed_provider_is_dropped_and_closed():
    healthy = FakeProvider("healthy", [constant_tool("ping", "pong")])
    broken = FakeProvider("broken", [constant_tool("never", None)], fail=True)

    registry, live = await merge_providers([broken, healthy])

    assert list(registry) == ["ping"]
    assert live == [healthy]
    assert broken.closed == 1


async def test_with_tools_does_not_touch_the_shared_registry():
    registry, _ = await merge_providers([FakeProvider("p", [constant_tool("ping", "pong")])])
    extended = registry.with_tools([constant_tool("create_document", "doc")])

    assert sorted(extended) == ["create_document", "ping"]
    assert list(registry) == ["ping"]
    assert [d.name for d in extended.definitions()] == ["ping", "create_document"]


async def test_cache_initialises_providers_once():
    providers: list[FakeProvider] = []

    def factory():
        provider = FakeProvider("slow", [constant_tool("ping", "pong")], delay=0.05)
        providers.append(provider)
        return [provider]

    cache = ToolProviderCache(factory)
    results = await asyncio.gather(*(cache.get_tools() for _ in range(5)))

    assert len(providers) == 1
    assert providers[0].initialized == 1
    assert all(r.registry is results[0].registry for r in results)
    # Served from the cache: nothing for the caller to tear down
    assert all(r.providers == [] for r in results)
    assert cache.initialized

    await cache.aclose()
    assert providers[0].closed == 1
    assert not cache.initialized


async def test_disabled_cache_hands_providers_to_the_caller():
    providers: list[FakeProvider] = []

    def factory():
        provider = FakeProvider("fresh", [constant_tool("ping", "pong")])
        providers.append(provider)
        return [provider]

    cache = ToolProviderCache(factory, enabled=False)
    first = await cache.get_tools()
    second = await cache.get_tools()

    assert len(providers) == 2
    assert first.providers == [providers[0]]
    await cleanup_providers(first.providers)
    await cleanup_providers(second.providers)
    assert [p.closed for p in providers] == [1, 1]


async def test_cleanup_is_best_effort():
    class Stubborn(FakeProvider):
        async def aclose(self):
            raise RuntimeError("already gone")

    fine = FakeProvider("fine", [])
    await cleanup_providers([Stubborn("stubborn", []), fine])
    assert fine.closed == 1


@pytest.mark.parametrize("timeout", [0.05])
async def test_registry_applies_the_timeout(timeout):
    async def hang(args, ctx):
        await asyncio.sleep(1)

    registry, _ = await merge_providers([FakeProvider("p", [FunctionTool(name="hang", fn=hang)])], timeout=timeout)
    result = await registry["hang"].invoke({}, ToolContext(tool_call_id="c"))
    assert result.kind == "timeout"
