import asyncio

import pytest
from inline_snapshot import snapshot

from toolweave.tools import FunctionTool, IsolatedTool, ToolContext, ToolError, ToolStream, ToolValue, invoke_isolated


def make_tool(fn, name="probe"):
    return FunctionTool(name=name, fn=fn, description="A probe tool")


@pytest.fixture
def ctx():
    return ToolContext(tool_call_id="call-1")


async def succeed(args, ctx):
    return {"sum": args["a"] + args["b"]}


def raise_sync(args, ctx):
    raise ValueError("bad input")


async def raise_async(args, ctx):
    await asyncio.sleep(0)
    raise RuntimeError("remote failure")


async def sleep_forever(args, ctx):
    await asyncio.sleep(10)
    return "never"


async def count_up(args, ctx):
    for i in range(args["n"]):
        await asyncio.sleep(0.02)
        yield {"progress": i + 1}


async def test_success_is_a_value(ctx):
    result = await invoke_isolated(make_tool(succeed), {"a": 1, "b": 2}, ctx)
    assert result == ToolValue({"sum": 3})


@pytest.mark.parametrize(
    "fn,timeout,expected",
    [
        (raise_sync, 1, ToolError("bad input")),
        (raise_async, 1, ToolError("remote failure")),
        (sleep_forever, 0.05, ToolError('Tool "probe" timed out after 0.05s', kind="timeout")),
    ],
)
async def test_failures_resolve_to_errors(ctx, fn, timeout, expected):
    result = await invoke_isolated(make_tool(fn), {}, ctx, timeout=timeout)
    assert result == expected
    assert set(result.to_output()) == {"error"}


async def test_every_failure_mode_resolves(ctx):
    tools = [make_tool(fn) for fn in (succeed, raise_sync, raise_async, sleep_forever)]
    results = await asyncio.gather(*(invoke_isolated(t, {"a": 1, "b": 1}, ctx, timeout=0.05) for t in tools))
    assert [type(r).__name__ for r in results] == snapshot(["ToolValue", "ToolError", "ToolError", "ToolError"])


async def test_stream_passes_through_without_deadline(ctx):
    # Longer than the timeout in total, but never awaited as a whole
    result = await invoke_isolated(make_tool(count_up), {"n": 4}, ctx, timeout=0.05)
    assert isinstance(result, ToolStream)
    items = [item async for item in result.items]
    assert items == snapshot([{"progress": 1}, {"progress": 2}, {"progress": 3}, {"progress": 4}])


async def test_cancellation_propagates(ctx):
    task = asyncio.create_task(invoke_isolated(make_tool(sleep_forever), {}, ctx, timeout=None))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


async def test_isolated_tool_proxies_description(ctx):
    tool = IsolatedTool(make_tool(raise_sync, name="fragile"), timeout=1)
    assert tool.name == "fragile"
    assert tool.description == "A probe tool"
    assert tool.needs_approval is False
    assert tool.describe().name == "fragile"
    assert await tool.invoke({}, ctx) == ToolError("bad input")
