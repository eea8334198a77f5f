from toolweave.tools.base import FunctionTool, Tool, ToolContext
from toolweave.tools.isolation import IsolatedTool, ToolError, ToolStream, ToolValue, invoke_isolated
from toolweave.tools.registry import ToolProvider, ToolProviderCache, ToolRegistry, ToolSet, cleanup_providers

__all__ = [
    "FunctionTool",
    "IsolatedTool",
    "Tool",
    "ToolContext",
    "ToolError",
    "ToolProvider",
    "ToolProviderCache",
    "ToolRegistry",
    "ToolSet",
    "ToolStream",
    "ToolValue",
    "cleanup_providers",
    "invoke_isolated",
]
