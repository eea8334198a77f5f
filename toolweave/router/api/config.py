from fastapi import APIRouter, Depends

from toolweave.llms.models import KNOWN_MODELS, SUPPORTED_PROVIDERS
from toolweave.mcp.manager import get_tool_cache
from toolweave.router.api.params import GetModelsResponse, GetToolsResponse, ToolInfo
from toolweave.tools.registry import ToolProviderCache, cleanup_providers

router = APIRouter(
    tags=["config"],
    prefix="/api/config",
)


@router.get("/models")
async def get_provider_and_models() -> GetModelsResponse:
    return GetModelsResponse(providers=SUPPORTED_PROVIDERS, models=KNOWN_MODELS)


@router.get("/tools")
async def get_tools(tool_cache: ToolProviderCache = Depends(get_tool_cache)) -> GetToolsResponse:
    tool_set = await tool_cache.get_tools()
    try:
        return GetToolsResponse(
            tools=[
                ToolInfo(name=name, description=tool.description, needs_approval=tool.needs_approval)
                for name, tool in tool_set.registry.items()
            ]
        )
    finally:
        await cleanup_providers(tool_set.providers)
