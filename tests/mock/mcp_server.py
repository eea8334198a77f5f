import asyncio
from typing import Any

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("mock-server")


@mcp.tool()
async def echo_text(text: str) -> str:
    """Echo the input text"""
    return text


@mcp.tool()
async def get_user_info(user_id: int) -> dict[str, Any]:
    """Get user information by ID"""
    return {"id": user_id, "name": f"User {user_id}", "email": f"user{user_id}@example.com"}


@mcp.tool()
async def raise_error(message: str = "An error occurred") -> None:
    """Raise an error with the given message"""
    raise ValueError(message)


@mcp.tool()
async def slow_operation(seconds: float = 5) -> str:
    """Sleep for the given number of seconds"""
    await asyncio.sleep(seconds)
    return "done"


@mcp.tool()
async def delete_records(table: str) -> dict[str, Any]:
    """Delete every record of a table"""
    return {"table": table, "deleted": 3}


if __name__ == "__main__":
    mcp.run("stdio")
