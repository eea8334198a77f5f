from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from toolweave.config import get_config
from toolweave.dbutils import init_engine
from toolweave.errors import ChatError, chat_error_handler, validation_error_handler
from toolweave.mcp.manager import init_tool_cache
from toolweave.router.api import routers


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    async with init_engine(config), init_tool_cache(config):
        yield


app = FastAPI(lifespan=lifespan)
app.add_exception_handler(ChatError, chat_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)


@app.get("/")
async def hello():
    return {"message": "Hello World"}


for router in routers:
    app.include_router(router)
