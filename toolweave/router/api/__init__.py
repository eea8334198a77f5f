from toolweave.router.api.config import router as config_router
from toolweave.router.api.v1.conversation import router as conversation_router

routers = [
    config_router,
    conversation_router,
]
