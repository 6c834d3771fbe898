"""
Vikini backend - main app entry mounting all routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from routes.attachment_routes import router as attachment_router
from routes.auth_routes import router as auth_router
from routes.chat_routes import router as chat_router
from routes.conversation_routes import router as conversation_router
from routes.gallery_routes import router as gallery_router
from routes.image_routes import router as image_router
from routes.message_routes import router as message_router
from routes.model_routes import router as model_router
from routes.system_routes import router as system_router
from services.chat_store import ChatStore
from services.rate_limiter import RateLimiter
from utils.errors import register_exception_handlers
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = False
    if getattr(app.state, "chat_store", None) is None:
        app.state.chat_store = ChatStore(settings.database_path)
        owned = True
    yield
    if owned:
        app.state.chat_store.close()
        app.state.chat_store = None


def create_app(chat_store: Optional[ChatStore] = None) -> FastAPI:
    setup_logging(settings.log_level)

    app = FastAPI(title="Vikini Chat API", lifespan=lifespan)
    app.state.chat_store = chat_store
    app.state.rate_limiter = RateLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max)

    # Routers
    app.include_router(system_router)
    app.include_router(model_router)
    app.include_router(auth_router)
    app.include_router(chat_router)
    app.include_router(conversation_router)
    app.include_router(message_router)
    app.include_router(attachment_router)
    app.include_router(image_router)
    app.include_router(gallery_router)

    register_exception_handlers(app)

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
