import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI

from chatsync.config import Settings
from chatsync.context import ChatContext, build_context
from chatsync.routers.chat import router as chat_router
from chatsync.routers.conversations import router as conversations_router
from chatsync.services.identity import StaticIdentityProvider


ContextFactory = Callable[[], Awaitable[ChatContext]]


async def default_context() -> ChatContext:
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return await build_context(settings, StaticIdentityProvider())


def create_app(context_factory: Optional[ContextFactory] = None) -> FastAPI:
    factory = context_factory or default_context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.chat = await factory()
        try:
            yield
        finally:
            await app.state.chat.close()

    app = FastAPI(title="Chat sync", lifespan=lifespan)
    app.include_router(chat_router)
    app.include_router(conversations_router)

    @app.get("/")
    async def root():
        context: ChatContext = app.state.chat
        user = context.identity.get_current_user()
        return {"signed_in": user is not None, "unread_total": context.state.unread_total}

    return app


app = create_app()
