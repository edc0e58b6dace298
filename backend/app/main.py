"""LocalBiz Chat Relay Application.

This is the main entry point for the chat relay service. Visitors of the
LocalBiz directory chat with business owners in real time; every
conversation is the thread between one business and one visitor.

Modules:
    - chat: Relay core, room routing, sessions, presence, message store
    - directory: Business existence and ownership lookups
    - auth: Bearer token -> identity resolution
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.auth.identity import IdentityResolver
from app.chat.relay import RelayCore
from app.chat.router import router as chat_router
from app.chat.store import MessageStore
from app.config import AppSettings, get_config
from app.directory.service import BusinessDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppSettings = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in localbiz.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Chat relay running on http://{config.server.host}:{config.server.port} "
        f"(max_text_length={config.chat.max_text_length})"
    )

    yield  # Application runs here

    # Shutdown
    app.state.message_store.close()
    app.state.directory.close()
    app.state.identity_resolver.close()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application and its single relay instance.

    Args:
        config: Settings to use; defaults to ``get_config()``.
    """
    config = config or get_config()

    application = FastAPI(
        title="LocalBiz Chat Relay",
        description="Real-time chat between directory visitors and business owners",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = MessageStore(
        db_path=config.storage.messages_db,
        default_page_size=config.chat.default_page_size,
        max_page_size=config.chat.max_page_size,
    )
    directory = BusinessDirectory(db_path=config.storage.directory_db)
    resolver = IdentityResolver(db_path=config.storage.credentials_db)

    application.state.config = config
    application.state.message_store = store
    application.state.directory = directory
    application.state.identity_resolver = resolver
    application.state.relay = RelayCore(
        store=store,
        directory=directory,
        max_text_length=config.chat.max_text_length,
    )

    application.include_router(chat_router)

    @application.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the number of open relay connections.
        """
        return {
            "status": "ok",
            "connections": application.state.relay.connection_count,
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run("app.main:app", host=settings.server.host, port=settings.server.port)
