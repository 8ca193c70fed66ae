from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.api.router import api_router
from chatrelay.core.errors import register_error_handlers
from chatrelay.core.logging import setup_logging
from chatrelay.core.settings import get_settings
from chatrelay.db.session import dispose_engines, get_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "chatrelay starting (default_model=%s web_search_model=%s jwks=%s)",
        settings.default_chat_model,
        settings.web_search_model,
        bool(settings.auth_jwks_url),
    )
    yield
    await dispose_engines()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)

    app = FastAPI(title="chatrelay API", lifespan=lifespan)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/health/db")
    async def health_db(db: AsyncSession = Depends(get_db)):
        await db.execute(text("SELECT 1"))
        return {"ok": True}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatrelay.main:app", host="0.0.0.0", port=get_settings().port)
