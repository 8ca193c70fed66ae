from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chatrelay.api.deps import get_chat_engine
from chatrelay.core.settings import Settings, get_settings
from chatrelay.db.base import Base
from chatrelay.db.models import message as _message_model  # noqa: F401
from chatrelay.db.session import get_session_maker
from chatrelay.main import app
from support import TEST_SECRET, FakeChatEngine


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(
        update={
            "auth_jwt_secret": TEST_SECRET,
            "auth_jwt_algorithms": ["HS256"],
            "auth_jwks_url": None,
            "auth_jwt_issuer": None,
            "auth_jwt_audience": None,
            "openai_api_key": "sk-test",
            "default_chat_model": "gpt-4o-mini",
            "web_search_model": "sonar",
            "chat_allowed_models": ["gpt-4o-mini", "gpt-4o", "gemini-2.5-flash"],
            "chat_max_duration_seconds": 30.0,
            "messages_default_limit": 50,
            "messages_max_limit": 200,
            "messages_clear_batch_size": 200,
        }
    )


@pytest_asyncio.fixture
async def session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    # One shared in-memory database for every session in the test.
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as s:
        yield s


@pytest.fixture
def chat_engine(settings: Settings) -> FakeChatEngine:
    return FakeChatEngine(settings)


@pytest_asyncio.fixture
async def client(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    chat_engine: FakeChatEngine,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_chat_engine] = lambda: chat_engine

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()
