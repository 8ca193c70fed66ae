from __future__ import annotations

import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.ai.chat_engine import ChatEngine
from chatrelay.core.errors import Unauthenticated
from chatrelay.core.security import Identity, identity_from_token
from chatrelay.core.settings import Settings, get_settings
from chatrelay.db.session import get_db
from chatrelay.services.message_store import MessageStore

logger = logging.getLogger(__name__)


def _request_token(request: Request, settings: Settings) -> str | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    cookie = request.cookies.get(settings.session_cookie_name)
    return cookie or None


async def get_optional_identity(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Identity | None:
    token = _request_token(request, settings)
    if not token:
        return None
    try:
        return identity_from_token(token, settings)
    except ValueError as e:
        logger.info("Rejected identity token: %s", e)
        return None


async def get_identity(identity: Identity | None = Depends(get_optional_identity)) -> Identity:
    if identity is None:
        raise Unauthenticated()
    if not identity.token:
        raise Unauthenticated("Failed to get authentication token")
    return identity


def get_message_store(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> MessageStore:
    return MessageStore(
        db,
        default_limit=settings.messages_default_limit,
        max_limit=settings.messages_max_limit,
        clear_batch_size=settings.messages_clear_batch_size,
    )


def get_chat_engine(settings: Settings = Depends(get_settings)) -> ChatEngine:
    return ChatEngine(settings)
