from __future__ import annotations

from fastapi import APIRouter

from chatrelay.api import chat, messages

api_router = APIRouter(prefix="/api")
api_router.include_router(chat.router)
api_router.include_router(messages.router)
