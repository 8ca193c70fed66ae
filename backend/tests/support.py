from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Any

import jwt
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

from chatrelay.ai.chat_engine import ChatEngine, ModelChoice
from chatrelay.core.security import Identity
from chatrelay.core.settings import Settings

TEST_SECRET = "test-secret-0123456789-0123456789"


def make_token(
    subject: str,
    *,
    name: str | None = None,
    secret: str = TEST_SECRET,
    expires_in: int = 3600,
    **claims: Any,
) -> str:
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {"sub": subject, "iat": now, "exp": now + timedelta(seconds=expires_in), **claims}
    if name is not None:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(subject: str, *, name: str | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(subject, name=name)}"}


def identity_for(subject: str, *, name: str | None = None) -> Identity:
    return Identity(subject=subject, token=make_token(subject, name=name), name=name)


def sse_chunks(body: str) -> list[Any]:
    """Decode a UI message stream body into its JSON frames (and the final "[DONE]")."""
    out: list[Any] = []
    for line in body.splitlines():
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


class FakeChatEngine(ChatEngine):
    """ChatEngine backed by LangChain's fake chat model (no network)."""

    def __init__(self, settings: Settings, *, reply: str = "Hello there!", error: Exception | None = None):
        super().__init__(settings)
        self.reply = reply
        self.error = error
        self.choices: list[ModelChoice] = []

    def _build_llm(self, choice: ModelChoice):
        self.choices.append(choice)
        if self.error is not None:
            raise self.error
        return GenericFakeChatModel(messages=iter([AIMessage(content=self.reply)]))
