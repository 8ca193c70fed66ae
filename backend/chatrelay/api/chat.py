from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
import asyncio
import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.background import BackgroundTask

from chatrelay.ai.chat_engine import (
    ChatEngine,
    CompletionFinish,
    ModelChoice,
    ReasoningDelta,
    SourceCitation,
    TextDelta,
    user_content,
)
from chatrelay.ai.ui_stream import UI_MESSAGE_STREAM_HEADERS, UIMessageStreamEncoder
from chatrelay.api.deps import get_chat_engine, get_identity, get_message_store
from chatrelay.core.errors import InvalidRequest, UpstreamFailure
from chatrelay.core.security import Identity
from chatrelay.core.settings import Settings, get_settings
from chatrelay.db.session import get_session_maker
from chatrelay.schemas.message import ChatRequest, MessageMetadata, TextPart, UIMessage
from chatrelay.services.message_store import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CompletionRecord:
    """What the stream produced, plus a signal set once the detached write is done."""

    choice: ModelChoice
    chunks: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    total_tokens: int | None = None
    succeeded: bool = False
    persisted: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


async def relay_completion(
    engine: ChatEngine,
    *,
    messages: list[UIMessage],
    record: CompletionRecord,
    max_duration_seconds: float,
) -> AsyncIterator[str]:
    encoder = UIMessageStreamEncoder()
    for frame in encoder.start():
        yield frame

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_duration_seconds
    events = engine.stream_reply(messages=messages, choice=record.choice).__aiter__()
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError
            try:
                event = await asyncio.wait_for(events.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                break

            if isinstance(event, TextDelta):
                record.chunks.append(event.text)
                frames = encoder.text(event.text)
            elif isinstance(event, ReasoningDelta):
                frames = encoder.reasoning(event.text)
            elif isinstance(event, SourceCitation):
                frames = encoder.source(event.url, event.title)
            elif isinstance(event, CompletionFinish):
                record.finish_reason = event.finish_reason
                record.total_tokens = event.total_tokens
                record.succeeded = True
                frames = []
            else:
                frames = []
            for frame in frames:
                yield frame
    except asyncio.TimeoutError:
        logger.warning(
            "Completion exceeded %.0fs (provider=%s model=%s)",
            max_duration_seconds,
            record.choice.provider,
            record.choice.model,
        )
        for frame in encoder.error("The response took too long and was stopped."):
            yield frame
        return
    except UpstreamFailure as e:
        logger.error("Completion stream failed: %s", e, exc_info=True)
        for frame in encoder.error(e.detail):
            yield frame
        return
    finally:
        await events.aclose()

    for frame in encoder.finish():
        yield frame


async def persist_assistant_reply(
    SessionLocal: async_sessionmaker[AsyncSession],
    identity: Identity,
    record: CompletionRecord,
) -> None:
    """Best-effort, at-most-once write of the finished reply. Never raises."""
    try:
        if not record.succeeded:
            logger.info("Completion did not finish; assistant message not stored")
            return
        text = record.text
        async with SessionLocal() as session:
            await MessageStore(session).add_assistant_message(
                identity,
                parts=[TextPart(text=text)] if text else [],
                role="assistant",
                metadata=MessageMetadata(
                    timestamp=_now_ms(),
                    source=f"{record.choice.provider}-api",
                    model=record.choice.model,
                    tokens=record.total_tokens,
                    finish_reason=record.finish_reason,
                ),
            )
    except Exception:
        logger.exception("Error adding assistant message")
    finally:
        record.persisted.set()


@router.post("/chat")
async def chat(
    request: Request,
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
    engine: ChatEngine = Depends(get_chat_engine),
    settings: Settings = Depends(get_settings),
    SessionLocal: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> StreamingResponse:
    # The body is read only after authentication has succeeded.
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidRequest("Request body must be valid JSON") from e
    try:
        body = ChatRequest.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequest("Invalid request body") from e

    last = body.messages[-1] if body.messages else None
    if last is None or last.role != "user":
        raise InvalidRequest("Invalid request: last message must be from user")
    if not user_content(last):
        raise InvalidRequest("Invalid request: last message has no text or file content")

    # A failed write aborts the request before the model is called.
    await store.add_user_message(
        identity,
        parts=last.parts,
        message_id=last.id or None,
        metadata={"timestamp": _now_ms(), "source": "chat-api", **(last.metadata or {})},
    )
    logger.info("Stored user turn %s for %s", last.id, identity.subject)

    record = CompletionRecord(choice=engine.select_model(requested=body.model, web_search=body.web_search))
    return StreamingResponse(
        relay_completion(
            engine,
            messages=body.messages,
            record=record,
            max_duration_seconds=settings.chat_max_duration_seconds,
        ),
        media_type="text/event-stream",
        headers=UI_MESSAGE_STREAM_HEADERS,
        background=BackgroundTask(persist_assistant_reply, SessionLocal, identity, record),
    )
