from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from chatrelay.api.deps import get_identity, get_message_store
from chatrelay.core.security import Identity
from chatrelay.schemas.message import (
    AddAssistantMessageRequest,
    AddUserMessageRequest,
    ClearMessagesResponse,
    MessageCountResponse,
    MessageIdResponse,
    MessagePublic,
    RecentMessagesResponse,
)
from chatrelay.services.message_store import MessageStore

router = APIRouter(tags=["messages"])


@router.get("/messages", response_model=RecentMessagesResponse)
async def list_recent_messages(
    limit: float | None = Query(default=None),
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
) -> RecentMessagesResponse:
    recent = await store.list_recent(identity, limit=limit)
    return RecentMessagesResponse(
        viewer=recent.viewer,
        messages=[MessagePublic.from_row(m) for m in recent.messages],
    )


@router.get("/messages/count", response_model=MessageCountResponse)
async def count_messages(
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
) -> MessageCountResponse:
    return MessageCountResponse(count=await store.count(identity))


@router.post("/messages", response_model=MessageIdResponse)
async def add_user_message(
    body: AddUserMessageRequest,
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
) -> MessageIdResponse:
    new_id = await store.add_user_message(
        identity,
        parts=body.parts,
        message_id=body.message_id,
        metadata=body.metadata,
    )
    return MessageIdResponse(id=new_id)


@router.post("/messages/assistant", response_model=MessageIdResponse)
async def add_assistant_message(
    body: AddAssistantMessageRequest,
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
) -> MessageIdResponse:
    new_id = await store.add_assistant_message(
        identity,
        parts=body.parts,
        role=body.role,
        metadata=body.metadata,
    )
    return MessageIdResponse(id=new_id)


@router.delete("/messages", response_model=ClearMessagesResponse)
async def clear_messages(
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
) -> ClearMessagesResponse:
    return ClearMessagesResponse(deleted=await store.clear_all(identity))


# Removed endpoints: always 410 with a pointer to the replacement.


@router.get("/numbers", include_in_schema=False)
async def list_numbers(store: MessageStore = Depends(get_message_store)) -> None:
    await store.list_numbers()


@router.post("/numbers", include_in_schema=False)
async def add_number(store: MessageStore = Depends(get_message_store)) -> None:
    await store.add_number()


@router.post("/messages/legacy", include_in_schema=False)
async def add_message_legacy(store: MessageStore = Depends(get_message_store)) -> None:
    await store.add_message()
