from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.errors import DeprecatedOperation, InvalidRequest, PersistenceFailure
from chatrelay.core.security import Identity, require_identity
from chatrelay.db.models.message import Message
from chatrelay.schemas.message import MessageMetadata, MessagePart, dump_parts

logger = logging.getLogger(__name__)

ASSISTANT_ROLES = ("assistant", "system", "tool")

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
CLEAR_BATCH_SIZE = 200


def clamp_limit(limit: float | None, *, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """Effective page size: floor(limit) clamped into [1, maximum]; `default` when absent."""
    if limit is None:
        return default
    value = float(limit)
    if math.isnan(value):
        return default
    if math.isinf(value):
        return maximum if value > 0 else 1
    return max(1, min(maximum, math.floor(value)))


@dataclass(frozen=True)
class RecentMessages:
    viewer: str | None
    messages: list[Message]


def _metadata_json(metadata: MessageMetadata | dict[str, Any] | None) -> dict[str, Any] | None:
    if metadata is None:
        return None
    if isinstance(metadata, MessageMetadata):
        return metadata.to_json()
    return dict(metadata)


class MessageStore:
    """
    Identity-scoped accessors over the `messages` table.

    Every public operation takes the caller identity explicitly and rejects a
    missing one before issuing any SQL. `add_assistant_message_internal` is the
    only exception and must never be reachable from request input.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
        clear_batch_size: int = CLEAR_BATCH_SIZE,
    ) -> None:
        self._session = session
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._clear_batch_size = clear_batch_size

    async def list_recent(self, identity: Identity | None, *, limit: float | None = None) -> RecentMessages:
        identity = require_identity(identity)
        take = clamp_limit(limit, default=self._default_limit, maximum=self._max_limit)

        res = await self._session.execute(
            select(Message)
            .where(Message.user_id == identity.subject)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(take)
        )
        newest_first = list(res.scalars().all())
        newest_first.reverse()
        return RecentMessages(viewer=identity.name, messages=newest_first)

    async def count(self, identity: Identity | None) -> int:
        identity = require_identity(identity)
        res = await self._session.execute(
            select(func.count()).select_from(Message).where(Message.user_id == identity.subject)
        )
        return int(res.scalar_one())

    async def add_user_message(
        self,
        identity: Identity | None,
        *,
        parts: list[MessagePart] | list[dict[str, Any]],
        message_id: str | None,
        metadata: MessageMetadata | dict[str, Any] | None = None,
    ) -> UUID:
        identity = require_identity(identity)
        return await self._insert(
            Message(
                user_id=identity.subject,
                role="user",
                parts=dump_parts(parts),
                client_message_id=message_id,
                metadata_=_metadata_json(metadata),
            )
        )

    async def add_assistant_message(
        self,
        identity: Identity | None,
        *,
        parts: list[MessagePart] | list[dict[str, Any]],
        role: str = "assistant",
        metadata: MessageMetadata | dict[str, Any] | None = None,
    ) -> UUID:
        identity = require_identity(identity)
        return await self.add_assistant_message_internal(
            user_id=identity.subject, parts=parts, role=role, metadata=metadata
        )

    async def add_assistant_message_internal(
        self,
        *,
        user_id: str,
        parts: list[MessagePart] | list[dict[str, Any]],
        role: str = "assistant",
        metadata: MessageMetadata | dict[str, Any] | None = None,
    ) -> UUID:
        """Trusted server-side write: no identity check."""
        if role not in ASSISTANT_ROLES:
            raise InvalidRequest(f"Role must be one of {', '.join(ASSISTANT_ROLES)}")
        return await self._insert(
            Message(
                user_id=user_id,
                role=role,
                parts=dump_parts(parts),
                metadata_=_metadata_json(metadata),
            )
        )

    async def clear_all(self, identity: Identity | None) -> int:
        identity = require_identity(identity)

        # Bounded batches, strictly sequential: read ids, delete, commit, repeat.
        total = 0
        while True:
            res = await self._session.execute(
                select(Message.id).where(Message.user_id == identity.subject).limit(self._clear_batch_size)
            )
            ids = list(res.scalars().all())
            if not ids:
                break
            await self._session.execute(delete(Message).where(Message.id.in_(ids)))
            await self._session.commit()
            total += len(ids)

        logger.info("Cleared %d messages for user %s", total, identity.subject)
        return total

    async def _insert(self, message: Message) -> UUID:
        self._session.add(message)
        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            await self._session.rollback()
            raise PersistenceFailure() from e
        return message.id

    # Removed operations, kept so old callers get a pointer to the current API.

    async def list_numbers(self, *args: Any, **kwargs: Any) -> None:
        raise DeprecatedOperation("listNumbers has been removed; use GET /api/messages instead")

    async def add_number(self, *args: Any, **kwargs: Any) -> None:
        raise DeprecatedOperation("addNumber has been removed; use POST /api/messages instead")

    async def add_message(self, *args: Any, **kwargs: Any) -> None:
        raise DeprecatedOperation(
            "addMessage has been removed; use POST /api/messages for user messages "
            "or POST /api/messages/assistant for assistant/system/tool messages"
        )
