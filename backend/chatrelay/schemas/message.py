from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _Part(BaseModel):
    # Parts are validated loosely: unknown keys survive a round trip.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TextPart(_Part):
    type: Literal["text"] = "text"
    text: str
    state: Literal["streaming", "done"] | None = None


class ReasoningPart(_Part):
    type: Literal["reasoning"] = "reasoning"
    text: str
    state: Literal["streaming", "done"] | None = None


class FilePart(_Part):
    type: Literal["file"] = "file"
    media_type: str = Field(alias="mediaType")
    url: str
    filename: str | None = None


class SourceUrlPart(_Part):
    type: Literal["source-url"] = "source-url"
    source_id: str = Field(alias="sourceId")
    url: str
    title: str | None = None


class SourceDocumentPart(_Part):
    type: Literal["source-document"] = "source-document"
    source_id: str = Field(alias="sourceId")
    media_type: str = Field(alias="mediaType")
    title: str
    filename: str | None = None


class StepStartPart(_Part):
    type: Literal["step-start"] = "step-start"


class ToolPart(_Part):
    """`tool-<name>` or `dynamic-tool` call/result segment."""

    type: str
    tool_call_id: str = Field(alias="toolCallId")
    state: str
    input: Any = None
    output: Any = None
    error_text: str | None = Field(default=None, alias="errorText")


class UnknownPart(_Part):
    """Any segment kind this server does not model yet (e.g. `data-*`)."""

    type: str


_KNOWN_PART_TAGS = {"text", "reasoning", "file", "source-url", "source-document", "step-start"}


def _part_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if kind in _KNOWN_PART_TAGS:
        return kind
    if isinstance(kind, str) and (kind.startswith("tool-") or kind == "dynamic-tool"):
        return "tool"
    return "unknown"


MessagePart = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[ReasoningPart, Tag("reasoning")],
        Annotated[FilePart, Tag("file")],
        Annotated[SourceUrlPart, Tag("source-url")],
        Annotated[SourceDocumentPart, Tag("source-document")],
        Annotated[StepStartPart, Tag("step-start")],
        Annotated[ToolPart, Tag("tool")],
        Annotated[UnknownPart, Tag("unknown")],
    ],
    Discriminator(_part_tag),
]


def dump_parts(parts: list[MessagePart] | list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, BaseModel):
            out.append(part.model_dump(mode="json", by_alias=True, exclude_none=True))
        else:
            out.append(dict(part))
    return out


class MessageMetadata(BaseModel):
    """Open key/value bag; the named keys are the ones this server writes."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    timestamp: int | None = None
    source: str | None = None
    model: str | None = None
    tokens: int | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    role: Literal["user", "assistant", "system", "tool"]
    parts: list[MessagePart] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[UIMessage] = Field(default_factory=list)
    model: str | None = None
    web_search: bool = Field(default=False, alias="webSearch")


class AddUserMessageRequest(BaseModel):
    # A caller-supplied `role` is ignored; user messages are always role=user.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    parts: list[MessagePart]
    message_id: str = Field(alias="messageId", min_length=1, max_length=255)
    metadata: MessageMetadata | None = None


class AddAssistantMessageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    parts: list[MessagePart]
    role: Literal["assistant", "system", "tool"] = "assistant"
    metadata: MessageMetadata | None = None


class MessagePublic(BaseModel):
    id: UUID
    user_id: str = Field(serialization_alias="userId")
    role: str
    parts: list[dict[str, Any]]
    message_id: str | None = Field(default=None, serialization_alias="messageId")
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(serialization_alias="createdAt")

    @classmethod
    def from_row(cls, row: Any) -> "MessagePublic":
        return cls(
            id=row.id,
            user_id=row.user_id,
            role=row.role,
            parts=list(row.parts or []),
            message_id=row.client_message_id,
            metadata=row.metadata_,
            created_at=row.created_at,
        )


class RecentMessagesResponse(BaseModel):
    viewer: str | None
    messages: list[MessagePublic]


class MessageIdResponse(BaseModel):
    id: UUID


class MessageCountResponse(BaseModel):
    count: int


class ClearMessagesResponse(BaseModel):
    deleted: int
