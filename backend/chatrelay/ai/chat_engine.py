from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
import json
from typing import Any, Literal, Union

import httpx
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    BaseMessageChunk,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from chatrelay.core.errors import UpstreamFailure
from chatrelay.core.settings import Settings
from chatrelay.schemas.message import FilePart, StepStartPart, TextPart, ToolPart, UIMessage

Provider = Literal["openai", "perplexity", "google"]

# Tool states that carry a result the model can be shown.
_SETTLED_TOOL_STATES = ("output-available", "output-error")


@dataclass(frozen=True)
class ModelChoice:
    provider: Provider
    model: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class SourceCitation:
    url: str
    title: str | None = None


@dataclass(frozen=True)
class CompletionFinish:
    finish_reason: str | None = None
    total_tokens: int | None = None


StreamEvent = Union[TextDelta, ReasoningDelta, SourceCitation, CompletionFinish]


class ThinkTagSplitter:
    """
    Routes `<think>...</think>` spans in streamed text to ReasoningDelta.

    Tags may be split across chunks, so a trailing partial tag is held back
    until the next feed (or flush).
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self) -> None:
        self._buffer = ""
        self._thinking = False

    def feed(self, text: str) -> list[StreamEvent]:
        out: list[StreamEvent] = []
        self._buffer += text
        while self._buffer:
            tag = self.CLOSE if self._thinking else self.OPEN
            idx = self._buffer.find(tag)
            if idx >= 0:
                self._emit(out, self._buffer[:idx])
                self._buffer = self._buffer[idx + len(tag):]
                self._thinking = not self._thinking
                continue
            held = _partial_tag_suffix(self._buffer, tag)
            cut = len(self._buffer) - held
            self._emit(out, self._buffer[:cut])
            self._buffer = self._buffer[cut:]
            break
        return out

    def flush(self) -> list[StreamEvent]:
        out: list[StreamEvent] = []
        self._emit(out, self._buffer)
        self._buffer = ""
        return out

    def _emit(self, out: list[StreamEvent], text: str) -> None:
        if text:
            out.append(ReasoningDelta(text) if self._thinking else TextDelta(text))


def _partial_tag_suffix(text: str, tag: str) -> int:
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ChatEngine:
    """
    Streaming chat completions over LangChain chat models:
    - picks a backend from the request (web search vs. default vs. allow-listed model)
    - converts UI messages to LangChain messages behind a system prompt
    - flattens provider chunks into text/reasoning/citation events
    Explicitly selects api keys and passes them to the model (no implicit env fallback).
    """

    def __init__(self, settings: Settings, *, http_async_client: httpx.AsyncClient | None = None):
        self._settings = settings
        # Only the OpenAI-protocol backends take a custom transport.
        self._http_async_client = http_async_client

    def select_model(self, *, requested: str | None, web_search: bool) -> ModelChoice:
        if web_search:
            return ModelChoice(provider="perplexity", model=self._settings.web_search_model)

        model = (requested or "").strip()
        if not model or model not in self._settings.chat_allowed_models:
            model = self._settings.default_chat_model
        if model.startswith("gemini"):
            return ModelChoice(provider="google", model=model)
        return ModelChoice(provider="openai", model=model)

    def _api_key(self, provider: Provider) -> str:
        if provider == "google":
            key = (self._settings.google_api_key or "").strip() or (self._settings.gemini_api_key or "").strip()
            env_hint = "GOOGLE_API_KEY (preferred) or GEMINI_API_KEY"
        elif provider == "perplexity":
            key = (self._settings.perplexity_api_key or "").strip()
            env_hint = "PERPLEXITY_API_KEY"
        else:
            key = (self._settings.openai_api_key or "").strip()
            env_hint = "OPENAI_API_KEY"
        if not key:
            raise ValueError(f"Missing {provider} API key. Set {env_hint}.")
        return key

    def _build_llm(self, choice: ModelChoice) -> BaseChatModel:
        temperature = float(self._settings.chat_temperature)
        if choice.provider == "google":
            from langchain_google_genai import ChatGoogleGenerativeAI

            return ChatGoogleGenerativeAI(
                model=choice.model,
                api_key=self._api_key("google"),
                temperature=temperature,
                include_thoughts=self._settings.chat_include_thoughts,
            )

        if choice.provider == "perplexity":
            from chatrelay.ai.perplexity import PerplexityChatModel

            return PerplexityChatModel(
                model=choice.model,
                api_key=self._api_key("perplexity"),
                base_url=self._settings.perplexity_base_url,
                temperature=temperature,
                stream_usage=True,
                http_async_client=self._http_async_client,
            )

        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=choice.model,
            api_key=self._api_key("openai"),
            temperature=temperature,
            stream_usage=True,
            http_async_client=self._http_async_client,
        )

    def to_lc_messages(self, messages: list[UIMessage]) -> list[BaseMessage]:
        msgs: list[BaseMessage] = [SystemMessage(content=self._settings.chat_system_prompt)]
        for m in messages:
            if m.role == "user":
                content = user_content(m)
                if content:
                    msgs.append(HumanMessage(content=content))
            elif m.role == "assistant":
                msgs.extend(_assistant_steps(m))
            elif m.role == "system":
                text = _joined_text(m.parts)
                if text:
                    msgs.append(SystemMessage(content=text))
            # Tool results live on the assistant turn's tool parts; `tool` turns add nothing.
        return msgs

    async def stream_reply(self, *, messages: list[UIMessage], choice: ModelChoice) -> AsyncIterator[StreamEvent]:
        """
        Stream one completion as StreamEvents, ending with a CompletionFinish.

        Any provider/configuration error surfaces as UpstreamFailure.
        """
        finish_reason: str | None = None
        total_tokens: int | None = None
        seen_sources: set[str] = set()
        splitter = ThinkTagSplitter()

        try:
            llm = self._build_llm(choice)
            async for chunk in llm.astream(self.to_lc_messages(messages)):
                for event in self.events_from_chunk(chunk, seen_sources=seen_sources):
                    if isinstance(event, TextDelta):
                        for split in splitter.feed(event.text):
                            yield split
                    else:
                        yield event
                meta = getattr(chunk, "response_metadata", None) or {}
                finish_reason = meta.get("finish_reason") or finish_reason
                usage = getattr(chunk, "usage_metadata", None) or {}
                if usage.get("total_tokens") is not None:
                    total_tokens = int(usage["total_tokens"])
        except UpstreamFailure:
            raise
        except Exception as e:
            raise UpstreamFailure(f"{choice.provider} completion failed") from e

        for split in splitter.flush():
            yield split
        yield CompletionFinish(finish_reason=finish_reason, total_tokens=total_tokens)

    def events_from_chunk(self, chunk: BaseMessageChunk, *, seen_sources: set[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        extra = getattr(chunk, "additional_kwargs", None) or {}
        reasoning = extra.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            events.append(ReasoningDelta(reasoning))

        content = chunk.content
        if isinstance(content, str):
            if content:
                events.append(TextDelta(content))
        else:
            for block in content or []:
                if isinstance(block, str):
                    if block:
                        events.append(TextDelta(block))
                    continue
                kind = block.get("type")
                if kind == "text" and block.get("text"):
                    events.append(TextDelta(block["text"]))
                elif kind in ("thinking", "reasoning"):
                    text = block.get(kind) or block.get("text") or ""
                    if text:
                        events.append(ReasoningDelta(text))

        # search_results first: they carry titles for the same urls as citations.
        meta = getattr(chunk, "response_metadata", None) or {}
        raw_sources = [
            *(extra.get("search_results") or []),
            *(extra.get("citations") or []),
            *(meta.get("citations") or []),
        ]
        for raw in raw_sources:
            source = _citation(raw)
            if source is not None and source.url not in seen_sources:
                seen_sources.add(source.url)
                events.append(source)
        return events


def _joined_text(parts: list[Any]) -> str:
    return "".join(p.text for p in parts if isinstance(p, TextPart)).strip()


def user_content(message: UIMessage) -> str | list[dict[str, Any]]:
    """Model-visible content of a user turn; empty when it has no text or files."""
    blocks: list[dict[str, Any]] = []
    for p in message.parts:
        if isinstance(p, TextPart) and p.text:
            blocks.append({"type": "text", "text": p.text})
        elif isinstance(p, FilePart):
            if p.media_type.startswith("image/"):
                blocks.append({"type": "image_url", "image_url": {"url": p.url}})
            else:
                label = p.filename or p.url
                blocks.append({"type": "text", "text": f"[Attached file: {label} ({p.media_type})]"})
    if all(b["type"] == "text" for b in blocks):
        return "\n".join(b["text"] for b in blocks).strip()
    return blocks


def _tool_name(part: ToolPart) -> str:
    if part.type.startswith("tool-"):
        return part.type[len("tool-"):]
    return str((part.model_extra or {}).get("toolName") or "tool")


def _tool_result(part: ToolPart) -> str:
    if part.state == "output-error":
        return part.error_text or "Tool call failed"
    if isinstance(part.output, str):
        return part.output
    return json.dumps(part.output, default=str)


def _assistant_steps(message: UIMessage) -> list[BaseMessage]:
    """
    One AIMessage per step (split on `step-start`), each followed by a
    ToolMessage for every settled tool call made in that step.
    """
    out: list[BaseMessage] = []
    step: list[Any] = []

    def flush() -> None:
        text = _joined_text(step)
        tools = [p for p in step if isinstance(p, ToolPart) and p.state in _SETTLED_TOOL_STATES]
        if text or tools:
            out.append(
                AIMessage(
                    content=text,
                    tool_calls=[
                        {"name": _tool_name(p), "args": p.input if isinstance(p.input, dict) else {}, "id": p.tool_call_id}
                        for p in tools
                    ],
                )
            )
            out.extend(ToolMessage(content=_tool_result(p), tool_call_id=p.tool_call_id) for p in tools)
        step.clear()

    for part in message.parts:
        if isinstance(part, StepStartPart):
            flush()
        else:
            step.append(part)
    flush()
    return out


def _citation(raw: Any) -> SourceCitation | None:
    if isinstance(raw, str) and raw.strip():
        return SourceCitation(url=raw.strip())
    if isinstance(raw, dict) and isinstance(raw.get("url"), str) and raw["url"].strip():
        title = raw.get("title")
        return SourceCitation(url=raw["url"].strip(), title=title if isinstance(title, str) else None)
    return None
