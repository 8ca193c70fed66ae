from __future__ import annotations

import asyncio
import json
import logging

import pytest
from sqlalchemy import select

from chatrelay.ai.chat_engine import ChatEngine, CompletionFinish, ModelChoice, ReasoningDelta, SourceCitation, TextDelta
from chatrelay.ai.ui_stream import DONE, UIMessageStreamEncoder
from chatrelay.api.chat import CompletionRecord, persist_assistant_reply, relay_completion
from chatrelay.db.models.message import Message
from support import identity_for, sse_chunks


def _types(frames: list[str]) -> list[str]:
    return [json.loads(f[len("data: "):])["type"] for f in frames if f != DONE]


def test_encoder_wraps_deltas_in_blocks() -> None:
    enc = UIMessageStreamEncoder(message_id="msg-1")

    frames = [
        *enc.start(),
        *enc.reasoning("thinking"),
        *enc.text("Hel"),
        *enc.text("lo"),
        *enc.source("https://a.example", "A"),
        *enc.finish(),
    ]

    assert json.loads(frames[0][len("data: "):]) == {"type": "start", "messageId": "msg-1"}
    assert _types(frames) == [
        "start",
        "start-step",
        "reasoning-start",
        "reasoning-delta",
        "reasoning-end",
        "text-start",
        "text-delta",
        "text-delta",
        "source-url",
        "text-end",
        "finish-step",
        "finish",
    ]
    assert frames[-1] == DONE


def test_encoder_closes_open_block_before_finish_and_error() -> None:
    enc = UIMessageStreamEncoder(message_id="msg-1")
    enc.text("partial")
    assert _types(enc.finish()) == ["text-end", "finish-step", "finish"]

    enc = UIMessageStreamEncoder(message_id="msg-2")
    enc.reasoning("hmm")
    frames = enc.error("nope")
    assert _types(frames) == ["reasoning-end", "error"]
    assert frames[-1] == DONE

    assert UIMessageStreamEncoder().error("x")[0].startswith('data: {"type":"error"')


class _ScriptedEngine(ChatEngine):
    def __init__(self, settings, events, *, stall: bool = False):
        super().__init__(settings)
        self._events = events
        self._stall = stall

    async def stream_reply(self, *, messages, choice):
        for event in self._events:
            yield event
        if self._stall:
            await asyncio.sleep(60)


async def _drain(engine: ChatEngine, record: CompletionRecord, *, max_duration_seconds: float = 5.0) -> list:
    frames = [f async for f in relay_completion(engine, messages=[], record=record, max_duration_seconds=max_duration_seconds)]
    return sse_chunks("".join(frames))


@pytest.mark.asyncio
async def test_relay_collects_text_and_finish_details(settings) -> None:
    engine = _ScriptedEngine(
        settings,
        [
            ReasoningDelta("hm"),
            TextDelta("Hi "),
            SourceCitation("https://a.example"),
            TextDelta("there"),
            CompletionFinish(finish_reason="stop", total_tokens=9),
        ],
    )
    record = CompletionRecord(choice=ModelChoice("perplexity", "sonar"))

    chunks = await _drain(engine, record)

    assert record.succeeded is True
    assert record.text == "Hi there"
    assert (record.finish_reason, record.total_tokens) == ("stop", 9)
    sources = [c for c in chunks if isinstance(c, dict) and c["type"] == "source-url"]
    assert [s["url"] for s in sources] == ["https://a.example"]
    assert chunks[-2] == {"type": "finish"}
    assert chunks[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_relay_stops_at_deadline(settings) -> None:
    engine = _ScriptedEngine(settings, [TextDelta("slow")], stall=True)
    record = CompletionRecord(choice=ModelChoice("openai", "gpt-4o-mini"))

    chunks = await _drain(engine, record, max_duration_seconds=0.05)

    assert record.succeeded is False
    assert record.text == "slow"
    assert chunks[-2]["type"] == "error"
    assert chunks[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_persist_writes_empty_reply_with_no_parts(session_maker) -> None:
    record = CompletionRecord(choice=ModelChoice("openai", "gpt-4o-mini"), succeeded=True, total_tokens=3)

    await persist_assistant_reply(session_maker, identity_for("U1"), record)

    assert record.persisted.is_set()
    async with session_maker() as s:
        row = (await s.execute(select(Message))).scalar_one()
    assert (row.user_id, row.role, row.parts) == ("U1", "assistant", [])
    assert row.metadata_["source"] == "openai-api"
    assert row.metadata_["model"] == "gpt-4o-mini"
    assert row.metadata_["tokens"] == 3
    assert isinstance(row.metadata_["timestamp"], int)


@pytest.mark.asyncio
async def test_persist_skips_unfinished_completion(session_maker) -> None:
    record = CompletionRecord(choice=ModelChoice("openai", "gpt-4o-mini"), chunks=["half"])

    await persist_assistant_reply(session_maker, identity_for("U1"), record)

    assert record.persisted.is_set()
    async with session_maker() as s:
        assert (await s.execute(select(Message))).scalars().all() == []


@pytest.mark.asyncio
async def test_persist_failure_is_logged_not_raised(caplog) -> None:
    def _broken_session_maker():
        raise RuntimeError("pool exhausted")

    record = CompletionRecord(choice=ModelChoice("openai", "gpt-4o-mini"), chunks=["done"], succeeded=True)

    with caplog.at_level(logging.ERROR, logger="chatrelay.api.chat"):
        await persist_assistant_reply(_broken_session_maker, identity_for("U1"), record)

    assert record.persisted.is_set()
    assert "Error adding assistant message" in caplog.text
