from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

# Response headers the browser chat client expects for a UI message stream.
UI_MESSAGE_STREAM_HEADERS = {
    "x-vercel-ai-ui-message-stream": "v1",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DONE = "data: [DONE]\n\n"


def sse(chunk: dict[str, Any]) -> str:
    return f"data: {json.dumps(chunk, separators=(',', ':'))}\n\n"


class UIMessageStreamEncoder:
    """
    Turns text/reasoning/source deltas into UI message stream frames.

    Tracks which text or reasoning block is open so every delta lands inside a
    start/end pair, and closes whatever is still open on finish or error.
    """

    def __init__(self, message_id: str | None = None) -> None:
        self.message_id = message_id or f"msg-{uuid4().hex}"
        self._open_kind: str | None = None
        self._open_id: str | None = None
        self._counter = 0

    def start(self) -> list[str]:
        return [sse({"type": "start", "messageId": self.message_id}), sse({"type": "start-step"})]

    def text(self, delta: str) -> list[str]:
        return self._delta("text", delta)

    def reasoning(self, delta: str) -> list[str]:
        return self._delta("reasoning", delta)

    def source(self, url: str, title: str | None = None) -> list[str]:
        chunk: dict[str, Any] = {"type": "source-url", "sourceId": f"src-{uuid4().hex[:12]}", "url": url}
        if title:
            chunk["title"] = title
        return [sse(chunk)]

    def finish(self) -> list[str]:
        return [*self._close(), sse({"type": "finish-step"}), sse({"type": "finish"}), DONE]

    def error(self, error_text: str) -> list[str]:
        return [*self._close(), sse({"type": "error", "errorText": error_text}), DONE]

    def _delta(self, kind: str, delta: str) -> list[str]:
        frames: list[str] = []
        if self._open_kind != kind:
            frames.extend(self._close())
            self._open_kind = kind
            self._open_id = f"{kind}-{self._counter}"
            self._counter += 1
            frames.append(sse({"type": f"{kind}-start", "id": self._open_id}))
        frames.append(sse({"type": f"{kind}-delta", "id": self._open_id, "delta": delta}))
        return frames

    def _close(self) -> list[str]:
        if self._open_kind is None:
            return []
        frame = sse({"type": f"{self._open_kind}-end", "id": self._open_id})
        self._open_kind = None
        self._open_id = None
        return [frame]
