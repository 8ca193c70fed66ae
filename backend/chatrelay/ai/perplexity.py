from __future__ import annotations

from typing import Any

from langchain_core.messages import AIMessageChunk
from langchain_core.outputs import ChatGenerationChunk
from langchain_openai import ChatOpenAI


class PerplexityChatModel(ChatOpenAI):
    """
    ChatOpenAI pointed at Perplexity's OpenAI-compatible endpoint.

    Perplexity puts `citations` and `search_results` at the top level of each
    stream chunk and may send `reasoning_content` in the delta. The stock
    converter only reads `choices`, so those are copied onto the message's
    `additional_kwargs` here.
    """

    def _convert_chunk_to_generation_chunk(
        self, chunk: dict, *args: Any, **kwargs: Any
    ) -> ChatGenerationChunk | None:
        generation_chunk = super()._convert_chunk_to_generation_chunk(chunk, *args, **kwargs)
        if generation_chunk is None or not isinstance(generation_chunk.message, AIMessageChunk):
            return generation_chunk

        extra = generation_chunk.message.additional_kwargs
        choices = chunk.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            reasoning = delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                extra["reasoning_content"] = reasoning
        for key in ("citations", "search_results"):
            value = chunk.get(key)
            if value:
                extra[key] = value
        return generation_chunk
