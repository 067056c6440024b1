from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Protocol, Sequence

import tiktoken

DEFAULT_ENCODING_NAME = "cl100k_base"


class TokenEncoder(Protocol):
    def encode(self, text: str) -> Sequence[Any]: ...


class _TiktokenEncoder:
    def __init__(self, encoding: tiktoken.Encoding):
        self._encoding = encoding

    def encode(self, text: str) -> Sequence[int]:
        return self._encoding.encode(text, disallowed_special=())


@lru_cache(maxsize=4)
def get_token_encoder(encoding_name: str = DEFAULT_ENCODING_NAME) -> TokenEncoder:
    return _TiktokenEncoder(tiktoken.get_encoding(encoding_name))


def _to_json(value: Any) -> str | None:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return None


def is_declared(value: Any) -> bool:
    """True for any present field value; empty objects and arrays count."""
    if isinstance(value, (dict, list)):
        return True
    return bool(value)


class TokenEstimator:
    """Estimate the prompt size of an Anthropic-style messages request.

    Only the shapes the router cares about are counted: message text, tool
    calls and results, text system segments, and tool declarations. Anything
    else contributes zero instead of failing the estimate.
    """

    def __init__(self, encoder: TokenEncoder | None = None):
        self._encoder = encoder

    @property
    def encoder(self) -> TokenEncoder:
        if self._encoder is None:
            self._encoder = get_token_encoder()
        return self._encoder

    def count_text(self, text: str | None) -> int:
        if not isinstance(text, str) or not text:
            return 0
        return len(self.encoder.encode(text))

    def estimate(self, messages: Any, system: Any, tools: Any) -> int:
        return (
            self._count_messages(messages)
            + self._count_system(system)
            + self._count_tools(tools)
        )

    def _count_messages(self, messages: Any) -> int:
        if not isinstance(messages, list):
            return 0
        total = 0
        for message in messages:
            if not isinstance(message, dict):
                continue
            content = message.get("content")
            if isinstance(content, str):
                total += self.count_text(content)
            elif isinstance(content, list):
                for part in content:
                    total += self._count_content_part(part)
        return total

    def _count_content_part(self, part: Any) -> int:
        if not isinstance(part, dict):
            return 0
        part_type = part.get("type")
        if part_type == "text":
            return self.count_text(part.get("text"))
        if part_type == "tool_use":
            if "input" not in part:
                return 0
            return self.count_text(_to_json(part["input"]))
        if part_type == "tool_result":
            if "content" not in part:
                return 0
            content = part["content"]
            if isinstance(content, str):
                return self.count_text(content)
            return self.count_text(_to_json(content))
        return 0

    def _count_system(self, system: Any) -> int:
        if isinstance(system, str):
            return self.count_text(system)
        if not isinstance(system, list):
            return 0
        total = 0
        for segment in system:
            if not isinstance(segment, dict) or segment.get("type") != "text":
                continue
            text = segment.get("text")
            if isinstance(text, str):
                total += self.count_text(text)
            elif isinstance(text, list):
                for text_part in text:
                    total += self.count_text(text_part or "")
        return total

    def _count_tools(self, tools: Any) -> int:
        if not isinstance(tools, list):
            return 0
        total = 0
        for tool in tools:
            if not isinstance(tool, dict):
                continue
            description = tool.get("description")
            if description:
                total += self.count_text(f"{tool.get('name') or ''}{description}")
            input_schema = tool.get("input_schema")
            if is_declared(input_schema):
                total += self.count_text(_to_json(input_schema))
        return total
