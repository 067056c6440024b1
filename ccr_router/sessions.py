from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any

SESSION_DELIMITER = "_session_"
DEFAULT_MAX_SESSIONS = 100


@dataclass(slots=True)
class SessionUsage:
    input_tokens: int = 0
    output_tokens: int = 0


class SessionUsageCache:
    """LRU map of session id to the last usage reported for that session."""

    def __init__(self, max_sessions: int = DEFAULT_MAX_SESSIONS):
        self._max_sessions = max(1, int(max_sessions))
        self._lock = Lock()
        self._data: OrderedDict[str, SessionUsage] = OrderedDict()

    def get(self, session_id: str | None) -> SessionUsage | None:
        if not session_id:
            return None
        with self._lock:
            usage = self._data.get(session_id)
            if usage is not None:
                self._data.move_to_end(session_id)
            return usage

    def put(self, session_id: str | None, usage: SessionUsage) -> None:
        if not session_id:
            return
        with self._lock:
            is_new = session_id not in self._data
            self._data[session_id] = usage
            self._data.move_to_end(session_id)
            if is_new and len(self._data) > self._max_sessions:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def resolve_session_id(body: dict[str, Any]) -> str | None:
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        return None
    user_id = metadata.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        return None
    _, sep, session_id = user_id.partition(SESSION_DELIMITER)
    if not sep:
        return None
    return session_id


def parse_session_usage(usage: Any) -> SessionUsage | None:
    """Build a ``SessionUsage`` from an Anthropic ``usage`` object."""
    if not isinstance(usage, dict):
        return None
    input_tokens = usage.get("input_tokens")
    if not isinstance(input_tokens, int) or isinstance(input_tokens, bool):
        return None
    output_tokens = usage.get("output_tokens")
    if not isinstance(output_tokens, int) or isinstance(output_tokens, bool):
        output_tokens = 0
    return SessionUsage(input_tokens=input_tokens, output_tokens=output_tokens)
