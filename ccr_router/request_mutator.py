from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

logger = logging.getLogger("uvicorn.error")

SUBAGENT_OPEN_TAG = "<CCR-SUBAGENT-MODEL>"
SUBAGENT_CLOSE_TAG = "</CCR-SUBAGENT-MODEL>"
ENV_MARKER = "<env>"

_SUBAGENT_PATTERN = re.compile(
    re.escape(SUBAGENT_OPEN_TAG) + r"(.*?)" + re.escape(SUBAGENT_CLOSE_TAG),
    re.DOTALL,
)


def second_system_segment(body: dict[str, Any]) -> dict[str, Any] | None:
    system = body.get("system")
    if not isinstance(system, list) or len(system) < 2:
        return None
    segment = system[1]
    if not isinstance(segment, dict):
        return None
    return segment


def extract_subagent_model(body: dict[str, Any]) -> str | None:
    """Pop a subagent model directive off the second system segment.

    The directive only counts when the segment text starts with the opening
    tag and encloses a non-blank model id. On a match the tagged span is
    removed from the text and the enclosed model id is returned.
    """
    segment = second_system_segment(body)
    if segment is None:
        return None
    text = segment.get("text")
    if not isinstance(text, str) or not text.startswith(SUBAGENT_OPEN_TAG):
        return None
    match = _SUBAGENT_PATTERN.search(text)
    if match is None or not match.group(1).strip():
        return None
    segment["text"] = text.replace(match.group(0), "", 1)
    return match.group(1)


async def rewrite_system_prompt(body: dict[str, Any], prompt_path: str | None) -> bool:
    if not prompt_path:
        return False
    segment = second_system_segment(body)
    if segment is None:
        return False
    text = segment.get("text")
    if not isinstance(text, str) or ENV_MARKER not in text:
        return False
    try:
        prompt = await asyncio.to_thread(Path(prompt_path).read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.error(
            "system_prompt_rewrite_failed path=%s reason=%s", prompt_path, str(exc)
        )
        return False
    env_tail = text.split(ENV_MARKER)[-1]
    segment["text"] = f"{prompt}{ENV_MARKER}{env_tail}"
    return True


def apply_model(body: dict[str, Any], model: str) -> None:
    body["model"] = model
