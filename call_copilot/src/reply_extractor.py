"""
Turns free-form LLM output into a short list of selectable reply lines.

The model is asked for a JSON array but nothing guarantees it. Each raw item
goes through an ordered chain of strategies: a bracketed JSON array if one
parses, otherwise a loose split on commas and newlines. No strategy raises.
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_SUGGESTIONS = [
    "영업시간과 오늘 예약 가능 여부가 궁금해요.",
    "가격대와 소요시간을 알려주세요.",
    "이번 주말(토/일) 가능한 가장 빠른 시간 알려주세요.",
]

_FENCE_LANG = re.compile(r"```json", re.IGNORECASE)
_FENCE = re.compile(r"```")
_ESCAPED_NEWLINE = re.compile(r"\\n")
_HSPACE = re.compile(r"[^\S\n]+")
_ARRAY_SPAN = re.compile(r"\[.*\]", re.DOTALL)
_BRACKETS = re.compile(r"[\[\]{}]")
_EDGE_QUOTES = re.compile(r'^"+|"+$')
_SEPARATORS = re.compile(r"[,，\n]")

_TEXT_KEYS = ("text", "message", "content")


def _item_text(item: Any) -> str:
    """String form of one raw item (plain text or a dict carrying text)."""
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in _TEXT_KEYS:
            value = item.get(key)
            if value:
                return str(value)
    try:
        return json.dumps(item, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(item)


def _element_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return _item_text(value).strip()
    if isinstance(value, (list, bool)) or value is None:
        return json.dumps(value, ensure_ascii=False)
    return str(value).strip()


def normalize(text: str) -> str:
    """Remove code fences and literal ``\\n`` escapes, collapse spaces.

    Real line breaks are kept; they separate items in the loose split.
    """
    text = _FENCE_LANG.sub("", text)
    text = _FENCE.sub("", text)
    text = _ESCAPED_NEWLINE.sub(" ", text)
    text = _HSPACE.sub(" ", text)
    lines = [line.strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line).strip()


def parse_json_array(text: str) -> Optional[list[str]]:
    """Parse the first ``[`` .. last ``]`` span as a JSON array, if it is one."""
    match = _ARRAY_SPAN.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except (ValueError, RecursionError):
        # Deeply nested brackets exhaust the decoder
        return None
    if not isinstance(parsed, list):
        return None
    return [_element_text(v) for v in parsed]


def split_loose(text: str) -> list[str]:
    """Last-resort split: drop brackets and quotes, split on separators."""
    text = _BRACKETS.sub("", text).strip()
    text = _EDGE_QUOTES.sub("", text).replace('"', "").strip()
    return [piece.strip() for piece in _SEPARATORS.split(text) if piece.strip()]


def _extract_item(item: Any) -> list[str]:
    text = normalize(_item_text(item))
    parsed = parse_json_array(text)
    if parsed is not None:
        return parsed
    logger.debug(f"No JSON array in completion, splitting loosely: {text[:80]!r}")
    return split_loose(text)


def dedupe(values: Iterable[str]) -> list[str]:
    """Drop empties and repeats, keeping first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def extract_replies(
    items: Union[str, Iterable[Any], None],
    limit: Optional[int] = None,
) -> list[str]:
    """
    Extract clean candidate replies from raw model output.

    Args:
        items: A raw completion string, or a sequence of raw items
        limit: Keep only the first ``limit`` candidates (AI path)

    Returns:
        Deduplicated candidates in first-seen order
    """
    if items is None:
        return []
    if isinstance(items, (str, bytes, dict)) or not isinstance(items, Iterable):
        items = [items]

    collected: list[str] = []
    for item in items:
        collected.extend(_extract_item(item))

    replies = dedupe(collected)
    if limit is not None:
        replies = replies[:limit]
    return replies


def default_suggestions() -> list[str]:
    """Opening suggestions shown before any AI turn (never truncated)."""
    return extract_replies(DEFAULT_SUGGESTIONS)
