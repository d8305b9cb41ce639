"""
Message content normalization.

Freshchat delivers message bodies as `message_parts`: usually a list of part
records, but older messages and some channel integrations send a single
record, a bare string, or something stranger. Stored messages always hold
plain text, so every shape is reduced to one string here.

Recognized part shapes, in priority order:
1. {"text": {"content": "..."}}   nested text content (the common case)
2. {"content": "..."}              flat content
3. {"text": "..."}                 flat text
4. "..."                           bare string

Normalization never raises. Anything unextractable becomes "".
"""

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class NestedTextPart:
    """{"text": {"content": ...}}"""

    content: str

    @property
    def text(self) -> str:
        return self.content.strip()


@dataclass(frozen=True)
class FlatContentPart:
    """{"content": ...}"""

    content: str

    @property
    def text(self) -> str:
        return self.content.strip()


@dataclass(frozen=True)
class FlatTextPart:
    """{"text": "..."}"""

    value: str

    @property
    def text(self) -> str:
        return self.value.strip()


@dataclass(frozen=True)
class PlainTextPart:
    """A bare string part."""

    value: str

    @property
    def text(self) -> str:
        return self.value.strip()


ContentPart = Union[NestedTextPart, FlatContentPart, FlatTextPart, PlainTextPart]


def _to_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return ""


def parse_part(raw: Any) -> Optional[ContentPart]:
    """
    Classify one raw part into a content variant.

    Empty values do not match their shape, so a part like
    {"text": {"content": ""}, "content": "b"} falls through to FlatContentPart.

    Returns:
        The matching variant, or None when no shape matches
    """
    if isinstance(raw, str):
        return PlainTextPart(raw)

    if not isinstance(raw, dict):
        return None

    text = raw.get("text")
    if isinstance(text, dict) and text.get("content"):
        return NestedTextPart(_to_str(text["content"]))

    content = raw.get("content")
    if content:
        return FlatContentPart(_to_str(content))

    if isinstance(text, str) and text:
        return FlatTextPart(text)

    return None


def normalize_content(raw: Any) -> str:
    """
    Reduce raw message_parts to plain text.

    - None/empty -> ""
    - list/tuple -> text of every recognized part, empty parts dropped,
      joined with a single space
    - single record -> its text
    - anything else -> str(raw), stripped

    Examples:
        [{"text": {"content": "a"}}, {"text": {"content": ""}}, {"content": "b"}] -> "a b"
        {"content": " hi "} -> "hi"
        42 -> "42"
    """
    if raw is None:
        return ""

    try:
        if isinstance(raw, (list, tuple)):
            texts = []
            for item in raw:
                part = parse_part(item)
                if part is None:
                    continue
                text = part.text
                if text:
                    texts.append(text)
            return " ".join(texts)

        part = parse_part(raw)
        if part is not None:
            return part.text

        if not raw and raw != 0:
            return ""
        return _to_str(raw).strip()
    except Exception:
        return ""


def extract_text_parts(raw: Any) -> list[str]:
    """Non-empty text of each recognized part, in order (lookup API shape)."""
    if not isinstance(raw, (list, tuple)):
        raw = [raw] if raw is not None else []
    texts = []
    for item in raw:
        part = parse_part(item)
        if part is not None and part.text:
            texts.append(part.text)
    return texts
