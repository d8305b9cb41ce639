"""Utility modules for supportsync."""

from .normalize import (
    ContentPart,
    FlatContentPart,
    FlatTextPart,
    NestedTextPart,
    PlainTextPart,
    extract_text_parts,
    normalize_content,
    parse_part,
)

__all__ = [
    "ContentPart",
    "FlatContentPart",
    "FlatTextPart",
    "NestedTextPart",
    "PlainTextPart",
    "extract_text_parts",
    "normalize_content",
    "parse_part",
]
