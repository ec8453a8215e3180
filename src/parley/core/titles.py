from __future__ import annotations
import unicodedata

from .models import DEFAULT_CONVERSATION_TITLE

MAX_TITLE_LENGTH = 50


def _strip_tail(text: str) -> str:
    end = len(text)
    while end and (text[end - 1].isspace() or unicodedata.category(text[end - 1]).startswith("P")):
        end -= 1
    return text[:end]


def make_title(text: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    """
    Short conversation title from the first user message.
    Whitespace (newlines included) collapses to single spaces; long text is
    cut back to the last word boundary when one sits past the midpoint and
    gets a "..." suffix. Trailing punctuation is dropped before the suffix.
    """
    title = " ".join((text or "").split())
    truncated = len(title) > max_length
    if truncated:
        title = title[:max_length]
        space = title.rfind(" ")
        if space > max_length // 2:
            title = title[:space]
    title = _strip_tail(title)
    if not title:
        return DEFAULT_CONVERSATION_TITLE
    return f"{title}..." if truncated else title
