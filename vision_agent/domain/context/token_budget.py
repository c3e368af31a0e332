"""
Token accounting helpers.

Token counts are an approximation (characters / 4), not a tokenizer; callers
must not assume exactness.
"""

import math
import re

CHARS_PER_TOKEN = 4

_SENTENCE_END = re.compile(r"[.!?]+(?=\s|$)")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def truncate_text(text: str, max_chars: int) -> str:
    """Cut text to at most max_chars at a sentence, else word, boundary; never mid-word"""

    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text

    sentence_end = None
    for match in _SENTENCE_END.finditer(text):
        if match.end() > max_chars:
            break
        sentence_end = match.end()
    if sentence_end:
        return text[:sentence_end].rstrip()

    window = text[:max_chars]
    if text[max_chars].isspace():
        return window.rstrip()

    cut = max((window.rfind(ws) for ws in (" ", "\n", "\t")), default=-1)
    if cut <= 0:
        return ""
    return window[:cut].rstrip()


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    return truncate_text(text, max_tokens * CHARS_PER_TOKEN)
