"""
chunker.py — split an utterance into speakable segments
=======================================================
Synthesis engines stall or truncate on long inputs, so text is spoken as a
sequence of short utterances.  Each window ends at the best boundary found,
in strict priority:

  1. the first sentence terminator followed by whitespace inside
     ``max_length + lookahead`` characters, if it falls within ``max_length``
  2. the first ", " within ``max_length``
  3. the last whitespace at or before ``max_length``
  4. a hard cut at ``max_length`` (text with no usable boundary)

The last window gets the same sentence and comma search.  Steps 3 and 4
only exist to respect ``max_length``, so a tail that already fits is kept
whole once no sentence or comma boundary splits it.

Every iteration advances by at least one character, so pathological input
(one enormous token) still terminates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator

log = logging.getLogger("voice_engine.chunker")

DEFAULT_MAX_LENGTH = 160
DEFAULT_LOOKAHEAD  = 30

_SENTENCE_BREAK_RE = re.compile(r"[.!?]\s+")
_WHITESPACE_RE     = re.compile(r"\s")


@dataclass(frozen=True)
class Chunk:
    """One utterance-sized piece of text.

    ``start``/``end`` index the source text; ``content`` is that slice trimmed.
    """
    content: str
    index: int
    start: int
    end: int


def _window_end(text: str, start: int, max_length: int, lookahead: int) -> int:
    """Return the exclusive end offset of the window beginning at ``start``."""
    limit = start + max_length
    search = text[start:limit + lookahead]

    sentence = _SENTENCE_BREAK_RE.search(search)
    if sentence is not None and sentence.start() < max_length:
        return start + sentence.start() + 1

    comma = search.find(", ", 0, max_length + 1)
    if 0 < comma < max_length:
        return start + comma + 1

    if limit >= len(text):
        return len(text)

    last_space = -1
    for match in _WHITESPACE_RE.finditer(text, start + 1, limit + 1):
        last_space = match.start()
    if last_space > start:
        return last_space

    return min(limit, len(text))


def iter_chunks(text: str, max_length: int = DEFAULT_MAX_LENGTH,
                lookahead: int = DEFAULT_LOOKAHEAD) -> Iterator[Chunk]:
    """Yield chunks of ``text`` in speaking order."""
    if max_length < 1:
        raise ValueError(f"max_length must be positive, got {max_length}")

    if not text or not text.strip():
        return

    if len(text) <= max_length:
        yield Chunk(content=text.strip(), index=0, start=0, end=len(text))
        return

    index = 0
    start = 0
    while start < len(text):
        end = _window_end(text, start, max_length, lookahead)
        if end <= start:
            end = start + 1
        content = text[start:end].strip()
        if content:
            yield Chunk(content=content, index=index, start=start, end=end)
            index += 1
        start = end


def chunk_text(text: str, max_length: int = DEFAULT_MAX_LENGTH,
               lookahead: int = DEFAULT_LOOKAHEAD) -> list[Chunk]:
    chunks = list(iter_chunks(text, max_length, lookahead))
    log.debug("event=text_chunked chars=%d chunks=%d", len(text or ""), len(chunks))
    return chunks
