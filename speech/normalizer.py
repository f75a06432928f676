"""
normalizer.py — make assistant text safe to vocalize
====================================================
Assistant replies arrive as markdown.  Read verbatim, a synthesis engine
pronounces asterisks, hashes and whole code listings, so the text is
cleaned before chunking:

  • emphasis markers (** __ ~~ * _) removed
  • fenced code blocks replaced by a short spoken placeholder
  • inline code unwrapped
  • [source] / [citation] / (source: ...) annotations dropped
  • leftover quote / hash / asterisk / colon clusters and backslashes blanked
  • word.word tokens (example.com) split so they are read as two words
  • whitespace collapsed
"""

from __future__ import annotations

import re

DEFAULT_CODE_PLACEHOLDER = "kode program"

_EMPHASIS_RE       = re.compile(r"\*\*|__|~~|\*|_")
_FENCED_CODE_RE    = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE    = re.compile(r"`([^`]+)`")
_CITATION_TAG_RE   = re.compile(r"\[source\]|\[citation\]", re.IGNORECASE)
_SOURCE_NOTE_RE    = re.compile(r"\(source:.*?\)", re.IGNORECASE)
_QUOTE_COLON_RE    = re.compile(r'\*":')
_NOISE_RUN_RE      = re.compile(r'[*":#]+')
_BACKSLASH_RE      = re.compile(r"\\")
_DOTTED_WORD_RE    = re.compile(r"(?<=\w)\.(?=\w)")
_WHITESPACE_RE     = re.compile(r"\s+")

# Removing one marker can expose another ("[sour[source]ce]"); passes repeat
# until the text is stable so that normalizing twice changes nothing.
_MAX_PASSES = 8


def _clean_once(text: str, code_placeholder: str) -> str:
    text = _EMPHASIS_RE.sub("", text)
    text = _FENCED_CODE_RE.sub(code_placeholder, text)
    text = _INLINE_CODE_RE.sub(r"\1", text)

    text = _CITATION_TAG_RE.sub("", text)
    text = _SOURCE_NOTE_RE.sub("", text)

    text = _QUOTE_COLON_RE.sub("", text)
    text = _NOISE_RUN_RE.sub(" ", text)
    text = _BACKSLASH_RE.sub(" ", text)

    text = _DOTTED_WORD_RE.sub(" ", text)

    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_text(text: str, code_placeholder: str = DEFAULT_CODE_PLACEHOLDER) -> str:
    """Return ``text`` stripped of markup so it can be spoken.

    Pure and idempotent: ``normalize_text(normalize_text(x)) == normalize_text(x)``.
    """
    if not text:
        return ""
    for _ in range(_MAX_PASSES):
        cleaned = _clean_once(text, code_placeholder)
        if cleaned == text:
            break
        text = cleaned
    return text


def prepare_utterance(text: str, clean_special_chars: bool = True,
                      code_placeholder: str = DEFAULT_CODE_PLACEHOLDER) -> str:
    """Apply the normalizer unless the caller opted out."""
    if not clean_special_chars:
        return text or ""
    return normalize_text(text, code_placeholder)
