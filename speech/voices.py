"""
voices.py — Voice catalog & quality scorer
==========================================
Picks the most natural-sounding synthesis voice the platform offers.

Voice list
----------
The platform voice list is read once per process and cached.  Some engines
report an empty list until they finish loading; in that case the catalog
waits for a single "voices changed" notification, bounded by
``wait_timeout`` seconds, and then accepts whatever list exists.  An empty
result is not cached, so a later request asks the engine again.

Scoring
-------
Each rule below is independent; a voice scores the highest weight among the
rules it satisfies (not the sum).  Every rule except the last also requires
the gender heuristic to accept the voice name.

    target language ............ 100
    Neural / Wavenet ........... 90
    Premium .................... 85
    Natural .................... 82
    Microsoft .................. 80
    Siri ....................... 78
    Samsung .................... 75
    Google ..................... 73
    related language ........... 70
    fallback language .......... 60
    anything ................... 10

The highest score wins; ties keep catalog order.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from speech.capabilities import SynthesisCapability, VoiceDescriptor

log = logging.getLogger("voice_engine.voices")

AUTO   = "auto"
MALE   = "male"
FEMALE = "female"

_MALE_NAME_RE   = re.compile(r"\b(?:male|guy|boy|man)\b", re.IGNORECASE)
_FEMALE_NAME_RE = re.compile(r"\b(?:female|girl|woman)\b", re.IGNORECASE)

_LANG_SPLIT_RE = re.compile(r"[-_]")


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------

def gender_matcher(preference: str) -> Callable[[str], bool]:
    """Return a predicate on voice names for the given preference."""
    if preference == MALE:
        return lambda name: bool(_MALE_NAME_RE.search(name)) or not _FEMALE_NAME_RE.search(name)
    if preference == FEMALE:
        return lambda name: bool(_FEMALE_NAME_RE.search(name)) or not _MALE_NAME_RE.search(name)
    return lambda name: True


def language_matches(lang_tag: str, language: str) -> bool:
    """Compare the primary subtag: ``id-ID`` and ``id_ID`` both match ``id``."""
    if not lang_tag or not language:
        return False
    primary = _LANG_SPLIT_RE.split(lang_tag.strip(), maxsplit=1)[0].lower()
    return primary == language.lower()


@dataclass(frozen=True)
class ScoringRule:
    label: str
    weight: int
    test: Callable[[VoiceDescriptor], bool]
    needs_gender: bool = True


def _name_has(*markers: str) -> Callable[[VoiceDescriptor], bool]:
    return lambda voice: any(marker in voice.name for marker in markers)


def build_rules(target_language: str = "id",
                related_language: str = "ms",
                fallback_language: str = "en") -> tuple[ScoringRule, ...]:
    return (
        ScoringRule("target_language", 100, lambda v: language_matches(v.lang, target_language)),
        ScoringRule("neural", 90, _name_has("Neural", "Wavenet")),
        ScoringRule("premium", 85, _name_has("Premium")),
        ScoringRule("natural", 82, _name_has("Natural")),
        ScoringRule("microsoft", 80, _name_has("Microsoft")),
        ScoringRule("siri", 78, _name_has("Siri")),
        ScoringRule("samsung", 75, _name_has("Samsung")),
        ScoringRule("google", 73, _name_has("Google")),
        ScoringRule("related_language", 70, lambda v: language_matches(v.lang, related_language)),
        ScoringRule("fallback_language", 60, lambda v: language_matches(v.lang, fallback_language)),
        ScoringRule("any", 10, lambda v: True, needs_gender=False),
    )


DEFAULT_LANGUAGES = ("id", "ms", "en")
DEFAULT_RULES = build_rules(*DEFAULT_LANGUAGES)


def score_voice(voice: VoiceDescriptor, preference: str = AUTO,
                rules: Sequence[ScoringRule] = DEFAULT_RULES) -> int:
    gender_ok = gender_matcher(preference)(voice.name)
    score = 0
    for rule in rules:
        if rule.needs_gender and not gender_ok:
            continue
        if rule.test(voice):
            score = max(score, rule.weight)
    return score


def rank_voices(voices: Sequence[VoiceDescriptor], preference: str = AUTO,
                rules: Sequence[ScoringRule] = DEFAULT_RULES) -> list[tuple[VoiceDescriptor, int]]:
    """Voices with their scores, best first.  ``sorted`` is stable, so ties keep catalog order."""
    scored = [(voice, score_voice(voice, preference, rules)) for voice in voices]
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


def find_by_name(voices: Sequence[VoiceDescriptor], fragment: str) -> Optional[VoiceDescriptor]:
    needle = fragment.lower()
    for voice in voices:
        if needle in voice.name.lower():
            return voice
    return None


def select_voice(voices: Sequence[VoiceDescriptor], preference: str = AUTO,
                 rules: Sequence[ScoringRule] = DEFAULT_RULES) -> Optional[VoiceDescriptor]:
    """Best voice for ``preference`` or ``None`` when the list is empty."""
    if preference not in (AUTO, MALE, FEMALE):
        named = find_by_name(voices, preference)
        if named is not None:
            return named
        log.info("event=voice_name_not_found preference=%r fallback=scored", preference)

    ranked = rank_voices(voices, preference, rules)
    if not ranked:
        return None
    log.debug(
        "event=voice_ranking top=%s",
        ", ".join(f"{v.name} ({v.lang}): {s}" for v, s in ranked[:3]),
    )
    return ranked[0][0]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class VoiceCatalog:
    """Cached voice list plus the per-preference winner."""

    def __init__(
        self,
        synthesis: SynthesisCapability,
        *,
        wait_timeout: float = 1.0,
        languages: tuple[str, str, str] = DEFAULT_LANGUAGES,
    ) -> None:
        self._synthesis = synthesis
        self.languages = tuple(languages)
        self._wait_timeout = wait_timeout
        self._rules = build_rules(*self.languages)
        self._voices: Optional[list[VoiceDescriptor]] = None
        self._best: dict[str, Optional[VoiceDescriptor]] = {}
        self._lock = asyncio.Lock()

    @property
    def synthesis(self) -> SynthesisCapability:
        return self._synthesis

    @property
    def cached(self) -> bool:
        return bool(self._voices)

    async def voices(self) -> list[VoiceDescriptor]:
        if self._voices:
            return self._voices
        async with self._lock:
            if self._voices:
                return self._voices
            voices = list(self._synthesis.get_voices())
            if not voices:
                voices = await self._wait_for_voices()
            if voices:
                self._voices = voices
                log.info(
                    "event=voices_cached count=%d voices=%s",
                    len(voices), [f"{v.name} ({v.lang})" for v in voices],
                )
            else:
                log.warning("event=no_voices_available timeout_sec=%.1f", self._wait_timeout)
            return voices

    async def _wait_for_voices(self) -> list[VoiceDescriptor]:
        loop = asyncio.get_running_loop()
        changed: asyncio.Future = loop.create_future()

        def _on_changed() -> None:
            # May be invoked from an engine thread, possibly after the wait
            # timed out and the loop shut down.
            if changed.done() or loop.is_closed():
                return
            try:
                loop.call_soon_threadsafe(_settle)
            except RuntimeError:
                log.debug("event=voices_changed_after_loop_closed")

        def _settle() -> None:
            if not changed.done():
                changed.set_result(None)

        self._synthesis.on_voices_changed(_on_changed)
        try:
            await asyncio.wait_for(changed, timeout=self._wait_timeout)
            log.debug("event=voices_changed")
        except asyncio.TimeoutError:
            log.debug("event=voices_wait_timeout timeout_sec=%.1f", self._wait_timeout)
        return list(self._synthesis.get_voices())

    async def best_voice(self, preference: str = AUTO) -> Optional[VoiceDescriptor]:
        if preference in self._best:
            return self._best[preference]
        voices = await self.voices()
        best = select_voice(voices, preference, self._rules)
        if voices:
            self._best[preference] = best
        log.info(
            "event=voice_selected preference=%s voice=%s",
            preference, best.name if best else None,
        )
        return best

    async def find(self, fragment: str) -> Optional[VoiceDescriptor]:
        return find_by_name(await self.voices(), fragment)

    async def describe(self) -> list[dict]:
        return [voice.as_dict() for voice in await self.voices()]


# ---------------------------------------------------------------------------
# Process-wide catalog
# ---------------------------------------------------------------------------

_catalog: Optional[VoiceCatalog] = None
_catalog_lock = threading.Lock()


def shared_catalog(synthesis: SynthesisCapability, *, wait_timeout: float = 1.0,
                   languages: tuple[str, str, str] = DEFAULT_LANGUAGES) -> VoiceCatalog:
    """Return the process-wide catalog, creating it on first use.

    A different synthesis capability replaces the catalog, since cached
    voices belong to the engine that reported them.  New language targets
    keep the cached voice list but drop the cached winners.
    """
    global _catalog
    with _catalog_lock:
        current = _catalog
        if current is not None and current.synthesis is synthesis and current.languages == tuple(languages):
            return current
        catalog = VoiceCatalog(synthesis, wait_timeout=wait_timeout, languages=languages)
        if current is not None and current.synthesis is synthesis:
            catalog._voices = current._voices
        _catalog = catalog
        return catalog


def reset_shared_catalog() -> None:
    global _catalog
    with _catalog_lock:
        _catalog = None
