"""
capabilities.py — Platform speech capability contracts
======================================================
The pipeline never talks to a speech engine directly.  It is handed two
capabilities that follow the browser speech API event model:

  RecognitionCapability
      open(settings, listener) → Recognizer
      listener receives on_start / on_result / on_error / on_end

  SynthesisCapability
      get_voices(), on_voices_changed(cb)
      speak(request) — request carries on_start / on_end / on_error
      pause(), resume(), cancel(), speaking

Backends live in ``speech.backends``; tests use in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence


# ---------------------------------------------------------------------------
# Recognition
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Hypothesis:
    """One recognizer alternative."""
    text: str
    confidence: float
    is_final: bool = False


@dataclass(frozen=True)
class RecognitionResult:
    """One result entry: up to ``max_alternatives`` hypotheses."""
    alternatives: tuple[Hypothesis, ...]
    is_final: bool = False

    def best(self) -> Optional[Hypothesis]:
        """Highest-confidence alternative; the first one wins a tie."""
        best: Optional[Hypothesis] = None
        for alt in self.alternatives:
            if best is None or alt.confidence > best.confidence:
                best = alt
        if best is None:
            return None
        return Hypothesis(text=best.text, confidence=best.confidence, is_final=self.is_final)


@dataclass(frozen=True)
class ResultBatch:
    """A recognizer result event.  Entries before ``result_index`` are unchanged."""
    results: tuple[RecognitionResult, ...]
    result_index: int = 0

    def changed(self) -> Sequence[RecognitionResult]:
        return self.results[self.result_index:]


@dataclass(frozen=True)
class RecognizerSettings:
    language: str = "id-ID"
    continuous: bool = True
    interim_results: bool = True
    max_alternatives: int = 3


class RecognitionListener(Protocol):
    def on_start(self) -> None: ...
    def on_result(self, batch: ResultBatch) -> None: ...
    def on_error(self, code: str) -> None: ...
    def on_end(self) -> None: ...


class Recognizer(Protocol):
    def start(self) -> None: ...
    def stop(self) -> None: ...
    def abort(self) -> None: ...


class RecognitionCapability(Protocol):
    def open(self, settings: RecognizerSettings, listener: RecognitionListener) -> Recognizer: ...


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VoiceDescriptor:
    name: str
    lang: str
    local_service: bool = False
    default: bool = False
    voice_uri: str = ""

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "lang": self.lang,
            "default": self.default,
            "local_service": self.local_service,
            "voice_uri": self.voice_uri,
        }


@dataclass
class UtteranceRequest:
    """One short text handed to the synthesis engine."""
    text: str
    voice: Optional[VoiceDescriptor] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    on_start: Optional[Callable[[], None]] = field(default=None, repr=False)
    on_end: Optional[Callable[[], None]] = field(default=None, repr=False)
    on_error: Optional[Callable[[str], None]] = field(default=None, repr=False)


class SynthesisCapability(Protocol):
    @property
    def speaking(self) -> bool: ...
    def get_voices(self) -> list[VoiceDescriptor]: ...
    def on_voices_changed(self, callback: Callable[[], None]) -> None: ...
    def speak(self, request: UtteranceRequest) -> None: ...
    def pause(self) -> None: ...
    def resume(self) -> None: ...
    def cancel(self) -> None: ...
