"""Pytest configuration and shared fakes for the voice engine tests."""

import os
import sys
from typing import Callable, Optional

import pytest

# Add parent directory to path for imports
_parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _parent_dir not in sys.path:
    sys.path.insert(0, _parent_dir)

from speech.capabilities import (  # noqa: E402
    Hypothesis,
    RecognitionResult,
    RecognizerSettings,
    ResultBatch,
    UtteranceRequest,
    VoiceDescriptor,
)
from speech.voices import reset_shared_catalog  # noqa: E402


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class FakeTimer:
    def __init__(self, scheduler: "FakeScheduler", due: float, callback: Callable[[], None]) -> None:
        self.scheduler = scheduler
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock: timers fire only when the test calls advance()."""

    def __init__(self) -> None:
        self.time = 0.0
        self.timers: list[FakeTimer] = []

    def now(self) -> float:
        return self.time

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self, self.time + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and t.due >= self.time]

    def advance(self, seconds: float) -> None:
        target = self.time + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.time = max(self.time, timer.due)
            timer.callback()
        self.time = target


# ---------------------------------------------------------------------------
# Recognition capability
# ---------------------------------------------------------------------------

class FakeRecognizer:
    def __init__(self, settings: RecognizerSettings, listener) -> None:
        self.settings = settings
        self.listener = listener
        self.calls: list[str] = []

    def start(self) -> None:
        self.calls.append("start")

    def stop(self) -> None:
        self.calls.append("stop")

    def abort(self) -> None:
        self.calls.append("abort")

    # -- Platform events driven by the test ---------------------------------

    def emit_start(self) -> None:
        self.listener.on_start()

    def emit_result(self, *results: RecognitionResult, result_index: int = 0) -> None:
        self.listener.on_result(ResultBatch(results=tuple(results), result_index=result_index))

    def emit_error(self, code: str) -> None:
        self.listener.on_error(code)

    def emit_end(self) -> None:
        self.listener.on_end()


class FakeRecognition:
    """RecognitionCapability that hands out FakeRecognizers."""

    def __init__(self, fail_on_start: Optional[Exception] = None) -> None:
        self.recognizers: list[FakeRecognizer] = []
        self.fail_on_start = fail_on_start

    @property
    def latest(self) -> FakeRecognizer:
        return self.recognizers[-1]

    def open(self, settings: RecognizerSettings, listener) -> FakeRecognizer:
        recognizer = FakeRecognizer(settings, listener)
        if self.fail_on_start is not None:
            def _boom() -> None:
                raise self.fail_on_start
            recognizer.start = _boom
        self.recognizers.append(recognizer)
        return recognizer


def final(text: str, confidence: float = 0.9) -> RecognitionResult:
    return RecognitionResult(alternatives=(Hypothesis(text, confidence, True),), is_final=True)


def interim(text: str, confidence: float = 0.5) -> RecognitionResult:
    return RecognitionResult(alternatives=(Hypothesis(text, confidence, False),), is_final=False)


# ---------------------------------------------------------------------------
# Synthesis capability
# ---------------------------------------------------------------------------

class FakeSynthesis:
    """SynthesisCapability that records utterances.

    With ``auto_complete`` every utterance ends as soon as it is submitted;
    otherwise the test finishes it with ``finish()`` / ``fail()``.
    """

    def __init__(self, voices: Optional[list[VoiceDescriptor]] = None, *,
                 auto_complete: bool = True) -> None:
        self.voices = list(voices or [])
        self.auto_complete = auto_complete
        self.requests: list[UtteranceRequest] = []
        self.voice_listeners: list[Callable[[], None]] = []
        self.speaking = False
        self.paused = 0
        self.resumed = 0
        self.cancelled = 0
        self.errors: dict[int, str] = {}      # request index -> error event
        self.refuse: set[int] = set()         # request indexes whose speak() raises

    def get_voices(self) -> list[VoiceDescriptor]:
        return list(self.voices)

    def on_voices_changed(self, callback: Callable[[], None]) -> None:
        self.voice_listeners.append(callback)

    def publish_voices(self, voices: list[VoiceDescriptor]) -> None:
        self.voices = list(voices)
        for callback in self.voice_listeners:
            callback()

    def speak(self, request: UtteranceRequest) -> None:
        index = len(self.requests)
        self.requests.append(request)
        if index in self.refuse:
            raise RuntimeError("engine refused utterance")
        self.speaking = True
        if index in self.errors:
            self.speaking = False
            if request.on_error is not None:
                request.on_error(self.errors[index])
        elif self.auto_complete:
            self.finish(request)

    def finish(self, request: Optional[UtteranceRequest] = None) -> None:
        request = request or self.requests[-1]
        self.speaking = False
        if request.on_end is not None:
            request.on_end()

    def fail(self, error: str, request: Optional[UtteranceRequest] = None) -> None:
        request = request or self.requests[-1]
        self.speaking = False
        if request.on_error is not None:
            request.on_error(error)

    def pause(self) -> None:
        self.paused += 1

    def resume(self) -> None:
        self.resumed += 1

    def cancel(self) -> None:
        self.cancelled += 1
        self.speaking = False

    @property
    def spoken_texts(self) -> list[str]:
        return [r.text for r in self.requests]


INDONESIAN_FEMALE = VoiceDescriptor(name="Google Bahasa Indonesia Female", lang="id-ID")
MALAY = VoiceDescriptor(name="Malay Standard", lang="ms-MY")
ENGLISH_MALE = VoiceDescriptor(name="Microsoft David Male", lang="en-US")
ENGLISH_NEURAL = VoiceDescriptor(name="Aria Online (Natural) Neural", lang="en-US")
FRENCH = VoiceDescriptor(name="Thomas", lang="fr-FR")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _fresh_catalog():
    reset_shared_catalog()
    yield
    reset_shared_catalog()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def recognition() -> FakeRecognition:
    return FakeRecognition()


@pytest.fixture
def synthesis() -> FakeSynthesis:
    return FakeSynthesis([FRENCH, ENGLISH_MALE, INDONESIAN_FEMALE])
