"""
recognition.py — Recognition session controller
===============================================
Owns one continuous listening attempt at a time and reduces the stream of
recognizer events to two caller callbacks:

    on_result(text, is_final)
    on_end({"transcript": ..., "status": "complete"})
        or {"error": ..., "recoverable": ..., "code": ...}

Session states
--------------
    IDLE ──start──▶ LISTENING ──result──▶ SILENCE_ARMED ──result──▶ SILENCE_ARMED
                        │                      │
                        │                silence timer fires → recognizer.stop()
                        ▼                      ▼
                      ENDED ◀──────── platform end / error

ENDED is terminal.  A retry or restart() always builds a new
RecognitionSession; events that still arrive for a retired session are
ignored, so a superseded session can never report a transcript.

Result arbitration
------------------
For each result entry the highest-confidence alternative wins.  A final
hypothesis at or above the threshold *replaces* the transcript: recognizers
revise earlier words, so concatenating finals would duplicate them.  Final
hypotheses below the threshold are dropped silently.

Errors
------
Platform error codes map to a message and a recoverable flag.  Recoverable
errors schedule a fresh session after ``error_restart_delay_sec``; the
number of consecutive automatic restarts is capped by
``max_auto_restarts`` and the counter resets whenever speech arrives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Optional

from config import RecognitionConfig
from speech.capabilities import (
    RecognitionCapability,
    Recognizer,
    RecognizerSettings,
    ResultBatch,
)
from speech.errors import RecognitionError
from speech.scheduling import AsyncioScheduler, Scheduler, TimerHandle

log = logging.getLogger("voice_engine.recognition")

ResultCallback = Callable[[str, bool], None]
EndCallback = Callable[[dict], None]

NOT_SUPPORTED = "Speech recognition not supported"

_ERROR_TABLE: dict[str, tuple[str, bool]] = {
    "not-allowed":         ("Microphone access denied. Please check permissions.", False),
    "audio-capture":       ("No microphone was found or microphone is busy.", False),
    "network":             ("Network error occurred. Please check your connection.", True),
    "aborted":             ("Speech recognition was aborted.", True),
    "no-speech":           ("No speech was detected.", True),
    "service-not-allowed": ("Speech service is not allowed.", False),
}


def classify_error(code: str) -> RecognitionError:
    """Map a platform error code to a RecognitionError.  Unknown codes are fatal."""
    message, recoverable = _ERROR_TABLE.get(code, ("Error with speech recognition", False))
    return RecognitionError(code=code, message=message, recoverable=recoverable)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class SessionState(Enum):
    IDLE          = auto()
    LISTENING     = auto()
    SILENCE_ARMED = auto()
    ENDED         = auto()


@dataclass
class RecognitionSession:
    session_id: int
    confidence_threshold: float = 0.75
    final_transcript: str = ""
    interim_transcript: str = ""
    last_speech_at: float = 0.0
    is_new_utterance: bool = True
    state: SessionState = SessionState.IDLE
    user_aborted: bool = False
    silence_handle: Optional[TimerHandle] = field(default=None, repr=False)
    recognizer: Optional[Recognizer] = field(default=None, repr=False)

    @property
    def ended(self) -> bool:
        return self.state is SessionState.ENDED

    def clear_silence_timer(self) -> None:
        if self.silence_handle is not None:
            self.silence_handle.cancel()
            self.silence_handle = None


@dataclass(frozen=True)
class ResultUpdate:
    """What a result batch asks the controller to report."""
    text: str
    is_final: bool


def apply_result_batch(session: RecognitionSession, batch: ResultBatch) -> Optional[ResultUpdate]:
    """Fold one recognizer result event into ``session``.

    Returns the update to report through ``on_result``, or ``None`` when the
    batch carried nothing worth reporting.
    """
    if session.is_new_utterance:
        session.final_transcript = ""
        session.is_new_utterance = False

    interim = ""
    for result in batch.changed():
        best = result.best()
        if best is None:
            continue
        if best.is_final:
            if best.confidence >= session.confidence_threshold:
                session.final_transcript = best.text
            else:
                log.debug(
                    "event=final_below_threshold confidence=%.2f threshold=%.2f text=%.60s",
                    best.confidence, session.confidence_threshold, best.text,
                )
        else:
            interim = best.text

    session.interim_transcript = interim
    if interim:
        return ResultUpdate(interim, False)
    if session.final_transcript:
        return ResultUpdate(session.final_transcript, True)
    return None


def _emit(callback: Callable[..., Any], *args: Any) -> None:
    """Invoke a caller callback; its failures stay on the caller's side."""
    try:
        callback(*args)
    except Exception:
        log.exception("event=caller_callback_failed callback=%s", getattr(callback, "__name__", callback))


# ---------------------------------------------------------------------------
# Platform listener bound to one session
# ---------------------------------------------------------------------------

class _SessionListener:
    def __init__(self, controller: "RecognitionController", session: RecognitionSession) -> None:
        self._controller = controller
        self._session = session

    def _live(self) -> bool:
        return self._controller.session is self._session and not self._session.ended

    def on_start(self) -> None:
        if self._live():
            self._controller._on_platform_start(self._session)

    def on_result(self, batch: ResultBatch) -> None:
        if self._live():
            self._controller._on_platform_result(self._session, batch)

    def on_error(self, code: str) -> None:
        if self._live():
            self._controller._on_platform_error(self._session, code)

    def on_end(self) -> None:
        if self._live():
            self._controller._on_platform_end(self._session)


# ---------------------------------------------------------------------------
# Caller handle
# ---------------------------------------------------------------------------

class SessionHandle:
    """Controls returned by ``RecognitionController.start``.

    A handle stays valid across automatic retries; it goes inert once a newer
    ``start()`` supersedes it.
    """

    def __init__(self, controller: "RecognitionController", lineage: int) -> None:
        self._controller = controller
        self._lineage = lineage

    @property
    def active(self) -> bool:
        return self._controller.lineage == self._lineage and self._controller.listening

    @property
    def session(self) -> Optional[RecognitionSession]:
        if self._controller.lineage != self._lineage:
            return None
        return self._controller.session

    def _current(self) -> bool:
        return self._controller.lineage == self._lineage

    def stop(self) -> None:
        """Graceful stop; the transcript arrives through ``on_end``."""
        if self._current():
            self._controller.stop()

    def abort(self) -> None:
        """Stop immediately without an automatic retry."""
        if self._current():
            self._controller.abort()

    def restart(self) -> None:
        if self._current():
            self._controller.restart()

    def adjust_threshold(self, value: float) -> bool:
        if not self._current():
            return False
        return self._controller.adjust_threshold(value)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class RecognitionController:
    """Runs recognition sessions against an injected capability."""

    def __init__(
        self,
        capability: Optional[RecognitionCapability],
        *,
        config: Optional[RecognitionConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._capability = capability
        self._config = config or RecognitionConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self._threshold = self._config.confidence_threshold

        self._session: Optional[RecognitionSession] = None
        self._on_result: Optional[ResultCallback] = None
        self._on_end: Optional[EndCallback] = None
        self._lineage = 0
        self._next_session_id = 0
        self._auto_restarts = 0
        self._restart_handle: Optional[TimerHandle] = None

    # -- Introspection --------------------------------------------------------

    @property
    def session(self) -> Optional[RecognitionSession]:
        return self._session

    @property
    def lineage(self) -> int:
        return self._lineage

    @property
    def listening(self) -> bool:
        return self._session is not None and not self._session.ended

    @property
    def restart_pending(self) -> bool:
        return self._restart_handle is not None

    @property
    def confidence_threshold(self) -> float:
        return self._threshold

    def settings(self) -> RecognizerSettings:
        return RecognizerSettings(
            language=self._config.language,
            continuous=self._config.continuous,
            interim_results=self._config.interim_results,
            max_alternatives=self._config.max_alternatives,
        )

    # -- Public API -----------------------------------------------------------

    def start(self, on_result: ResultCallback, on_end: EndCallback) -> Optional[SessionHandle]:
        """Begin listening.  Returns ``None`` when recognition cannot start."""
        if self._capability is None:
            log.error("event=recognition_not_supported")
            _emit(on_end, {"error": NOT_SUPPORTED, "recoverable": False})
            return None

        self._retire_lineage()
        self._lineage += 1
        self._on_result = on_result
        self._on_end = on_end
        self._auto_restarts = 0
        self._threshold = self._config.confidence_threshold

        try:
            self._begin_session()
        except Exception as exc:
            log.error("event=recognition_start_failed error=%s", exc, exc_info=True)
            self._session = None
            _emit(on_end, {"error": str(exc), "recoverable": False})
            return None
        return SessionHandle(self, self._lineage)

    def stop(self) -> None:
        self._cancel_restart()
        session = self._session
        if session is None or session.ended:
            return
        session.clear_silence_timer()
        log.info("event=recognition_stop_requested session=%d", session.session_id)
        self._call_recognizer(session, "stop")

    def abort(self) -> None:
        self._cancel_restart()
        session = self._session
        if session is None or session.ended:
            return
        session.user_aborted = True
        session.clear_silence_timer()
        log.info("event=recognition_abort_requested session=%d", session.session_id)
        self._call_recognizer(session, "abort")

    def restart(self) -> None:
        """Abort the current attempt and listen again with a clean transcript."""
        self._cancel_restart()
        session = self._session
        if session is not None and not session.ended:
            self._retire_session(session)
        delay = self._config.manual_restart_delay_sec
        log.info("event=recognition_restart delay_sec=%.2f", delay)
        self._restart_handle = self._scheduler.call_later(delay, self._restart_now)

    def adjust_threshold(self, value: float) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            log.warning("event=threshold_rejected value=%r", value)
            return False
        self._threshold = float(value)
        if self._session is not None:
            self._session.confidence_threshold = self._threshold
        log.info("event=threshold_adjusted value=%.2f", self._threshold)
        return True

    # -- Session lifecycle ----------------------------------------------------

    def _begin_session(self) -> RecognitionSession:
        self._next_session_id += 1
        session = RecognitionSession(
            session_id=self._next_session_id,
            confidence_threshold=self._threshold,
        )
        self._session = session
        session.recognizer = self._capability.open(self.settings(), _SessionListener(self, session))
        session.state = SessionState.LISTENING
        session.recognizer.start()
        log.info(
            "event=recognition_session_start session=%d lang=%s threshold=%.2f",
            session.session_id, self._config.language, session.confidence_threshold,
        )
        return session

    def _restart_now(self) -> None:
        self._restart_handle = None
        try:
            self._begin_session()
        except Exception as exc:
            log.error("event=recognition_restart_failed error=%s", exc)
            if self._session is not None:
                self._session.state = SessionState.ENDED

    def _retire_session(self, session: RecognitionSession) -> None:
        """End a session without reporting; its late events are ignored."""
        session.clear_silence_timer()
        session.state = SessionState.ENDED
        self._call_recognizer(session, "abort")
        log.debug("event=recognition_session_retired session=%d", session.session_id)

    def _retire_lineage(self) -> None:
        self._cancel_restart()
        if self._session is not None and not self._session.ended:
            self._retire_session(self._session)
        self._session = None

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _call_recognizer(self, session: RecognitionSession, method: str) -> None:
        if session.recognizer is None:
            return
        try:
            getattr(session.recognizer, method)()
        except Exception as exc:
            log.error("event=recognizer_%s_failed session=%d error=%s", method, session.session_id, exc)

    # -- Platform events --------------------------------------------------------

    def _on_platform_start(self, session: RecognitionSession) -> None:
        session.is_new_utterance = True
        session.final_transcript = ""
        log.info("event=recognition_started session=%d", session.session_id)

    def _on_platform_result(self, session: RecognitionSession, batch: ResultBatch) -> None:
        update = apply_result_batch(session, batch)
        self._auto_restarts = 0

        session.last_speech_at = self._scheduler.now()
        session.clear_silence_timer()
        timeout = self._config.silence_timeout_sec
        session.silence_handle = self._scheduler.call_later(
            timeout, lambda: self._on_silence(session),
        )
        session.state = SessionState.SILENCE_ARMED

        if update is None:
            return
        log.debug(
            "event=transcript_%s session=%d text=%.80s",
            "final" if update.is_final else "interim", session.session_id, update.text,
        )
        _emit(self._on_result, update.text, update.is_final)

    def _on_silence(self, session: RecognitionSession) -> None:
        session.silence_handle = None
        if session is not self._session or session.ended:
            return
        idle = self._scheduler.now() - session.last_speech_at
        log.info(
            "event=silence_detected session=%d idle_sec=%.1f action=stop",
            session.session_id, idle,
        )
        session.state = SessionState.LISTENING
        self._call_recognizer(session, "stop")

    def _on_platform_error(self, session: RecognitionSession, code: str) -> None:
        if code == "aborted" and session.user_aborted:
            log.debug("event=recognition_aborted_by_user session=%d", session.session_id)
            return

        error = classify_error(code)
        log.error(
            "event=recognition_error session=%d code=%s recoverable=%s",
            session.session_id, code, error.recoverable,
        )
        session.clear_silence_timer()
        session.state = SessionState.ENDED
        if error.recoverable:
            self._schedule_auto_restart()
        _emit(self._on_end, error.as_result())

    def _on_platform_end(self, session: RecognitionSession) -> None:
        session.clear_silence_timer()
        session.state = SessionState.ENDED
        transcript = session.final_transcript.strip()
        log.info(
            "event=recognition_complete session=%d transcript_len=%d",
            session.session_id, len(transcript),
        )
        _emit(self._on_end, {"transcript": transcript, "status": "complete"})

    def _schedule_auto_restart(self) -> None:
        limit = self._config.max_auto_restarts
        if limit is not None and self._auto_restarts >= limit:
            log.warning("event=auto_restart_exhausted attempts=%d", self._auto_restarts)
            return
        self._auto_restarts += 1
        delay = self._config.error_restart_delay_sec
        log.info(
            "event=auto_restart_scheduled attempt=%d delay_sec=%.1f",
            self._auto_restarts, delay,
        )
        self._cancel_restart()
        self._restart_handle = self._scheduler.call_later(delay, self._restart_now)
