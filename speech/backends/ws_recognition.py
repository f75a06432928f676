"""
ws_recognition.py — Recognition capability bridged over a WebSocket
===================================================================
The microphone and the speech recognizer live in the browser.  The browser
forwards recognizer events as JSON and obeys commands sent back to it, so
the session controller runs server-side unchanged.

Server → client
---------------
  {"type": "command", "action": "start", "session": 3, "settings": {...}}
  {"type": "command", "action": "stop" | "abort", "session": 3}
  {"type": "transcript", "text": "...", "is_final": false}
  {"type": "session_end", "transcript": "...", "status": "complete"}
  {"type": "session_end", "error": "...", "recoverable": true, "code": "network"}

Client → server
---------------
  {"type": "start",  "session": 3}
  {"type": "result", "session": 3, "result_index": 0,
   "results": [{"is_final": true,
                "alternatives": [{"transcript": "halo", "confidence": 0.9}]}]}
  {"type": "error",  "session": 3, "error": "no-speech"}
  {"type": "end",    "session": 3}

Events tagged with an older session id are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from speech.capabilities import (
    Hypothesis,
    RecognitionListener,
    RecognitionResult,
    RecognizerSettings,
    ResultBatch,
)

log = logging.getLogger("voice_engine.ws_recognition")

SendJson = Callable[[dict], Awaitable[None]]


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------

class AlternativePayload(BaseModel):
    transcript: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ResultPayload(BaseModel):
    is_final: bool = False
    alternatives: list[AlternativePayload] = Field(default_factory=list)


class RecognitionEvent(BaseModel):
    type: Literal["start", "result", "error", "end"]
    session: Optional[int] = None
    result_index: int = Field(default=0, ge=0)
    results: list[ResultPayload] = Field(default_factory=list)
    error: Optional[str] = None

    def to_batch(self) -> ResultBatch:
        return ResultBatch(
            results=tuple(
                RecognitionResult(
                    alternatives=tuple(
                        Hypothesis(text=alt.transcript, confidence=alt.confidence, is_final=r.is_final)
                        for alt in r.alternatives
                    ),
                    is_final=r.is_final,
                )
                for r in self.results
            ),
            result_index=min(self.result_index, len(self.results)),
        )


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------

class _RemoteRecognizer:
    def __init__(self, bridge: "BrowserRecognition", session: int,
                 settings: RecognizerSettings, listener: RecognitionListener) -> None:
        self.bridge = bridge
        self.session = session
        self.settings = settings
        self.listener = listener

    def start(self) -> None:
        self.bridge._command("start", self.session, settings=asdict(self.settings))

    def stop(self) -> None:
        self.bridge._command("stop", self.session)

    def abort(self) -> None:
        self.bridge._command("abort", self.session)


class BrowserRecognition:
    """RecognitionCapability whose recognizer runs in a connected browser."""

    def __init__(self, send: SendJson) -> None:
        self._send = send
        self._current: Optional[_RemoteRecognizer] = None
        self._next_session = 0
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    def open(self, settings: RecognizerSettings, listener: RecognitionListener) -> _RemoteRecognizer:
        self._next_session += 1
        self._current = _RemoteRecognizer(self, self._next_session, settings, listener)
        return self._current

    def notify(self, message: dict) -> None:
        """Queue a message to the client from synchronous code."""
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _command(self, action: str, session: int, **extra) -> None:
        self.notify({"type": "command", "action": action, "session": session, **extra})

    async def _deliver(self, message: dict) -> None:
        try:
            await self._send(message)
        except Exception as exc:
            log.warning("event=ws_send_failed type=%s error=%s", message.get("type"), exc)

    def dispatch(self, raw: dict) -> bool:
        """Route one client event to the live recognizer.  Returns False if dropped."""
        try:
            event = RecognitionEvent.model_validate(raw)
        except ValidationError as exc:
            log.warning("event=ws_event_invalid error=%s", exc.errors()[:1])
            return False

        recognizer = self._current
        if recognizer is None:
            log.debug("event=ws_event_without_session type=%s", event.type)
            return False
        if event.session is not None and event.session != recognizer.session:
            log.debug(
                "event=ws_event_stale type=%s session=%s current=%d",
                event.type, event.session, recognizer.session,
            )
            return False

        listener = recognizer.listener
        if event.type == "start":
            listener.on_start()
        elif event.type == "result":
            listener.on_result(event.to_batch())
        elif event.type == "error":
            listener.on_error(event.error or "unknown")
        else:
            listener.on_end()
        return True

    async def close(self) -> None:
        self._closed = True
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
