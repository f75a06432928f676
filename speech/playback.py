"""
playback.py — Sequential chunked speech playback
================================================
speak(text) → PlaybackHandle { pause(), resume(), cancel(), await wait() }

Session lifecycle
-----------------
  1. Any previous PlaybackSession is cancelled (one speaker at a time).
  2. Text is normalized (unless disabled) and chunked.
  3. For each chunk, in order:
       • resolve the voice (catalog caches the winner per preference)
       • submit one UtteranceRequest to the synthesis capability
       • wait for its end / error event before moving on
  4. The handle's completion resolves COMPLETE, or CANCELLED on cancel().

Failure policy
--------------
A chunk that errors (or that the engine refuses outright) is logged and
skipped; the rest of the message is still spoken.  Nothing raises out of
speak() or the handle: an absent synthesis capability resolves the handle
with UNSUPPORTED.

Stalled engines
---------------
Some engines silently pause mid-utterance.  While an utterance is active a
RepeatingTimer checks ``synthesis.speaking`` every poll interval and calls
``resume()`` if the engine went quiet while the session still thinks it is
talking.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config import SpeakOptions, SynthesisConfig
from speech.capabilities import SynthesisCapability, UtteranceRequest, VoiceDescriptor
from speech.chunker import Chunk, chunk_text
from speech.normalizer import prepare_utterance
from speech.scheduling import AsyncioScheduler, RepeatingTimer, Scheduler
from speech.voices import VoiceCatalog

log = logging.getLogger("voice_engine.playback")

PREVIEW_TEXT = "Halo, ini adalah tes suara. Bagaimana kualitas suara ini?"


class PlaybackStatus(str, Enum):
    COMPLETE    = "complete"
    CANCELLED   = "cancelled"
    UNSUPPORTED = "unsupported"
    FAILED      = "failed"


@dataclass(frozen=True)
class PlaybackResult:
    status: PlaybackStatus
    spoken: int = 0
    failed: int = 0
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status is PlaybackStatus.CANCELLED


@dataclass
class PlaybackSession:
    """State of one speak() call."""
    session_id: int
    chunks: list[Chunk]
    options: SpeakOptions
    voice: Optional[VoiceDescriptor] = None
    current_index: int = 0
    spoken: int = 0
    failed: int = 0
    utterance_active: bool = False
    active_request: Optional[UtteranceRequest] = field(default=None, repr=False)
    cancelled: bool = False
    finished: bool = False
    completion: Optional[asyncio.Future] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class PlaybackHandle:
    """Caller-facing controls for one playback session."""

    def __init__(self, queue: "PlaybackQueue", session: Optional[PlaybackSession],
                 completion: asyncio.Future) -> None:
        self._queue = queue
        self._session = session
        self._completion = completion

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def done(self) -> bool:
        return self._completion.done()

    def pause(self) -> None:
        if self._session is not None and self._queue.is_active(self._session):
            self._queue.synthesis.pause()

    def resume(self) -> None:
        if self._session is not None and self._queue.is_active(self._session):
            self._queue.synthesis.resume()

    def cancel(self) -> None:
        if self._session is not None:
            self._queue.cancel_session(self._session)

    async def wait(self) -> PlaybackResult:
        return await asyncio.shield(self._completion)

    def __await__(self):
        return self.wait().__await__()


class PlaybackQueue:
    """Speaks chunked text through a synthesis capability, one utterance at a time."""

    def __init__(
        self,
        synthesis: Optional[SynthesisCapability],
        catalog: Optional[VoiceCatalog] = None,
        *,
        config: Optional[SynthesisConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._synthesis = synthesis
        self._config = config or SynthesisConfig()
        self._catalog = catalog if catalog is not None or synthesis is None else VoiceCatalog(synthesis)
        self._scheduler = scheduler or AsyncioScheduler()
        self._active: Optional[PlaybackSession] = None
        self._next_id = 0

    @property
    def synthesis(self) -> Optional[SynthesisCapability]:
        return self._synthesis

    @property
    def catalog(self) -> Optional[VoiceCatalog]:
        return self._catalog

    @property
    def active_session(self) -> Optional[PlaybackSession]:
        return self._active

    def is_active(self, session: PlaybackSession) -> bool:
        return session is self._active and not session.cancelled and not session.finished

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def speak(self, text: str, options: Optional[SpeakOptions] = None) -> PlaybackHandle:
        """Start speaking ``text``.  Must be called from the event loop thread."""
        loop = asyncio.get_running_loop()
        completion: asyncio.Future = loop.create_future()

        if self._synthesis is None:
            log.error("event=synthesis_not_supported")
            completion.set_result(PlaybackResult(
                status=PlaybackStatus.UNSUPPORTED,
                error="Text-to-speech is not supported on this platform",
            ))
            return PlaybackHandle(self, None, completion)

        self.cancel_active()

        opts = options or self._config.speak_options()
        utterance = prepare_utterance(text, opts.clean_special_chars, self._config.code_placeholder)
        chunks = chunk_text(utterance, self._config.max_chunk_length, self._config.chunk_lookahead)

        self._next_id += 1
        session = PlaybackSession(
            session_id=self._next_id, chunks=chunks, options=opts, completion=completion,
        )
        self._active = session
        log.info(
            "event=playback_start session=%d chars=%d chunks=%d voice_type=%s",
            session.session_id, len(utterance), len(chunks), opts.voice_type,
        )

        session.task = loop.create_task(
            self._run(session),
            name=f"playback_session_{session.session_id}",
        )
        return PlaybackHandle(self, session, completion)

    # -----------------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------------

    def cancel_active(self) -> None:
        if self._active is not None and not self._active.finished:
            self.cancel_session(self._active)

    def cancel_session(self, session: PlaybackSession) -> None:
        if session.cancelled or session.finished:
            return
        session.cancelled = True
        session.utterance_active = False
        remaining = len(session.chunks) - session.current_index
        log.info(
            "event=playback_cancelled session=%d spoken=%d discarded=%d",
            session.session_id, session.spoken, remaining,
        )
        if session is self._active:
            self._active = None
            if self._synthesis is not None:
                self._synthesis.cancel()
        if session.task is not None and not session.task.done():
            session.task.cancel()
        if session.completion is not None and not session.completion.done():
            session.completion.set_result(PlaybackResult(
                status=PlaybackStatus.CANCELLED,
                spoken=session.spoken,
                failed=session.failed,
            ))

    # -----------------------------------------------------------------------
    # Chunk loop
    # -----------------------------------------------------------------------

    async def _run(self, session: PlaybackSession) -> None:
        try:
            if session.chunks:
                session.voice = await self._resolve_voice(session.options)
            while session.current_index < len(session.chunks) and not session.cancelled:
                chunk = session.chunks[session.current_index]
                gap = await self._speak_chunk(session, chunk)
                if session.cancelled:
                    return
                session.current_index += 1
                if session.current_index < len(session.chunks) and gap > 0:
                    await asyncio.sleep(gap)
            if session.cancelled:
                return
            session.finished = True
            log.info(
                "event=playback_complete session=%d spoken=%d failed=%d",
                session.session_id, session.spoken, session.failed,
            )
            if not session.completion.done():
                session.completion.set_result(PlaybackResult(
                    status=PlaybackStatus.COMPLETE,
                    spoken=session.spoken,
                    failed=session.failed,
                ))
        except asyncio.CancelledError:
            log.debug("event=playback_task_cancelled session=%d", session.session_id)
            raise
        except Exception as exc:
            session.finished = True
            log.error("event=playback_failed session=%d error=%s", session.session_id, exc, exc_info=True)
            if not session.completion.done():
                session.completion.set_result(PlaybackResult(
                    status=PlaybackStatus.FAILED,
                    spoken=session.spoken,
                    failed=session.failed,
                    error=str(exc),
                ))
        finally:
            session.utterance_active = False
            if self._active is session and (session.finished or session.cancelled):
                self._active = None

    async def _resolve_voice(self, options: SpeakOptions) -> Optional[VoiceDescriptor]:
        if self._catalog is None:
            return None
        return await self._catalog.best_voice(options.voice_type)

    async def _speak_chunk(self, session: PlaybackSession, chunk: Chunk) -> float:
        """Speak one chunk; return the pause to insert before the next one."""
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()

        def _settle(error: Optional[str]) -> None:
            if not done.done():
                done.set_result(error)

        # Engines may call back from their own thread.
        request = UtteranceRequest(
            text=chunk.content,
            voice=session.voice,
            rate=session.options.rate,
            pitch=session.options.pitch,
            volume=session.options.volume,
            on_end=lambda: loop.call_soon_threadsafe(_settle, None),
            on_error=lambda err: loop.call_soon_threadsafe(_settle, err or "synthesis error"),
        )
        session.active_request = request
        session.utterance_active = True

        poll = RepeatingTimer(
            self._scheduler,
            self._config.resume_poll_interval_sec,
            lambda: self._nudge_stalled_engine(session),
        ).start()

        log.debug(
            "event=chunk_submit session=%d index=%d/%d chars=%d voice=%s",
            session.session_id, chunk.index + 1, len(session.chunks), len(chunk.content),
            session.voice.name if session.voice else "platform-default",
        )
        try:
            try:
                self._synthesis.speak(request)
            except Exception as exc:
                log.error(
                    "event=chunk_submit_failed session=%d index=%d error=%s",
                    session.session_id, chunk.index, exc,
                )
                session.failed += 1
                return self._config.submit_error_gap_sec

            error = await done
        finally:
            poll.cancel()
            session.utterance_active = False
            session.active_request = None

        if error is not None:
            session.failed += 1
            log.error(
                "event=chunk_synthesis_error session=%d index=%d error=%s action=skip",
                session.session_id, chunk.index, error,
            )
            return self._config.chunk_error_gap_sec

        session.spoken += 1
        return self._config.chunk_gap_sec

    def _nudge_stalled_engine(self, session: PlaybackSession) -> None:
        if not self.is_active(session) or not session.utterance_active:
            return
        if not self._synthesis.speaking:
            log.debug("event=engine_resume_nudge session=%d", session.session_id)
            self._synthesis.resume()


async def preview_voice(queue: PlaybackQueue, name: str,
                        text: str = PREVIEW_TEXT) -> Optional[dict]:
    """Speak a sample sentence with the voice whose name contains ``name``.

    Returns the voice description, or ``None`` when no voice matches.
    """
    if queue.synthesis is None or queue.catalog is None:
        log.error("event=synthesis_not_supported")
        return None
    voice = await queue.catalog.find(name)
    if voice is None:
        log.error("event=preview_voice_not_found name=%r", name)
        return None

    queue.cancel_active()
    queue.synthesis.cancel()
    queue.synthesis.speak(UtteranceRequest(text=text, voice=voice, rate=0.95, pitch=1.05))
    log.info("event=preview_voice name=%s lang=%s", voice.name, voice.lang)
    return voice.as_dict()
