"""
controller.py — Voice interaction front door
============================================
Couples one RecognitionController and one PlaybackQueue for a chat client:

  • listening and speaking are mutually exclusive: start_listening() is a
    no-op while speaking and speak() is a no-op while listening
  • keeps the latest interim/final transcript and the last error so a UI
    layer can render state without wiring its own callbacks
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from config import SpeakOptions, VoiceEngineConfig
from speech.capabilities import RecognitionCapability, SynthesisCapability
from speech.playback import PlaybackHandle, PlaybackQueue, PlaybackResult, PlaybackStatus
from speech.recognition import EndCallback, RecognitionController, ResultCallback, SessionHandle
from speech.scheduling import AsyncioScheduler, Scheduler
from speech.voices import shared_catalog

log = logging.getLogger("voice_engine.controller")


class VoiceController:
    def __init__(
        self,
        recognition: Optional[RecognitionCapability],
        synthesis: Optional[SynthesisCapability],
        *,
        config: Optional[VoiceEngineConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config or VoiceEngineConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self.recognizer = RecognitionController(
            recognition, config=self.config.recognition, scheduler=self._scheduler,
        )
        catalog = None
        if synthesis is not None:
            voices = self.config.voices
            catalog = shared_catalog(
                synthesis,
                wait_timeout=voices.voices_wait_timeout_sec,
                languages=(voices.target_language, voices.related_language, voices.fallback_language),
            )
        self.playback = PlaybackQueue(
            synthesis, catalog, config=self.config.synthesis, scheduler=self._scheduler,
        )

        self.is_listening = False
        self.is_speaking = False
        self.transcript = ""
        self.final_transcript = ""
        self.error: Optional[str] = None

        self._session: Optional[SessionHandle] = None
        self._playback: Optional[PlaybackHandle] = None
        self._on_final: Optional[Callable[[str], None]] = None
        self._on_result: Optional[ResultCallback] = None
        self._on_end: Optional[EndCallback] = None

    # -- Listening ------------------------------------------------------------

    def attach_recognition(self, recognition: Optional[RecognitionCapability]) -> None:
        """Replace the recognition capability, ending any session on the old one."""
        self.stop_listening()
        self.recognizer = RecognitionController(
            recognition, config=self.config.recognition, scheduler=self._scheduler,
        )

    def start_listening(
        self,
        on_final: Optional[Callable[[str], None]] = None,
        *,
        on_result: Optional[ResultCallback] = None,
        on_end: Optional[EndCallback] = None,
    ) -> Optional[SessionHandle]:
        """Start a recognition session.

        ``on_final`` receives the finished transcript.  ``on_result`` and ``on_end``
        observe every update and every end report, errors included.
        """
        if self.is_speaking:
            log.info("event=listen_refused reason=speaking")
            return None

        self.error = None
        self.transcript = ""
        self.final_transcript = ""
        self.is_listening = True
        self._on_final = on_final
        self._on_result = on_result
        self._on_end = on_end

        self._session = self.recognizer.start(self._handle_result, self._handle_end)
        if self._session is None:
            self.is_listening = False
        return self._session

    def restart_listening(self) -> bool:
        """Listen again with a clean transcript, reusing the last observers."""
        if self.is_speaking:
            log.info("event=listen_refused reason=speaking")
            return False
        if self._session is None:
            return self.start_listening(
                self._on_final, on_result=self._on_result, on_end=self._on_end,
            ) is not None
        self.transcript = ""
        self.final_transcript = ""
        self._session.restart()
        return True

    def stop_listening(self) -> None:
        if self._session is not None:
            self._session.abort()
            self._session = None
        self.is_listening = False

    def _handle_result(self, text: str, is_final: bool) -> None:
        self.transcript = text
        if is_final:
            self.final_transcript = text
        if self._on_result is not None:
            self._on_result(text, is_final)

    def _handle_end(self, result: dict) -> None:
        if self._on_end is not None:
            self._on_end(result)
        if "error" in result:
            self.error = result["error"]
            # A recoverable error keeps the session alive for its retry.
            if result.get("recoverable") and self.recognizer.restart_pending:
                return
        else:
            transcript = result.get("transcript", "")
            if transcript:
                self.final_transcript = transcript
                if self._on_final is not None:
                    self._on_final(transcript)
        self.is_listening = False
        self._session = None

    # -- Speaking -------------------------------------------------------------

    async def speak(self, text: str, options: Optional[SpeakOptions] = None) -> Optional[PlaybackResult]:
        """Speak ``text`` and wait for playback to finish."""
        if not text or self.is_listening:
            log.info("event=speak_refused empty=%s listening=%s", not text, self.is_listening)
            return None

        self.error = None
        self.is_speaking = True
        handle = self.playback.speak(text, options)
        self._playback = handle
        try:
            result = await handle.wait()
            if result.status is PlaybackStatus.UNSUPPORTED:
                self.error = result.error
            return result
        finally:
            # A newer speak() owns the state once it superseded this one.
            if self._playback is handle:
                self.is_speaking = False
                self._playback = None

    def pause_speech(self) -> None:
        if self._playback is not None:
            self._playback.pause()

    def resume_speech(self) -> None:
        if self._playback is not None:
            self._playback.resume()

    def cancel_speech(self) -> None:
        if self._playback is not None:
            self._playback.cancel()
        self.is_speaking = False
