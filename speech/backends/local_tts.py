"""
local_tts.py — Offline synthesis capability backed by pyttsx3
=============================================================
pyttsx3 blocks inside ``runAndWait()`` and is not safe to drive from more
than one thread, so a single worker thread owns the engine.  Requests are
queued; completion callbacks fire on the worker thread (the playback queue
hops them back onto its event loop).

pyttsx3 has no pause/resume and no portable pitch control: pause() and
resume() are accepted and ignored, pitch is dropped.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

import pyttsx3

from speech.capabilities import UtteranceRequest, VoiceDescriptor
from speech.errors import CapabilityUnavailableError

log = logging.getLogger("voice_engine.local_tts")

_STOP = object()


def _voice_lang(voice) -> str:
    """First language of a pyttsx3 voice as a string tag (espeak reports bytes)."""
    languages = getattr(voice, "languages", None) or []
    if not languages:
        return ""
    lang = languages[0]
    if isinstance(lang, bytes):
        # espeak prefixes the tag with a priority byte, e.g. b"\x05en-us".
        lang = lang[1:].decode("utf-8", errors="replace") if lang[:1] < b" " else lang.decode("utf-8", errors="replace")
    return str(lang).replace("_", "-")


def describe_voice(voice, default_id: Optional[str] = None) -> VoiceDescriptor:
    voice_id = str(getattr(voice, "id", "") or "")
    return VoiceDescriptor(
        name=str(getattr(voice, "name", "") or voice_id),
        lang=_voice_lang(voice),
        local_service=True,
        default=bool(default_id) and voice_id == default_id,
        voice_uri=voice_id,
    )


class LocalSynthesis:
    """SynthesisCapability over the platform's offline TTS engine."""

    def __init__(self, driver_name: Optional[str] = None) -> None:
        self._driver_name = driver_name
        self._requests: "queue.Queue[object]" = queue.Queue()
        self._voices: list[VoiceDescriptor] = []
        self._voice_listeners: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._speaking = threading.Event()
        self._ready = threading.Event()
        self._engine = None
        self._engine_error: Optional[str] = None
        self._generation = 0
        self._thread = threading.Thread(target=self._worker, name="local-tts", daemon=True)
        self._thread.start()

    # -- SynthesisCapability ----------------------------------------------------

    @property
    def speaking(self) -> bool:
        return self._speaking.is_set()

    def get_voices(self) -> list[VoiceDescriptor]:
        with self._lock:
            return list(self._voices)

    def on_voices_changed(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._ready.is_set():
                self._voice_listeners.append(callback)
                return
        callback()

    def speak(self, request: UtteranceRequest) -> None:
        if self._engine_error is not None:
            raise CapabilityUnavailableError(f"local TTS engine unavailable: {self._engine_error}")
        with self._lock:
            generation = self._generation
        self._requests.put((generation, request))

    def pause(self) -> None:
        log.debug("event=local_tts_pause_unsupported")

    def resume(self) -> None:
        log.debug("event=local_tts_resume_unsupported")

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
        dropped = 0
        while True:
            try:
                self._requests.get_nowait()
                dropped += 1
            except queue.Empty:
                break
        if self._engine is not None and self._speaking.is_set():
            try:
                self._engine.stop()
            except Exception as exc:
                log.warning("event=local_tts_stop_failed error=%s", exc)
        log.debug("event=local_tts_cancel dropped=%d", dropped)

    def close(self) -> None:
        self.cancel()
        self._requests.put(_STOP)
        self._thread.join(timeout=1)

    # -- Worker thread ---------------------------------------------------------

    def _worker(self) -> None:
        try:
            engine = pyttsx3.init(self._driver_name) if self._driver_name else pyttsx3.init()
            default_id = engine.getProperty("voice")
            voices = [describe_voice(v, default_id) for v in engine.getProperty("voices") or []]
            base_rate = engine.getProperty("rate") or 200
        except Exception as exc:
            log.error("event=local_tts_init_failed error=%s", exc)
            self._engine_error = str(exc)
            self._publish_voices([])
            return

        self._engine = engine
        self._publish_voices(voices)
        log.info("event=local_tts_ready voices=%d base_rate=%s", len(voices), base_rate)

        while True:
            item = self._requests.get()
            if item is _STOP:
                break
            generation, request = item
            with self._lock:
                stale = generation != self._generation
            if stale:
                continue
            self._say(engine, request, base_rate)

        try:
            engine.stop()
        except Exception:
            log.debug("event=local_tts_shutdown_stop_failed")

    def _publish_voices(self, voices: list[VoiceDescriptor]) -> None:
        with self._lock:
            self._voices = voices
            listeners, self._voice_listeners = self._voice_listeners, []
            self._ready.set()
        for callback in listeners:
            callback()

    def _say(self, engine, request: UtteranceRequest, base_rate: float) -> None:
        try:
            engine.setProperty("rate", int(base_rate * request.rate))
            engine.setProperty("volume", request.volume)
            if request.voice is not None and request.voice.voice_uri:
                engine.setProperty("voice", request.voice.voice_uri)
            self._speaking.set()
            if request.on_start is not None:
                request.on_start()
            engine.say(request.text)
            engine.runAndWait()
        except Exception as exc:
            self._speaking.clear()
            log.error("event=local_tts_utterance_failed error=%s", exc)
            if request.on_error is not None:
                request.on_error(str(exc))
            return
        self._speaking.clear()
        if request.on_end is not None:
            request.on_end()
