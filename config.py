"""
config.py — Chat Voice Engine · Runtime Configuration
=====================================================
Pydantic models for every tunable parameter of the voice pipeline.
Serialises to / deserialises from JSON.  Used by:
  • server.py            — GET/PUT /config endpoints, builds the pipeline
  • speech.recognition   — silence timer, retry policy, recognizer settings
  • speech.playback      — speak defaults, chunking, resume polling
  • speech.voices        — language targets for the voice scorer
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("voice_engine.config")


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class RecognitionConfig(BaseModel):
    """Speech-to-text session parameters."""
    language: str = Field(default="id-ID", description="BCP-47 tag passed to the recognizer")
    continuous: bool = Field(default=True, description="Keep listening across pauses")
    interim_results: bool = Field(default=True, description="Stream partial hypotheses")
    max_alternatives: int = Field(default=3, ge=1, le=10, description="Hypotheses per result")
    confidence_threshold: float = Field(default=0.75, ge=0.0, le=1.0, description="Minimum confidence for a final hypothesis")
    silence_timeout_sec: float = Field(default=4.0, gt=0.0, le=60.0, description="Stop after this much silence (seconds)")
    error_restart_delay_sec: float = Field(default=1.0, ge=0.0, le=30.0, description="Delay before auto-restart on a recoverable error")
    manual_restart_delay_sec: float = Field(default=0.3, ge=0.0, le=10.0, description="Delay used by restart()")
    max_auto_restarts: Optional[int] = Field(default=3, ge=0, description="Consecutive auto-restarts allowed (None = unbounded)")


class SpeakOptions(BaseModel):
    """Per-call text-to-speech options (what speak() accepts)."""
    rate: float = Field(default=1.0, ge=0.1, le=10.0, description="Speech rate (0.1–10)")
    pitch: float = Field(default=1.0, ge=0.0, le=2.0, description="Pitch (0–2)")
    volume: float = Field(default=1.0, ge=0.0, le=1.0, description="Volume (0–1)")
    voice_type: str = Field(default="auto", min_length=1, description="'auto', 'male', 'female' or a voice name fragment")
    clean_special_chars: bool = Field(default=True, description="Strip markdown / noise before speaking")


class SynthesisConfig(SpeakOptions):
    """Playback queue parameters.  The SpeakOptions fields are the speak() defaults."""
    resume_poll_interval_sec: float = Field(default=0.25, gt=0.0, le=5.0, description="Stalled-engine resume poll")
    chunk_gap_sec: float = Field(default=0.05, ge=0.0, le=5.0, description="Pause between chunks")
    chunk_error_gap_sec: float = Field(default=0.1, ge=0.0, le=5.0, description="Pause after a chunk error event")
    submit_error_gap_sec: float = Field(default=0.5, ge=0.0, le=5.0, description="Pause after the engine refused a chunk")
    max_chunk_length: int = Field(default=160, ge=20, le=2000, description="Maximum characters per utterance")
    chunk_lookahead: int = Field(default=30, ge=0, le=200, description="Extra characters scanned for a sentence break")
    code_placeholder: str = Field(default="kode program", description="Spoken in place of fenced code blocks")

    def speak_options(self, **overrides) -> SpeakOptions:
        """Return the speak() defaults, optionally overridden."""
        base = {name: getattr(self, name) for name in SpeakOptions.model_fields}
        base.update({k: v for k, v in overrides.items() if v is not None})
        return SpeakOptions.model_validate(base)


class VoiceSelectionConfig(BaseModel):
    """Voice scorer language targets."""
    target_language: str = Field(default="id", description="Language the assistant speaks")
    related_language: str = Field(default="ms", description="Closely related fallback language")
    fallback_language: str = Field(default="en", description="Broadly supported fallback language")
    voices_wait_timeout_sec: float = Field(default=1.0, ge=0.0, le=30.0, description="Wait for the voice list (seconds)")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceEngineConfig(BaseModel):
    """Complete runtime configuration for the voice engine."""
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    voices: VoiceSelectionConfig = Field(default_factory=VoiceSelectionConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceEngineConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceEngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"recognition": {"confidence_threshold": 0.6}}
        only changes recognition.confidence_threshold, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return VoiceEngineConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
