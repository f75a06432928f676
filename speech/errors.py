"""Exception types raised inside the voice pipeline.

None of these cross the callback boundary: the recognition controller and
the playback queue convert them into ``on_end`` / completion results.
"""

from __future__ import annotations


class VoiceEngineError(Exception):
    """Base class for voice pipeline failures."""


class CapabilityUnavailableError(VoiceEngineError):
    """The platform offers no recognition or synthesis capability."""


class RecognitionError(VoiceEngineError):
    """A classified recognizer error event."""

    def __init__(self, code: str, message: str, recoverable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable

    def as_result(self) -> dict:
        return {"error": self.message, "recoverable": self.recoverable, "code": self.code}
