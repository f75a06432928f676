"""Voice interaction pipeline: recognition sessions and chunked speech playback."""

from speech.capabilities import (
    Hypothesis,
    RecognitionResult,
    RecognizerSettings,
    ResultBatch,
    UtteranceRequest,
    VoiceDescriptor,
)
from speech.chunker import Chunk, chunk_text
from speech.controller import VoiceController
from speech.errors import CapabilityUnavailableError, RecognitionError, VoiceEngineError
from speech.normalizer import normalize_text
from speech.playback import PlaybackHandle, PlaybackQueue, PlaybackResult, PlaybackStatus, preview_voice
from speech.recognition import RecognitionController, SessionHandle, classify_error
from speech.voices import VoiceCatalog, select_voice, shared_catalog

__all__ = [
    "CapabilityUnavailableError",
    "Chunk",
    "Hypothesis",
    "PlaybackHandle",
    "PlaybackQueue",
    "PlaybackResult",
    "PlaybackStatus",
    "RecognitionController",
    "RecognitionError",
    "RecognitionResult",
    "RecognizerSettings",
    "ResultBatch",
    "SessionHandle",
    "UtteranceRequest",
    "VoiceCatalog",
    "VoiceController",
    "VoiceDescriptor",
    "VoiceEngineError",
    "chunk_text",
    "classify_error",
    "normalize_text",
    "preview_voice",
    "select_voice",
    "shared_catalog",
]
