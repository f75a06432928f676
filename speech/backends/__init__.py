"""Concrete speech capabilities.

``local_tts`` imports pyttsx3; import it directly where offline synthesis is wanted.
"""

from speech.backends.ws_recognition import BrowserRecognition, RecognitionEvent

__all__ = ["BrowserRecognition", "RecognitionEvent"]
