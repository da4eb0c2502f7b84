"""
Speech-to-Text (STT) module for the voice agent.

Cloud recognition through Google Speech (buffered or streaming) with an
on-device faster-whisper fallback.
"""

from .client import TranscriptionClient
from .google_client import GoogleSpeechTranscriber, SpeechConfig
from .local_whisper import LocalSTTConfig, LocalWhisperTranscriber
from .streaming import StreamingTranscriber

__all__ = [
    "TranscriptionClient",
    "GoogleSpeechTranscriber",
    "SpeechConfig",
    "LocalSTTConfig",
    "LocalWhisperTranscriber",
    "StreamingTranscriber",
]
