"""
Text-to-Speech (TTS) module for the voice agent.

Sarvam cloud synthesis with an on-device pyttsx3 fallback, played through
the shared PlaybackManager.
"""

from .sarvam_client import (
    SarvamTTSClient,
    TTSResult,
    TTSConfig,
)
from .local_client import LocalTTSClient, LocalTTSConfig
from .synthesis import SpeechSynthesisClient

__all__ = [
    "SarvamTTSClient",
    "TTSResult",
    "TTSConfig",
    "LocalTTSClient",
    "LocalTTSConfig",
    "SpeechSynthesisClient",
]
