"""
Core audio for the voice agent.

This module provides:
- Microphone capture with level metering
- Voice activity detection with adaptive thresholds
- Single-owner audio playback
"""

from .capture import (
    AudioConfig,
    AudioCaptureSession,
)

from .vad import (
    FrameAnalyzer,
    FrameLevels,
    VADProfile,
    VADState,
    VADThresholds,
    VoiceActivityDetector,
)

from .listener import UtteranceListener

from .playback import (
    PlaybackHandle,
    PlaybackManager,
    decode_audio,
)

__all__ = [
    'AudioConfig',
    'AudioCaptureSession',
    'FrameAnalyzer',
    'FrameLevels',
    'VADProfile',
    'VADState',
    'VADThresholds',
    'VoiceActivityDetector',
    'UtteranceListener',
    'PlaybackHandle',
    'PlaybackManager',
    'decode_audio',
]
