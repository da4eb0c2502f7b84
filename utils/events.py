"""
Data types passed between pipeline stages.

Centralizing them here keeps capture, transcription and the conversation
layer free of import cycles.
"""
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np

# Bits per second assumed for compressed captures when estimating duration.
OPUS_BITRATE = 32000


@dataclass
class AudioChunk:
    """Raw PCM16 bytes produced by the capture session for one audio block."""
    data: bytes
    timestamp: float = field(default_factory=time.time)


@dataclass
class AudioBuffer:
    """A complete utterance, handed to transcription and then discarded."""
    data: bytes
    sample_rate: int = 16000
    channels: int = 1
    encoding: str = "LINEAR16"  # "LINEAR16" or "WEBM_OPUS"

    @classmethod
    def from_chunks(cls, chunks: Sequence[AudioChunk], sample_rate: int = 16000,
                    channels: int = 1) -> "AudioBuffer":
        return cls(
            data=b"".join(chunk.data for chunk in chunks),
            sample_rate=sample_rate,
            channels=channels,
        )

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def estimated_duration_s(self) -> float:
        """Duration estimated from byte size and encoding bitrate."""
        if self.encoding == "LINEAR16":
            bitrate = self.sample_rate * 16 * self.channels
        else:
            bitrate = OPUS_BITRATE
        return self.size * 8 / bitrate

    def to_array(self) -> np.ndarray:
        """Decode LINEAR16 bytes into float32 samples in [-1, 1]."""
        samples = np.frombuffer(self.data, dtype=np.int16)
        return samples.astype(np.float32) / 32768.0


@dataclass
class UtteranceDetected:
    """Emitted by the VAD when a speech segment ends."""
    started_ms: float
    ended_ms: float
    speech_ms: float
    forced: bool = False  # hit the continuous-speech cap


@dataclass
class CapturedUtterance:
    """Audio for one detected utterance plus its detection metadata."""
    buffer: AudioBuffer
    detection: UtteranceDetected


@dataclass
class TranscriptDelta:
    """Incremental transcript from the streaming recognizer."""
    text: str
    is_final: bool
    confidence: Optional[float] = None


@dataclass
class TranscriptionResult:
    """Final transcript for one utterance."""
    text: str
    confidence: float = 0.0
    source: str = "cloud"  # "cloud", "stream", "local" or "text"
    latency_ms: float = 0.0


@dataclass
class PipelineProgress:
    """Stage notification from the pipeline orchestrator."""
    stage: str  # "stt", "ai", "tts", "complete"
    text: Optional[str] = None
    latency: Optional[Dict[str, float]] = None

