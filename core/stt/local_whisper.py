"""
On-device transcription fallback using faster-whisper.

Used only when the cloud backend is unavailable. The model is loaded
lazily on first use; faster-whisper ships in the ``local`` extra.
"""

import asyncio
import importlib.util
import logging
import time
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from core.errors import StoppedByUser, TranscriptionFailed, TranscriptionUnavailable
from utils.cancellation import CancelToken
from utils.events import AudioBuffer, TranscriptionResult

logger = logging.getLogger(__name__)


@dataclass
class LocalSTTConfig:
    """Configuration for faster-whisper."""
    model_name: str = "small.en"
    device: str = "cpu"
    compute_type: str = "int8"
    beam_size: int = 1  # fastest decoding


class LocalWhisperTranscriber:
    """faster-whisper transcriber with async interface."""

    def __init__(self, config: LocalSTTConfig = None):
        self.config = config or LocalSTTConfig()
        self.model = None
        self._stats = {"total_requests": 0, "total_latency": 0.0, "errors": 0}

    @property
    def available(self) -> bool:
        return self.model is not None or importlib.util.find_spec("faster_whisper") is not None

    async def initialize(self) -> bool:
        """Load the WhisperModel in a worker thread."""
        if self.model is not None:
            return True
        if not self.available:
            return False

        try:
            start_time = time.time()

            def _load_model():
                from faster_whisper import WhisperModel
                return WhisperModel(
                    self.config.model_name,
                    device=self.config.device,
                    compute_type=self.config.compute_type
                )

            self.model = await asyncio.get_running_loop().run_in_executor(None, _load_model)
            logger.info(f"faster-whisper model '{self.config.model_name}' loaded in "
                        f"{time.time() - start_time:.2f}s on {self.config.device}")
            return True

        except Exception as e:
            logger.error(f"Failed to load faster-whisper model: {e}")
            return False

    async def transcribe(self, buffer: AudioBuffer, token: CancelToken) -> TranscriptionResult:
        if not await token.run(self.initialize()):
            raise TranscriptionUnavailable("On-device recognizer unavailable")

        start_time = time.time()
        audio = buffer.to_array()

        def _transcribe_sync():
            segments, info = self.model.transcribe(
                audio,
                beam_size=self.config.beam_size,
                condition_on_previous_text=False,
                temperature=0.0,
                no_speech_threshold=0.8,
            )
            # segments is a lazy generator; consume it on the worker thread
            return [seg.text for seg in segments], info

        try:
            texts, info = await token.run(
                asyncio.get_running_loop().run_in_executor(None, _transcribe_sync)
            )
        except StoppedByUser:
            raise
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"Local transcription failed: {e}")
            raise TranscriptionFailed(f"Local transcription failed: {e}", cause=e) from e

        avg_log_prob = getattr(info, "avg_log_prob", getattr(info, "avg_logprob", -1.0))
        latency_ms = (time.time() - start_time) * 1000
        self._stats["total_requests"] += 1
        self._stats["total_latency"] += latency_ms

        text = " ".join(t.strip() for t in texts).strip()
        logger.debug(f"Transcribed locally in {latency_ms:.1f}ms: '{text[:50]}'")
        return TranscriptionResult(
            text=text,
            confidence=float(np.clip(avg_log_prob + 1.0, 0.0, 1.0)),
            source="local",
            latency_ms=latency_ms,
        )

    async def health_check(self) -> Tuple[bool, str]:
        if await self.initialize():
            return True, f"Model {self.config.model_name} ready (device: {self.config.device})"
        return False, "faster-whisper not installed or model failed to load"

    def get_stats(self) -> dict:
        stats = self._stats.copy()
        if stats["total_requests"] > 0:
            stats["avg_latency_ms"] = stats["total_latency"] / stats["total_requests"]
        else:
            stats["avg_latency_ms"] = 0
        return stats
