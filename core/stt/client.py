"""
Transcription entry point used by the pipeline.

One client, one strategy point: buffered audio goes to the cloud
recognizer, falling back to the on-device recognizer only when the cloud
backend is unavailable. Text input is a transcript the streaming feed has
already committed and passes straight through.
"""

import logging
import time
from typing import AsyncIterator, Optional, Union

from core.errors import NoSpeechDetected, TranscriptionUnavailable
from core.stt.google_client import GoogleSpeechTranscriber
from core.stt.local_whisper import LocalWhisperTranscriber
from core.stt.streaming import StreamingTranscriber
from utils.cancellation import CancelToken
from utils.events import AudioBuffer, TranscriptDelta, TranscriptionResult

logger = logging.getLogger(__name__)

TranscriptionInput = Union[AudioBuffer, str]


class TranscriptionClient:
    """Routes utterances to the configured recognizer."""

    def __init__(self, cloud: Optional[GoogleSpeechTranscriber] = None,
                 local: Optional[LocalWhisperTranscriber] = None,
                 streaming: Optional[StreamingTranscriber] = None):
        self.cloud = cloud
        self.local = local
        self.streaming = streaming
        self.fallback_count = 0

    @property
    def supports_streaming(self) -> bool:
        return self.streaming is not None and self.streaming.available

    async def transcribe(self, input: TranscriptionInput, token: CancelToken) -> TranscriptionResult:
        token.raise_if_cancelled()

        if isinstance(input, str):
            result = TranscriptionResult(text=input.strip(), confidence=1.0, source="text")
        else:
            result = await self._transcribe_buffer(input, token)

        if not result.text.strip():
            raise NoSpeechDetected("No speech detected")
        return result

    async def _transcribe_buffer(self, buffer: AudioBuffer, token: CancelToken) -> TranscriptionResult:
        if self.cloud is not None:
            try:
                return await self.cloud.transcribe(buffer, token)
            except TranscriptionUnavailable as e:
                if not self._has_fallback():
                    raise
                logger.warning(f"Cloud transcription unavailable ({e}), using on-device recognizer")
        elif not self._has_fallback():
            raise TranscriptionUnavailable("No transcription backend configured")

        self.fallback_count += 1
        start_time = time.time()
        result = await self.local.transcribe(buffer, token)
        result.latency_ms = result.latency_ms or (time.time() - start_time) * 1000
        return result

    def _has_fallback(self) -> bool:
        return self.local is not None and self.local.available

    def stream(self, audio_source: AsyncIterator[bytes],
               token: CancelToken) -> AsyncIterator[TranscriptDelta]:
        """Live transcript deltas for audio_source; ends after one final delta."""
        if not self.supports_streaming:
            raise TranscriptionUnavailable("Streaming transcription not configured")
        return self.streaming.stream(audio_source, token)
