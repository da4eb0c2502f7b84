"""
Speech synthesis entry point used by the pipeline.

speak() resolves at audible onset, not at completion. Output goes through
the injected PlaybackManager so a new reply always silences the previous
one. Cloud synthesis falls back to the on-device engine; only when both
fail is SynthesisFailed raised.
"""

import logging
from typing import Optional

from core.audio.playback import PlaybackHandle, PlaybackManager
from core.errors import DeviceError, SynthesisFailed
from core.tts.local_client import LocalTTSClient
from core.tts.sarvam_client import SarvamTTSClient, TTSResult
from utils.cancellation import CancelToken

logger = logging.getLogger(__name__)


class SpeechSynthesisClient:
    """Synthesize text and play it through the PlaybackManager."""

    def __init__(self, playback: PlaybackManager, cloud: Optional[SarvamTTSClient] = None,
                 local: Optional[LocalTTSClient] = None):
        self.playback = playback
        self.cloud = cloud
        self.local = local
        self._token: Optional[CancelToken] = None
        self._handle: Optional[PlaybackHandle] = None
        self.fallback_count = 0

    @property
    def is_speaking(self) -> bool:
        return self._handle is not None and self._handle.is_playing

    async def speak(self, text: str, token: Optional[CancelToken] = None) -> PlaybackHandle:
        """Synthesize and start playing text. Returns once playback is audible."""
        if not text or not text.strip():
            raise SynthesisFailed("Nothing to speak")

        if self._token is not None:
            self._token.cancel("superseded")
        request = CancelToken(parent=token)
        self._token = request

        try:
            result = await self._synthesize(text, request)
            try:
                handle = await self.playback.play(result.audio, result.sample_rate, request)
            except DeviceError as e:
                raise SynthesisFailed(f"Playback failed: {e}", cause=e) from e
        finally:
            if self._token is request:
                self._token = None

        self._handle = handle
        logger.info(f"Speaking ({result.source}, {handle.duration_s:.1f}s)")
        return handle

    async def _synthesize(self, text: str, token: CancelToken) -> TTSResult:
        error: Optional[SynthesisFailed] = None
        if self.cloud is not None and self.cloud.available:
            try:
                return await self.cloud.synthesize(text, token)
            except SynthesisFailed as e:
                error = e
                logger.warning(f"Cloud synthesis failed ({e}), falling back to on-device voice")

        token.raise_if_cancelled()
        if self.local is not None and self.local.available:
            self.fallback_count += 1
            try:
                return await self.local.synthesize(text, token)
            except SynthesisFailed as e:
                raise SynthesisFailed(f"Cloud and on-device synthesis failed: {e}", cause=error or e) from e

        raise error or SynthesisFailed("No speech synthesis backend available")

    def stop(self) -> None:
        """Stop any in-flight request and all playback. Safe to call repeatedly."""
        token, self._token = self._token, None
        if token is not None:
            token.cancel("speech stopped")
        self.playback.stop_all()
        self._handle = None

    async def wait_until_done(self) -> None:
        handle = self._handle
        if handle is not None:
            await handle.wait_done()

    async def aclose(self) -> None:
        self.stop()
        if self.cloud is not None:
            await self.cloud.close()

