"""
Cloud speech synthesis via the Sarvam text-to-speech REST API.

Returns decoded mono float32 samples ready for the PlaybackManager.
"""

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx
import numpy as np

from core.audio.playback import decode_audio
from core.errors import StoppedByUser, SynthesisFailed
from utils.cancellation import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class TTSConfig:
    """Voice settings for cloud synthesis."""
    url: str = "https://api.sarvam.ai/v1/text-to-speech"
    language_code: str = "en-IN"
    speaker_id: str = "sarvam:en:female"
    pitch: float = 0.0
    speaking_rate: float = 1.0
    timeout: float = 30.0


@dataclass
class TTSResult:
    """Result from text-to-speech synthesis."""
    audio: np.ndarray  # mono float32
    sample_rate: int
    latency_ms: float
    text: str
    source: str = "cloud"  # "cloud" or "local"


class SarvamTTSClient:
    """REST synthesis client. Raises SynthesisFailed on any backend problem."""

    def __init__(self, config: Optional[TTSConfig] = None, api_key: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or TTSConfig()
        self.api_key = api_key
        self._client = http_client
        self._stats = {"requests": 0, "errors": 0, "total_latency": 0.0}
        logger.info(f"SarvamTTSClient: voice={self.config.speaker_id}, language={self.config.language_code}")

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout, connect=10.0))
        return self._client

    async def synthesize(self, text: str, token: CancelToken) -> TTSResult:
        if not self.api_key:
            raise SynthesisFailed("Sarvam API key is not configured")

        start_time = time.time()
        self._stats["requests"] += 1
        client = await self._get_client()
        body = {
            "text": text,
            "language_code": self.config.language_code,
            "speaker_id": self.config.speaker_id,
            "pitch": self.config.pitch,
            "speaking_rate": self.config.speaking_rate,
        }

        try:
            response = await token.run(client.post(
                self.config.url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            ))
        except StoppedByUser:
            raise
        except httpx.HTTPError as e:
            self._stats["errors"] += 1
            raise SynthesisFailed(f"TTS request failed: {e}", cause=e) from e

        if not response.is_success:
            self._stats["errors"] += 1
            raise SynthesisFailed(f"Sarvam API error: {response.status_code} {response.reason_phrase}")

        try:
            data = response.json()
            encoded = data.get("audio_content") or (data.get("audios") or [None])[0]
            if not encoded:
                raise SynthesisFailed("No audio content received from Sarvam API")
            audio, sample_rate = decode_audio(base64.b64decode(encoded))
        except SynthesisFailed:
            self._stats["errors"] += 1
            raise
        except (ValueError, binascii.Error) as e:
            self._stats["errors"] += 1
            raise SynthesisFailed(f"Could not decode synthesized audio: {e}", cause=e) from e

        latency_ms = (time.time() - start_time) * 1000
        self._stats["total_latency"] += latency_ms
        logger.debug(f"Synthesized {len(audio) / sample_rate:.1f}s of audio in {latency_ms:.0f}ms")
        return TTSResult(audio=audio, sample_rate=sample_rate, latency_ms=latency_ms, text=text)

    async def health_check(self) -> Tuple[bool, str]:
        if self.api_key:
            return True, f"Sarvam voice {self.config.speaker_id} configured"
        return False, "SARVAM_API_KEY not set"

    def get_stats(self) -> dict:
        return self._stats.copy()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
