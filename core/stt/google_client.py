"""
Buffered transcription against the Google Speech-to-Text v1 REST API.

Short utterances use synchronous recognize; anything estimated at 50s or
longer goes through longrunningrecognize and is polled every 2s for up to
90 attempts. Every network await is raced against the caller's cancel
token, so a stop during polling surfaces as StoppedByUser and never as a
transcription failure.
"""

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from core.auth import TokenProvider
from core.errors import (
    CredentialsUnavailable,
    TranscriptionFailed,
    TranscriptionTimeout,
    TranscriptionUnavailable,
)
from utils.cancellation import CancelToken
from utils.events import AudioBuffer, TranscriptionResult

logger = logging.getLogger(__name__)

SYNC_LIMIT_S = 50.0


@dataclass
class SpeechConfig:
    """Recognition settings shared by the buffered and streaming strategies."""
    language_code: str = "en-US"
    model: str = "latest_long"
    use_enhanced: bool = True
    automatic_punctuation: bool = True
    base_url: str = "https://speech.googleapis.com/v1"
    token_endpoint: str = ""
    stream_url: str = ""
    timeout: float = 30.0
    poll_interval_s: float = 2.0
    max_poll_attempts: int = 90


def recognition_config(config: SpeechConfig, buffer: Optional[AudioBuffer] = None,
                       encoding: str = "LINEAR16") -> Dict[str, Any]:
    """Build the RecognitionConfig body."""
    encoding = buffer.encoding if buffer is not None else encoding
    body = {
        "encoding": encoding,
        "languageCode": config.language_code,
        "enableAutomaticPunctuation": config.automatic_punctuation,
        "model": config.model,
        "useEnhanced": config.use_enhanced,
    }
    # WEBM_OPUS carries its own rate in the container.
    if encoding == "LINEAR16" and buffer is not None:
        body["sampleRateHertz"] = buffer.sample_rate
        body["audioChannelCount"] = buffer.channels
    return body


def parse_results(payload: Dict[str, Any]) -> TranscriptionResult:
    """Join the top alternative of every result and average their confidences."""
    results = payload.get("results") or []
    transcripts = []
    confidences = []
    for result in results:
        alternatives = result.get("alternatives") or []
        if not alternatives:
            continue
        transcripts.append(alternatives[0].get("transcript", ""))
        confidences.append(float(alternatives[0].get("confidence", 0.0)))

    text = " ".join(t.strip() for t in transcripts if t.strip())
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return TranscriptionResult(text=text, confidence=confidence, source="cloud")


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text)
    except ValueError:
        return response.text


class GoogleSpeechTranscriber:
    """Google Speech v1 REST client (recognize / longrunningrecognize)."""

    def __init__(self, config: SpeechConfig, token_provider: Optional[TokenProvider] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.token_provider = token_provider
        self._client = http_client
        self._stats = {"sync_requests": 0, "async_requests": 0, "errors": 0}

    @property
    def available(self) -> bool:
        return self.token_provider is not None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout, connect=10.0)
            )
        return self._client

    async def transcribe(self, buffer: AudioBuffer, token: CancelToken) -> TranscriptionResult:
        if self.token_provider is None:
            raise TranscriptionUnavailable("No token endpoint configured")

        start_time = time.time()
        try:
            access_token = await token.run(self.token_provider.get_token())
        except CredentialsUnavailable as e:
            raise TranscriptionUnavailable(str(e), cause=e) from e

        body = {
            "config": recognition_config(self.config, buffer),
            "audio": {"content": base64.b64encode(buffer.data).decode("ascii")},
        }
        duration = buffer.estimated_duration_s
        logger.debug(f"Transcribing {buffer.size} bytes (~{duration:.1f}s)")

        if duration < SYNC_LIMIT_S:
            result = await self._recognize_sync(body, access_token, token)
        else:
            result = None
        if result is None:
            result = await self._recognize_long(body, access_token, token)

        result.latency_ms = (time.time() - start_time) * 1000
        logger.info(f"Transcribed in {result.latency_ms:.0f}ms: '{result.text[:50]}'")
        return result

    async def _request(self, method: str, url: str, access_token: str, token: CancelToken,
                       json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            response = await token.run(client.request(method, url, headers=headers, json=json))
        except httpx.TransportError as e:
            self._stats["errors"] += 1
            raise TranscriptionUnavailable(f"Speech backend unreachable: {e}", cause=e) from e

        if response.status_code >= 500:
            self._stats["errors"] += 1
            raise TranscriptionUnavailable(
                f"Speech backend error {response.status_code}: {_error_message(response)}"
            )
        if response.status_code in (401, 403) and self.token_provider is not None:
            self.token_provider.invalidate()
        return response

    async def _recognize_sync(self, body: Dict[str, Any], access_token: str,
                              token: CancelToken) -> Optional[TranscriptionResult]:
        """Returns None when the audio is too long for the sync endpoint."""
        self._stats["sync_requests"] += 1
        response = await self._request(
            "POST", f"{self.config.base_url}/speech:recognize", access_token, token, json=body
        )
        if response.is_success:
            return parse_results(response.json())

        message = _error_message(response)
        if "too long" in message or "Sync input" in message:
            logger.info("Audio too long for sync recognize, switching to long-running")
            return None
        self._stats["errors"] += 1
        raise TranscriptionFailed(f"Recognize failed ({response.status_code}): {message}")

    async def _recognize_long(self, body: Dict[str, Any], access_token: str,
                              token: CancelToken) -> TranscriptionResult:
        self._stats["async_requests"] += 1
        response = await self._request(
            "POST", f"{self.config.base_url}/speech:longrunningrecognize",
            access_token, token, json=body,
        )
        if not response.is_success:
            self._stats["errors"] += 1
            raise TranscriptionFailed(
                f"Long-running recognize failed ({response.status_code}): {_error_message(response)}"
            )

        operation = response.json().get("name")
        if not operation:
            raise TranscriptionFailed("No operation name returned")
        logger.info(f"Started long-running operation {operation}")

        for attempt in range(1, self.config.max_poll_attempts + 1):
            await token.sleep(self.config.poll_interval_s)
            poll = await self._request(
                "GET", f"{self.config.base_url}/operations/{operation}", access_token, token
            )
            token.raise_if_cancelled()
            if not poll.is_success:
                self._stats["errors"] += 1
                raise TranscriptionFailed(f"Failed to poll operation: {_error_message(poll)}")

            data = poll.json()
            if data.get("done"):
                if data.get("error"):
                    message = data["error"].get("message", "unknown error")
                    raise TranscriptionFailed(f"Long-running recognize error: {message}")
                return parse_results(data.get("response") or {})
            logger.debug(f"Still processing (attempt {attempt}/{self.config.max_poll_attempts})")

        raise TranscriptionTimeout(
            f"Long-running recognize did not finish after {self.config.max_poll_attempts} polls"
        )

    def get_stats(self) -> dict:
        return self._stats.copy()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
