"""
Streaming transcription over a websocket relay.

The relay speaks a small JSON protocol: the client sends one ``config``
message followed by ``audio`` messages carrying base64 frames; the relay
answers with ``partial``, ``final`` and ``error`` messages. stream() exposes
this as an async iterator of TranscriptDelta that ends after exactly one
final delta.
"""

import asyncio
import base64
import json
import logging
from typing import AsyncIterator, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.auth import TokenProvider
from core.errors import CredentialsUnavailable, TranscriptionFailed, TranscriptionUnavailable
from core.stt.google_client import SpeechConfig, recognition_config
from utils.cancellation import CancelToken
from utils.events import TranscriptDelta

logger = logging.getLogger(__name__)


class StreamingTranscriber:
    """Client for the streaming recognition relay."""

    def __init__(self, config: SpeechConfig, token_provider: Optional[TokenProvider] = None,
                 connect: Optional[Callable] = None, sample_rate: int = 16000):
        self.config = config
        self.token_provider = token_provider
        self.sample_rate = sample_rate
        self._connect = connect or websockets.connect

    @property
    def available(self) -> bool:
        return bool(self.config.stream_url)

    def _config_message(self, access_token: Optional[str]) -> str:
        config = recognition_config(self.config, encoding="LINEAR16")
        config["sampleRateHertz"] = self.sample_rate
        config["enableInterimResults"] = True
        return json.dumps({"type": "config", "config": config, "token": access_token})

    async def _open(self, token: CancelToken):
        if not self.config.stream_url:
            raise TranscriptionUnavailable("No streaming endpoint configured")

        access_token = None
        if self.token_provider is not None:
            try:
                access_token = await token.run(self.token_provider.get_token())
            except CredentialsUnavailable as e:
                raise TranscriptionUnavailable(str(e), cause=e) from e

        try:
            ws = await token.run(self._connect(self.config.stream_url, ping_interval=20))
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning(f"Streaming relay connection failed: {e}")
            raise TranscriptionUnavailable(f"Streaming relay unreachable: {e}", cause=e) from e

        await ws.send(self._config_message(access_token))
        logger.info("Streaming transcription connected")
        return ws

    async def stream(self, audio_source: AsyncIterator[bytes],
                     token: CancelToken) -> AsyncIterator[TranscriptDelta]:
        """Send audio from audio_source and yield deltas until one final transcript arrives."""
        ws = await self._open(token)

        async def send_audio():
            async for chunk in audio_source:
                await ws.send(json.dumps({
                    "type": "audio",
                    "audio": base64.b64encode(chunk).decode("ascii"),
                }))

        sender = asyncio.ensure_future(send_audio())
        try:
            while True:
                if sender.done() and not sender.cancelled() and sender.exception() is not None:
                    raise sender.exception()
                try:
                    message = await token.run(ws.recv())
                except ConnectionClosed as e:
                    raise TranscriptionFailed(f"Stream closed before a final transcript: {e}", cause=e) from e

                data = json.loads(message)
                kind = data.get("type")
                if kind == "partial":
                    yield TranscriptDelta(text=data.get("transcript", ""), is_final=False)
                elif kind == "final":
                    yield TranscriptDelta(
                        text=data.get("transcript", ""),
                        is_final=True,
                        confidence=data.get("confidence"),
                    )
                    return
                elif kind == "error":
                    raise TranscriptionFailed(f"Streaming recognition error: {data.get('error')}")
                else:
                    logger.debug(f"Ignoring relay message type {kind!r}")
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Audio sender ended with {e}")
            await ws.close()
