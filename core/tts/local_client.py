"""
On-device speech synthesis fallback using pyttsx3.

pyttsx3 renders to a temporary WAV file which is decoded and handed to
the same PlaybackManager as cloud audio, so stop and mutual exclusion
behave identically. pyttsx3 ships in the ``local`` extra.
"""

import asyncio
import importlib.util
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass

from core.audio.playback import decode_audio
from core.errors import StoppedByUser, SynthesisFailed
from core.tts.sarvam_client import TTSResult
from utils.cancellation import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class LocalTTSConfig:
    rate: int = 180  # words per minute
    volume: float = 0.9
    voice_id: str = ""  # empty = first available voice


class LocalTTSClient:
    """pyttsx3 engine rendering to WAV bytes."""

    def __init__(self, config: LocalTTSConfig = None):
        self.config = config or LocalTTSConfig()
        self.engine = None
        # pyttsx3 engines are not thread-safe
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self.engine is not None or importlib.util.find_spec("pyttsx3") is not None

    def initialize(self) -> bool:
        if self.engine is not None:
            return True
        if not self.available:
            return False
        try:
            import pyttsx3
            engine = pyttsx3.init()
            voices = engine.getProperty('voices')
            if self.config.voice_id:
                engine.setProperty('voice', self.config.voice_id)
            elif voices:
                engine.setProperty('voice', voices[0].id)
            engine.setProperty('rate', self.config.rate)
            engine.setProperty('volume', self.config.volume)
            self.engine = engine
            logger.info("pyttsx3 TTS engine initialized")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize pyttsx3 engine: {e}")
            return False

    def _render_wav(self, text: str) -> bytes:
        with tempfile.NamedTemporaryFile(suffix='.wav', delete=False) as temp_file:
            filename = temp_file.name
        try:
            with self._lock:
                self.engine.save_to_file(text, filename)
                self.engine.runAndWait()
            with open(filename, 'rb') as f:
                return f.read()
        finally:
            try:
                os.unlink(filename)
            except OSError as e:
                logger.debug(f"Could not remove {filename}: {e}")

    async def synthesize(self, text: str, token: CancelToken) -> TTSResult:
        loop = asyncio.get_running_loop()
        if not await token.run(loop.run_in_executor(None, self.initialize)):
            raise SynthesisFailed("On-device synthesis unavailable")

        start_time = time.time()
        try:
            data = await token.run(loop.run_in_executor(None, self._render_wav, text))
            audio, sample_rate = decode_audio(data)
        except StoppedByUser:
            raise
        except Exception as e:
            raise SynthesisFailed(f"On-device synthesis failed: {e}", cause=e) from e

        return TTSResult(
            audio=audio,
            sample_rate=sample_rate,
            latency_ms=(time.time() - start_time) * 1000,
            text=text,
            source="local",
        )
