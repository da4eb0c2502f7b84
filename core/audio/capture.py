"""
Microphone capture session.

Callback-based capture using sounddevice.RawInputStream. The audio thread
keeps a rolling analysis window for level metering, appends chunks while a
recording is active, and fans live chunks out to streaming consumers on
the event loop.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

import numpy as np

from core.audio.vad import FrameAnalyzer, FrameLevels
from core.errors import DeviceError
from utils.cancellation import CancelToken
from utils.events import AudioChunk

logger = logging.getLogger(__name__)


@dataclass
class AudioConfig:
    """Capture configuration."""
    sample_rate: int = 16000
    channels: int = 1
    dtype: str = 'int16'  # PCM 16-bit
    chunk_size_ms: int = 100
    analysis_window: int = 2048  # samples used for level metering
    device: Optional[int] = None  # default input device

    @property
    def chunk_size_samples(self) -> int:
        return int(self.sample_rate * self.chunk_size_ms / 1000)


StreamFactory = Callable[[AudioConfig, Callable], object]


def sounddevice_input_stream(config: AudioConfig, callback: Callable):
    """Open a raw PortAudio input stream."""
    import sounddevice as sd

    return sd.RawInputStream(
        samplerate=config.sample_rate,
        channels=config.channels,
        dtype=config.dtype,
        blocksize=config.chunk_size_samples,
        device=config.device,
        callback=callback,
    )


class AudioCaptureSession:
    """
    Owns the microphone for the lifetime of a conversation.

    Only one stream is open at a time; open() on an already-open session
    releases the previous stream first. Device failures surface as
    DeviceError.
    """

    def __init__(self, config: Optional[AudioConfig] = None,
                 stream_factory: Optional[StreamFactory] = None,
                 analyzer: Optional[FrameAnalyzer] = None):
        self.config = config or AudioConfig()
        self._stream_factory = stream_factory or sounddevice_input_stream
        self.analyzer = analyzer or FrameAnalyzer(
            sample_rate=self.config.sample_rate, fft_size=self.config.analysis_window
        )

        self._lock = threading.Lock()
        self._stream = None
        self._window = np.zeros(self.config.analysis_window, dtype=np.int16)
        self._chunks: List[AudioChunk] = []
        self._recording = False
        self._subscribers: List[asyncio.Queue] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def is_recording(self) -> bool:
        return self._recording

    def open(self) -> None:
        """Acquire the microphone."""
        if self._stream is not None:
            logger.debug("Capture already open, releasing previous stream")
            self.close()

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        try:
            stream = self._stream_factory(self.config, self._audio_callback)
            stream.start()
        except Exception as e:
            logger.error(f"Failed to open microphone: {e}")
            raise DeviceError(f"Microphone unavailable: {e}") from e

        self._stream = stream
        self.analyzer.reset()
        logger.info(f"Microphone open ({self.config.sample_rate}Hz, {self.config.channels}ch)")

    def close(self) -> None:
        """Release the microphone and discard any buffered audio."""
        stream, self._stream = self._stream, None
        with self._lock:
            self._recording = False
            self._chunks = []
            self._window[:] = 0
        self._end_subscribers()

        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing microphone stream: {e}")
        logger.info("Microphone released")

    def _audio_callback(self, indata, frames, time_info, status):
        """PortAudio callback; runs on the audio thread and must stay fast."""
        if status:
            logger.debug(f"Audio callback status: {status}")

        data = bytes(indata)
        samples = np.frombuffer(data, dtype=np.int16)
        with self._lock:
            n = min(len(samples), len(self._window))
            self._window = np.roll(self._window, -n)
            self._window[-n:] = samples[-n:]
            if self._recording:
                self._chunks.append(AudioChunk(data=data, timestamp=time.time()))
            subscribers = list(self._subscribers)

        if subscribers and self._loop is not None:
            for queue in subscribers:
                self._loop.call_soon_threadsafe(queue.put_nowait, data)

    def read_levels(self) -> FrameLevels:
        """Levels over the most recent analysis window."""
        with self._lock:
            window = self._window.copy()
        return self.analyzer.analyze(window)

    def read_level(self) -> float:
        """Overall input energy in 0..1."""
        return self.read_levels().energy

    def start_recording(self) -> None:
        if self._stream is None:
            raise DeviceError("Microphone is not open")
        with self._lock:
            self._chunks = []
            self._recording = True

    def stop_recording(self, keep: bool = True) -> Optional[List[AudioChunk]]:
        """Stop recording. Returns the chunks when keep is set, None when discarded."""
        with self._lock:
            chunks, self._chunks = self._chunks, []
            self._recording = False
        if not keep:
            logger.debug(f"Discarded {len(chunks)} recorded chunks")
            return None
        return chunks

    def trim_recording(self, keep_last: int) -> None:
        """Drop all but the newest keep_last chunks (pre-roll while no one is talking)."""
        with self._lock:
            if len(self._chunks) > keep_last:
                del self._chunks[:len(self._chunks) - keep_last]

    async def stream_chunks(self, token: CancelToken) -> AsyncIterator[bytes]:
        """Yield live chunk bytes until the token is cancelled or the session closes."""
        if self._stream is None:
            raise DeviceError("Microphone is not open")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.append(queue)
        try:
            while not token.cancelled:
                data = await token.run(queue.get())
                if data is None:
                    return
                yield data
        finally:
            with self._lock:
                if queue in self._subscribers:
                    self._subscribers.remove(queue)

    def _end_subscribers(self) -> None:
        with self._lock:
            subscribers, self._subscribers = self._subscribers, []
        for queue in subscribers:
            queue.put_nowait(None)
