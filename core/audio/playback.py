"""
Audio playback with single-output ownership.

The PlaybackManager is the only component that opens output streams. Every
play() stops whatever it started before, so two outputs never overlap, and
it resolves as soon as the first block reaches the device (audible onset)
rather than when playback completes.
"""

import asyncio
import io
import itertools
import logging
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy.io import wavfile

from core.errors import DeviceError, StoppedByUser
from utils.cancellation import CancelToken

logger = logging.getLogger(__name__)

OutputStreamFactory = Callable[[int, int, Callable], object]

_handle_ids = itertools.count(1)


def sounddevice_output_stream(sample_rate: int, channels: int, callback: Callable):
    """Open a float32 PortAudio output stream."""
    import sounddevice as sd

    return sd.OutputStream(
        samplerate=sample_rate,
        channels=channels,
        dtype='float32',
        callback=callback,
    )


def prepare_audio(audio: np.ndarray) -> np.ndarray:
    """Convert integer PCM to mono float32 in [-1, 1]."""
    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    elif audio.dtype == np.int32:
        audio = audio.astype(np.float32) / 2147483648.0
    elif audio.dtype == np.uint8:
        audio = (audio.astype(np.float32) - 128.0) / 128.0
    else:
        audio = audio.astype(np.float32)

    if audio.ndim > 1:
        audio = np.mean(audio, axis=1)
    return audio


def decode_audio(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode WAV bytes into (mono float32 samples, sample_rate)."""
    sample_rate, audio = wavfile.read(io.BytesIO(data))
    return prepare_audio(audio), int(sample_rate)


class PlaybackHandle:
    """One playing sound. stop() is idempotent."""

    def __init__(self, samples: np.ndarray, sample_rate: int,
                 loop: asyncio.AbstractEventLoop):
        self.id = next(_handle_ids)
        self.samples = samples
        self.sample_rate = sample_rate
        self._loop = loop
        self._position = 0
        self._stream = None
        self.onset: asyncio.Future = loop.create_future()
        self.finished = asyncio.Event()
        self.stopped = False

    @property
    def duration_s(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0

    @property
    def is_playing(self) -> bool:
        return not self.finished.is_set()

    def attach(self, stream) -> None:
        self._stream = stream

    def callback(self, outdata, frames, time_info, status):
        """PortAudio callback; runs on the audio thread."""
        if status:
            logger.debug(f"Playback status: {status}")
        if self.stopped:
            outdata.fill(0)
            return

        start = self._position
        block = self.samples[start:start + frames]
        outdata.fill(0)
        outdata[:len(block), 0] = block
        self._position = start + len(block)

        if start == 0:
            self._loop.call_soon_threadsafe(self._mark_onset)
        if self._position >= len(self.samples):
            self._loop.call_soon_threadsafe(self._complete)

    def _mark_onset(self) -> None:
        if not self.onset.done():
            self.onset.set_result(self)

    def _complete(self) -> None:
        if self.finished.is_set():
            return
        self._release()
        self.finished.set()

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self._release()
        if not self.onset.done():
            self.onset.set_exception(StoppedByUser("playback stopped"))
            # Mark retrieved; nobody may be awaiting a stopped handle.
            self.onset.exception()
        self.finished.set()

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing output stream: {e}")

    async def wait_done(self) -> None:
        await self.finished.wait()


class PlaybackManager:
    """
    Owns every output stream opened by the agent.

    Injected into the synthesis clients instead of living in a global
    registry.
    """

    def __init__(self, stream_factory: Optional[OutputStreamFactory] = None,
                 onset_timeout_s: float = 5.0):
        self._stream_factory = stream_factory or sounddevice_output_stream
        self.onset_timeout_s = onset_timeout_s
        self._handles: List[PlaybackHandle] = []

    @property
    def active_handles(self) -> List[PlaybackHandle]:
        self._handles = [h for h in self._handles if h.is_playing]
        return list(self._handles)

    @property
    def is_playing(self) -> bool:
        return bool(self.active_handles)

    async def play(self, samples: np.ndarray, sample_rate: int,
                   token: Optional[CancelToken] = None) -> PlaybackHandle:
        """Start playback and return once it is audible."""
        self.stop_all()
        if token is not None:
            token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        handle = PlaybackHandle(prepare_audio(np.asarray(samples)), sample_rate, loop)
        if len(handle.samples) == 0:
            handle._mark_onset()
            handle._complete()
            return handle

        try:
            stream = self._stream_factory(sample_rate, 1, handle.callback)
            handle.attach(stream)
            stream.start()
        except Exception as e:
            handle.stop()
            raise DeviceError(f"Audio output unavailable: {e}") from e
        self._handles.append(handle)
        logger.debug(f"Playback {handle.id} started ({handle.duration_s:.1f}s)")

        onset = asyncio.wait_for(asyncio.shield(handle.onset), timeout=self.onset_timeout_s)
        try:
            if token is not None:
                await token.run(onset)
            else:
                await onset
        except StoppedByUser:
            handle.stop()
            raise
        except asyncio.TimeoutError as e:
            handle.stop()
            raise DeviceError("Audio output never started") from e
        return handle

    def stop_all(self) -> None:
        """Stop every handle this manager created."""
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.stop()
        if handles:
            logger.debug(f"Stopped {len(handles)} playback(s)")
