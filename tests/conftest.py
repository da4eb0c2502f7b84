"""
Shared fakes for the test suite.

Audio devices and network backends are replaced by in-process fakes so
the suite runs without PortAudio or network access.
"""
import asyncio
from typing import List, Optional

import numpy as np
import pytest

from core.audio.vad import FrameLevels
from core.errors import StoppedByUser
from utils.events import AudioBuffer


class FakeInputStream:
    """Stands in for sounddevice.RawInputStream."""

    def __init__(self, config, callback):
        self.config = config
        self.callback = callback
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True

    def feed(self, samples: np.ndarray):
        data = np.asarray(samples, dtype=np.int16).tobytes()
        self.callback(data, len(samples), None, None)


class FakeOutputStream:
    """Stands in for sounddevice.OutputStream; plays blocks_on_start blocks when started."""

    def __init__(self, sample_rate, channels, callback, blocks_on_start=1, block_size=512):
        self.sample_rate = sample_rate
        self.channels = channels
        self.callback = callback
        self.blocks_on_start = blocks_on_start
        self.block_size = block_size
        self.started = False
        self.closed = False

    def start(self):
        self.started = True
        for _ in range(self.blocks_on_start):
            self.pump()

    def pump(self, frames: Optional[int] = None):
        out = np.zeros((frames or self.block_size, self.channels), dtype=np.float32)
        self.callback(out, len(out), None, None)
        return out

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True


class OutputStreamFactory:
    def __init__(self, blocks_on_start=1, fail=False):
        self.blocks_on_start = blocks_on_start
        self.fail = fail
        self.streams: List[FakeOutputStream] = []

    def __call__(self, sample_rate, channels, callback):
        if self.fail:
            raise RuntimeError("no output device")
        stream = FakeOutputStream(sample_rate, channels, callback, self.blocks_on_start)
        self.streams.append(stream)
        return stream


class InputStreamFactory:
    def __init__(self, fail=False):
        self.fail = fail
        self.streams: List[FakeInputStream] = []

    def __call__(self, config, callback):
        if self.fail:
            raise OSError("PortAudio: no default input device")
        stream = FakeInputStream(config, callback)
        self.streams.append(stream)
        return stream

    @property
    def current(self) -> FakeInputStream:
        return self.streams[-1]


class ScriptedSession:
    """Capture session stand-in that replays scripted frame levels."""

    def __init__(self, levels: List[FrameLevels], chunk_bytes: int = 3200, fail_open=False):
        self.levels = list(levels)
        self.chunk_bytes = chunk_bytes
        self.fail_open = fail_open
        self.is_open = False
        self.is_recording = False
        self.recorded = 0
        self.discarded = 0
        self.closed = 0
        self.config = type("Cfg", (), {"sample_rate": 16000, "channels": 1})()

    def open(self):
        from core.errors import DeviceError
        if self.fail_open:
            raise DeviceError("Microphone unavailable")
        self.is_open = True

    def close(self):
        self.is_open = False
        self.closed += 1

    def read_levels(self) -> FrameLevels:
        if self.levels:
            level = self.levels.pop(0)
        else:
            level = FrameLevels(0.0, 0.0)
        if self.is_recording:
            self.recorded += 1
        return level

    def start_recording(self):
        self.is_recording = True
        self.recorded = 0

    def trim_recording(self, keep_last):
        pass

    def stop_recording(self, keep=True):
        self.is_recording = False
        if not keep:
            self.discarded += 1
            return None
        from utils.events import AudioChunk
        return [AudioChunk(b"\x00" * self.chunk_bytes) for _ in range(self.recorded)]

    async def stream_chunks(self, token):
        while not token.cancelled:
            await token.sleep(0.01)
            yield b"\x00" * self.chunk_bytes


class StepClock:
    """Clock that advances a fixed step on every read."""

    def __init__(self, step_ms: float = 100.0):
        self.now = 0.0
        self.step_ms = step_ms

    def __call__(self) -> float:
        self.now += self.step_ms
        return self.now


class FakeHandle:
    def __init__(self):
        self.finished = asyncio.Event()
        self.duration_s = 1.0

    @property
    def is_playing(self):
        return not self.finished.is_set()


class FakeSynthesis:
    """SpeechSynthesisClient stand-in recording what was spoken."""

    def __init__(self, fail=None, block=False):
        self.spoken: List[str] = []
        self.stop_calls = 0
        self.fail = fail
        self.block = block
        self.handle: Optional[FakeHandle] = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_speaking(self):
        return self.handle is not None and self.handle.is_playing

    async def speak(self, text, token=None):
        self.spoken.append(text)
        if self.fail is not None:
            raise self.fail
        if self.block:
            self._pending = asyncio.get_running_loop().create_future()
            await self._pending
        self.handle = FakeHandle()
        self.handle.finished.set()
        return self.handle

    def stop(self):
        self.stop_calls += 1
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(StoppedByUser("speech stopped"))
        if self.handle is not None:
            self.handle.finished.set()

    async def wait_until_done(self):
        if self.handle is not None:
            await self.handle.finished.wait()


def speech_levels() -> FrameLevels:
    return FrameLevels(energy=0.4, speech_energy=0.5)


def silence_levels() -> FrameLevels:
    return FrameLevels(energy=0.0, speech_energy=0.0)


def make_buffer(size: int = 16000) -> AudioBuffer:
    return AudioBuffer(data=b"\x01\x00" * (size // 2))


@pytest.fixture
def output_factory():
    return OutputStreamFactory()


@pytest.fixture
def input_factory():
    return InputStreamFactory()
