"""
Tests for microphone capture and VAD-driven utterance listening.
"""
import asyncio

import numpy as np
import pytest

from core.audio.capture import AudioCaptureSession, AudioConfig
from core.audio.listener import UtteranceListener
from core.audio.vad import FrameLevels, VoiceActivityDetector
from core.errors import DeviceError, StoppedByUser
from utils.cancellation import CancelToken

from conftest import InputStreamFactory, ScriptedSession, StepClock, silence_levels, speech_levels


def block(value=1000, n=1600):
    return np.full(n, value, dtype=np.int16)


class TestAudioCaptureSession:

    def test_open_and_close(self, input_factory):
        session = AudioCaptureSession(AudioConfig(sample_rate=16000), stream_factory=input_factory)

        session.open()
        assert session.is_open
        assert input_factory.current.started
        assert input_factory.current.config.chunk_size_samples == 1600

        session.close()
        assert not session.is_open
        assert input_factory.current.closed

    def test_open_failure_raises_device_error(self):
        session = AudioCaptureSession(stream_factory=InputStreamFactory(fail=True))

        with pytest.raises(DeviceError):
            session.open()
        assert not session.is_open

    def test_reopen_releases_previous_stream(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)

        session.open()
        session.open()

        assert len(input_factory.streams) == 2
        assert input_factory.streams[0].closed
        assert not input_factory.streams[1].closed

    def test_records_only_while_recording(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()

        input_factory.current.feed(block())
        session.start_recording()
        input_factory.current.feed(block())
        input_factory.current.feed(block())
        chunks = session.stop_recording(keep=True)

        assert len(chunks) == 2
        assert all(len(c.data) == 3200 for c in chunks)

    def test_discarded_recording_returns_none(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()
        session.start_recording()
        input_factory.current.feed(block())

        assert session.stop_recording(keep=False) is None
        assert session.stop_recording(keep=True) == []

    def test_trim_keeps_newest_chunks(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()
        session.start_recording()
        for value in range(1, 6):
            input_factory.current.feed(block(value))

        session.trim_recording(2)
        chunks = session.stop_recording()

        assert [np.frombuffer(c.data, dtype=np.int16)[0] for c in chunks] == [4, 5]

    def test_close_discards_buffered_audio(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()
        session.start_recording()
        input_factory.current.feed(block())

        session.close()

        assert not session.is_recording
        assert session.stop_recording() == []

    def test_levels_follow_input(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()

        assert session.read_level() == 0.0

        t = np.arange(2048) / 16000
        tone = (0.5 * np.sin(2 * np.pi * 800 * t) * 32767).astype(np.int16)
        input_factory.current.feed(tone)
        assert session.read_level() > 0.0

    def test_start_recording_requires_open(self):
        session = AudioCaptureSession(stream_factory=InputStreamFactory())
        with pytest.raises(DeviceError):
            session.start_recording()

    @pytest.mark.asyncio
    async def test_stream_chunks_yields_live_audio(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()
        token = CancelToken()
        received = []

        async def consume():
            async for data in session.stream_chunks(token):
                received.append(data)
                if len(received) == 2:
                    token.cancel()

        task = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        input_factory.current.feed(block(1))
        input_factory.current.feed(block(2))
        input_factory.current.feed(block(3))

        await asyncio.wait_for(task, timeout=1.0)
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_stream_chunks_ends_on_close(self, input_factory):
        session = AudioCaptureSession(stream_factory=input_factory)
        session.open()
        token = CancelToken()

        async def consume():
            return [data async for data in session.stream_chunks(token)]

        task = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        input_factory.current.feed(block())
        await asyncio.sleep(0)
        session.close()

        assert len(await asyncio.wait_for(task, timeout=1.0)) == 1


def make_listener(levels, adaptive=False, **kwargs):
    session = ScriptedSession(levels)
    detector = VoiceActivityDetector(adaptive=adaptive)
    listener = UtteranceListener(
        session, detector, poll_interval_s=0, calibration_ms=300, clock=StepClock(100), **kwargs
    )
    return listener, session


class TestUtteranceListener:

    @pytest.mark.asyncio
    async def test_returns_captured_utterance(self):
        levels = [speech_levels()] * 11 + [silence_levels()] * 10
        listener, session = make_listener(levels)

        captured = await listener.listen(CancelToken())

        assert session.is_open
        assert captured.detection.speech_ms == pytest.approx(1000)
        assert captured.buffer.size > 0
        assert not session.is_recording
        assert not listener.is_listening

    @pytest.mark.asyncio
    async def test_calibrates_once_when_adaptive(self):
        noisy = [FrameLevels(energy=0.1, speech_energy=0.2)] * 4
        levels = noisy + [speech_levels()] * 11 + [silence_levels()] * 20
        listener, _ = make_listener(levels, adaptive=True)

        assert not listener.detector.calibrated
        await asyncio.wait_for(listener.listen(CancelToken()), timeout=1.0)

        assert listener.detector.calibrated
        assert listener.detector.thresholds.energy_threshold == pytest.approx(0.15)

        # a second listen does not recalibrate
        listener.session.levels = [speech_levels()] * 11 + [silence_levels()] * 20
        await asyncio.wait_for(listener.listen(CancelToken()), timeout=1.0)
        assert listener.detector.thresholds.energy_threshold == pytest.approx(0.15)

    @pytest.mark.asyncio
    async def test_cancel_discards_recording(self):
        listener, session = make_listener([])
        token = CancelToken()
        task = asyncio.ensure_future(listener.listen(token))

        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(StoppedByUser):
            await task
        assert session.discarded == 1

    @pytest.mark.asyncio
    async def test_new_listen_replaces_running_one(self):
        listener, session = make_listener([])
        first = asyncio.ensure_future(listener.listen(CancelToken()))
        await asyncio.sleep(0.01)

        session.levels = [speech_levels()] * 11 + [silence_levels()] * 10
        captured = await asyncio.wait_for(listener.listen(CancelToken()), timeout=1.0)

        with pytest.raises(StoppedByUser):
            await first
        assert captured.detection is not None

    @pytest.mark.asyncio
    async def test_close_releases_microphone(self):
        listener, session = make_listener([])
        session.open()

        listener.close()

        assert not session.is_open
        assert session.closed == 1

    @pytest.mark.asyncio
    async def test_open_failure_propagates(self):
        session = ScriptedSession([], fail_open=True)
        listener = UtteranceListener(session, VoiceActivityDetector(adaptive=False), poll_interval_s=0)

        with pytest.raises(DeviceError):
            await listener.listen(CancelToken())
