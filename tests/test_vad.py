"""
Tests for frame analysis and voice activity detection.
"""
import numpy as np
import pytest

from core.audio.vad import (
    FrameAnalyzer,
    FrameLevels,
    VADProfile,
    VADState,
    VADThresholds,
    VoiceActivityDetector,
)

SPEECH = FrameLevels(energy=0.4, speech_energy=0.5)
SILENCE = FrameLevels(energy=0.0, speech_energy=0.0)


def run_frames(vad, frames, step_ms=100, start_ms=0):
    """Feed (levels, count) pairs; return emitted events with their timestamps."""
    events = []
    now = start_ms
    for levels, count in frames:
        for _ in range(count):
            now += step_ms
            event = vad.process(levels, now)
            if event is not None:
                events.append(event)
    return events


class TestFrameAnalyzer:

    def test_silence_has_no_energy(self):
        analyzer = FrameAnalyzer()
        levels = analyzer.analyze(np.zeros(2048, dtype=np.int16))

        assert levels.energy == 0.0
        assert levels.speech_energy == 0.0

    def test_speech_band_tone_raises_speech_energy(self):
        analyzer = FrameAnalyzer()
        t = np.arange(2048) / 16000
        tone = (0.5 * np.sin(2 * np.pi * 1000 * t) * 32767).astype(np.int16)

        for _ in range(20):  # let smoothing converge
            levels = analyzer.analyze(tone)

        assert levels.speech_energy > levels.energy > 0.0

    def test_out_of_band_tone_favours_overall_energy(self):
        analyzer = FrameAnalyzer()
        t = np.arange(2048) / 16000
        tone = (0.5 * np.sin(2 * np.pi * 6000 * t) * 32767).astype(np.int16)

        for _ in range(20):
            levels = analyzer.analyze(tone)

        assert levels.energy > 0.0
        assert levels.speech_energy < levels.energy

    def test_speech_band_bins(self):
        analyzer = FrameAnalyzer(sample_rate=16000, fft_size=2048)

        # 7.8125 Hz per bin
        assert analyzer.speech_start_bin == 38
        assert analyzer.speech_end_bin == 435

    def test_short_frames_are_padded(self):
        analyzer = FrameAnalyzer()
        levels = analyzer.analyze(np.zeros(100, dtype=np.int16))
        assert levels.energy == 0.0


class TestVoiceActivityDetector:

    def test_profile_defaults(self):
        desktop = VADProfile.DESKTOP.defaults()
        mobile = VADProfile.MOBILE.defaults()

        assert (desktop.energy_threshold, desktop.speech_frequency_threshold) == (0.05, 0.15)
        assert (desktop.silence_threshold_ms, desktop.min_speech_duration_ms) == (800, 600)
        assert mobile.energy_threshold == 0.03
        assert mobile.silence_threshold_ms == 1200

    def test_emits_after_speech_then_silence(self):
        vad = VoiceActivityDetector(adaptive=False)

        # 1s of speech, then 1s of silence
        events = run_frames(vad, [(SPEECH, 11), (SILENCE, 10)])

        assert len(events) == 1
        assert events[0].speech_ms == pytest.approx(1000)
        assert not events[0].forced
        assert vad.state is VADState.SILENT

    def test_utterance_of_1200ms_with_900ms_pause(self):
        vad = VoiceActivityDetector(adaptive=False)

        events = run_frames(vad, [(SPEECH, 13), (SILENCE, 9)])

        assert len(events) == 1
        assert events[0].speech_ms == pytest.approx(1200)
        assert not events[0].forced

    def test_silence_threshold_measured_from_last_speech(self):
        vad = VoiceActivityDetector(adaptive=False)

        events = run_frames(vad, [(SPEECH, 11), (SILENCE, 7)])
        assert events == []
        events = run_frames(vad, [(SILENCE, 1)], start_ms=1800)
        assert len(events) == 1

    def test_short_burst_is_noise(self):
        vad = VoiceActivityDetector(adaptive=False)

        # 300ms of "speech" is below the 600ms minimum
        events = run_frames(vad, [(SPEECH, 4), (SILENCE, 10)])

        assert events == []
        assert vad.state is VADState.SILENT

    def test_speech_duration_excludes_trailing_silence(self):
        vad = VoiceActivityDetector(adaptive=False)

        # 500ms speech then 800ms silence: now - start would be 1300ms,
        # but only 500ms was speech, so this is noise
        events = run_frames(vad, [(SPEECH, 6), (SILENCE, 10)])

        assert events == []

    def test_requires_both_thresholds(self):
        vad = VoiceActivityDetector(adaptive=False)

        loud_hum = FrameLevels(energy=0.4, speech_energy=0.05)
        faint_voice = FrameLevels(energy=0.01, speech_energy=0.5)

        assert not vad.is_speech(loud_hum)
        assert not vad.is_speech(faint_voice)
        assert vad.is_speech(SPEECH)

        events = run_frames(vad, [(loud_hum, 20), (faint_voice, 20), (SILENCE, 10)])
        assert events == []

    def test_forced_emit_at_max_length(self):
        vad = VoiceActivityDetector(adaptive=False)

        events = run_frames(vad, [(SPEECH, 305)])

        assert len(events) == 1
        assert events[0].forced
        assert events[0].speech_ms >= 30000

    def test_pause_shorter_than_threshold_continues_segment(self):
        vad = VoiceActivityDetector(adaptive=False)

        events = run_frames(vad, [(SPEECH, 5), (SILENCE, 5), (SPEECH, 5), (SILENCE, 10)])

        assert len(events) == 1
        assert events[0].speech_ms == pytest.approx(1400)


class TestCalibration:

    def test_noisy_room_raises_thresholds(self):
        vad = VoiceActivityDetector()
        noise = [FrameLevels(energy=0.1, speech_energy=0.2)] * 10

        thresholds = vad.calibrate(noise)

        assert thresholds.energy_threshold == pytest.approx(0.15)
        assert thresholds.speech_frequency_threshold == pytest.approx(0.26)
        assert vad.calibrated

    def test_floors_apply(self):
        vad = VoiceActivityDetector()
        noise = [FrameLevels(energy=0.021, speech_energy=0.05)] * 10

        thresholds = vad.calibrate(noise)

        assert thresholds.energy_threshold == pytest.approx(0.0315)
        assert thresholds.speech_frequency_threshold == pytest.approx(0.12)

    def test_quiet_room_uses_defaults(self):
        vad = VoiceActivityDetector(profile=VADProfile.MOBILE)
        vad.thresholds = VADThresholds(energy_threshold=0.5)

        thresholds = vad.calibrate([FrameLevels(energy=0.01, speech_energy=0.01)] * 10)

        assert thresholds == VADProfile.MOBILE.defaults()

    def test_calibration_keeps_timing_thresholds(self):
        custom = VADThresholds(silence_threshold_ms=1500, min_speech_duration_ms=400)
        vad = VoiceActivityDetector(thresholds=custom)

        thresholds = vad.calibrate([FrameLevels(energy=0.2, speech_energy=0.2)] * 5)

        assert thresholds.silence_threshold_ms == 1500
        assert thresholds.min_speech_duration_ms == 400
