"""
Voice Activity Detection with adaptive noise thresholds.

Frame levels are computed the way a browser analyser node reports them:
a Blackman-windowed 2048-point FFT, temporally smoothed, mapped from the
[-100, -30] dB range onto bytes 0..255. Two features drive the detector:
overall energy (mean over all bins) and speech-band energy (mean over the
300-3400 Hz bins). A frame counts as speech only when both exceed their
thresholds.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from utils.events import UtteranceDetected

logger = logging.getLogger(__name__)

MAX_SPEECH_MS = 30000
SPEECH_BAND_HZ = (300.0, 3400.0)
CALIBRATION_NOISE_FLOOR = 0.02


@dataclass
class VADThresholds:
    energy_threshold: float = 0.05
    speech_frequency_threshold: float = 0.15
    silence_threshold_ms: float = 800
    min_speech_duration_ms: float = 600


class VADProfile(Enum):
    """Device profiles differ only in their default thresholds."""
    DESKTOP = "desktop"
    MOBILE = "mobile"

    def defaults(self) -> VADThresholds:
        if self is VADProfile.MOBILE:
            return VADThresholds(
                energy_threshold=0.03,
                speech_frequency_threshold=0.15,
                silence_threshold_ms=1200,
                min_speech_duration_ms=600,
            )
        return VADThresholds()


@dataclass
class FrameLevels:
    """Normalized (0..1) levels for one analysis frame."""
    energy: float
    speech_energy: float


class FrameAnalyzer:
    """Computes FrameLevels from the most recent fft_size samples."""

    def __init__(self, sample_rate: int = 16000, fft_size: int = 2048,
                 smoothing: float = 0.8, min_db: float = -100.0, max_db: float = -30.0):
        self.sample_rate = sample_rate
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self._window = np.blackman(fft_size).astype(np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)

        bin_width = sample_rate / fft_size
        self.speech_start_bin = int(np.floor(SPEECH_BAND_HZ[0] / bin_width))
        self.speech_end_bin = min(int(np.floor(SPEECH_BAND_HZ[1] / bin_width)), fft_size // 2)

    def reset(self) -> None:
        self._smoothed[:] = 0.0

    def byte_spectrum(self, samples: np.ndarray) -> np.ndarray:
        """Smoothed byte-scaled magnitude spectrum for the newest frame."""
        samples = np.asarray(samples)
        if np.issubdtype(samples.dtype, np.integer):
            frame = samples.astype(np.float32) / 32768.0
        else:
            frame = samples.astype(np.float32)
        if len(frame) >= self.fft_size:
            frame = frame[-self.fft_size:]
        else:
            frame = np.pad(frame, (self.fft_size - len(frame), 0))

        spectrum = np.abs(np.fft.rfft(frame * self._window))[: self.fft_size // 2] / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * spectrum

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        scaled = (db - self.min_db) * (255.0 / (self.max_db - self.min_db))
        return np.clip(np.floor(np.nan_to_num(scaled, neginf=0.0)), 0, 255)

    def analyze(self, samples: np.ndarray) -> FrameLevels:
        spectrum = self.byte_spectrum(samples)
        energy = float(spectrum.mean() / 255.0)
        band = spectrum[self.speech_start_bin:self.speech_end_bin]
        width = self.speech_end_bin - self.speech_start_bin
        speech_energy = float(band.sum() / width / 255.0) if width > 0 else 0.0
        return FrameLevels(energy=energy, speech_energy=speech_energy)


class VADState(Enum):
    SILENT = "silent"
    SPEAKING = "speaking"


class VoiceActivityDetector:
    """
    Segments a stream of frame levels into utterances.

    Feed frames with process(); it returns an UtteranceDetected when a
    segment ends with enough speech, and None otherwise. Segments shorter
    than min_speech_duration_ms are treated as noise and dropped.
    """

    def __init__(self, profile: VADProfile = VADProfile.DESKTOP,
                 thresholds: Optional[VADThresholds] = None,
                 adaptive: bool = True, max_speech_ms: float = MAX_SPEECH_MS):
        self.profile = profile
        self.defaults = thresholds or profile.defaults()
        self.thresholds = replace(self.defaults)
        self.adaptive = adaptive
        self.max_speech_ms = max_speech_ms
        self.calibrated = False
        self.reset()

    def reset(self) -> None:
        self.state = VADState.SILENT
        self.speech_start_ms: Optional[float] = None
        self.last_speech_ms: Optional[float] = None

    def is_speech(self, levels: FrameLevels) -> bool:
        return (levels.energy > self.thresholds.energy_threshold
                and levels.speech_energy > self.thresholds.speech_frequency_threshold)

    def process(self, levels: FrameLevels, now_ms: float) -> Optional[UtteranceDetected]:
        if self.is_speech(levels):
            if self.state is VADState.SILENT:
                self.state = VADState.SPEAKING
                self.speech_start_ms = now_ms
                logger.debug(f"Speech started (energy={levels.energy:.3f}, speech={levels.speech_energy:.3f})")
            self.last_speech_ms = now_ms
        elif self.state is VADState.SPEAKING and self.last_speech_ms is not None:
            silence_ms = now_ms - self.last_speech_ms
            if silence_ms >= self.thresholds.silence_threshold_ms:
                speech_ms = self.last_speech_ms - self.speech_start_ms
                if speech_ms >= self.thresholds.min_speech_duration_ms:
                    return self._emit(now_ms, speech_ms, forced=False)
                logger.debug(f"Discarding {speech_ms:.0f}ms segment as noise")
                self.reset()
                return None

        if self.state is VADState.SPEAKING and self.speech_start_ms is not None:
            if now_ms - self.speech_start_ms >= self.max_speech_ms:
                return self._emit(now_ms, now_ms - self.speech_start_ms, forced=True)
        return None

    def _emit(self, now_ms: float, speech_ms: float, forced: bool) -> UtteranceDetected:
        event = UtteranceDetected(
            started_ms=self.speech_start_ms,
            ended_ms=now_ms,
            speech_ms=speech_ms,
            forced=forced,
        )
        logger.info(f"Utterance detected: {speech_ms:.0f}ms of speech{' (max length)' if forced else ''}")
        self.reset()
        return event

    def calibrate(self, samples: Iterable[FrameLevels]) -> VADThresholds:
        """Adapt thresholds to ambient noise sampled while the user is silent."""
        levels = list(samples)
        self.calibrated = True
        if not levels:
            self.thresholds = replace(self.defaults)
            return self.thresholds

        avg_energy = sum(level.energy for level in levels) / len(levels)
        avg_speech = sum(level.speech_energy for level in levels) / len(levels)

        if avg_energy > CALIBRATION_NOISE_FLOOR:
            self.thresholds = replace(
                self.defaults,
                energy_threshold=max(0.03, avg_energy * 1.5),
                speech_frequency_threshold=max(0.12, avg_speech * 1.3),
            )
            logger.info(f"Calibrated for noisy room: energy>{self.thresholds.energy_threshold:.3f}, "
                        f"speech>{self.thresholds.speech_frequency_threshold:.3f}")
        else:
            self.thresholds = replace(self.defaults)
            logger.info("Quiet room, using default thresholds")
        return self.thresholds
