"""
Binds a capture session to the voice activity detector.

listen() records from the microphone until the detector reports the end of
an utterance and returns the recorded audio. Only one listen runs at a time.
"""

import logging
import time
from typing import Callable, Optional

from core.audio.capture import AudioCaptureSession
from core.audio.vad import VADState, VoiceActivityDetector
from core.errors import StoppedByUser
from utils.cancellation import CancelToken
from utils.events import AudioBuffer, CapturedUtterance
from utils.metrics import timer

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class UtteranceListener:
    """VAD-driven utterance capture over an AudioCaptureSession."""

    def __init__(self, session: AudioCaptureSession, detector: VoiceActivityDetector,
                 poll_interval_s: float = 1 / 60, calibration_ms: float = 1000,
                 pre_roll_chunks: int = 5, clock: Callable[[], float] = _monotonic_ms):
        self.session = session
        self.detector = detector
        self.poll_interval_s = poll_interval_s
        self.calibration_ms = calibration_ms
        self.pre_roll_chunks = pre_roll_chunks
        self.clock = clock
        self.level = 0.0
        self._token: Optional[CancelToken] = None

    @property
    def is_listening(self) -> bool:
        return self._token is not None and not self._token.cancelled

    async def calibrate(self, token: CancelToken) -> None:
        """Sample ambient levels for calibration_ms and adapt the thresholds."""
        logger.info(f"Calibrating for ambient noise ({self.calibration_ms:.0f}ms)")
        samples = []
        with timer("calibration"):
            started = self.clock()
            while self.clock() - started < self.calibration_ms:
                samples.append(self.session.read_levels())
                await token.sleep(self.poll_interval_s)
        self.detector.calibrate(samples)

    async def listen(self, token: Optional[CancelToken] = None) -> CapturedUtterance:
        """Record until one utterance is detected. Raises StoppedByUser on cancel."""
        if self._token is not None:
            logger.debug("Listen already in progress, discarding it")
            self.stop()

        token = CancelToken(parent=token)
        self._token = token

        try:
            if not self.session.is_open:
                self.session.open()
            if self.detector.adaptive and not self.detector.calibrated:
                await self.calibrate(token)

            self.detector.reset()
            self.session.start_recording()
            while True:
                token.raise_if_cancelled()
                levels = self.session.read_levels()
                self.level = levels.energy
                event = self.detector.process(levels, self.clock())
                if event is not None:
                    chunks = self.session.stop_recording(keep=True) or []
                    buffer = AudioBuffer.from_chunks(
                        chunks,
                        sample_rate=self.session.config.sample_rate,
                        channels=self.session.config.channels,
                    )
                    return CapturedUtterance(buffer=buffer, detection=event)
                if self.detector.state is VADState.SILENT:
                    self.session.trim_recording(self.pre_roll_chunks)
                await token.sleep(self.poll_interval_s)
        except StoppedByUser:
            # a replacing listen already discarded this recording and owns the session now
            if self._token is token:
                self.session.stop_recording(keep=False)
            raise
        finally:
            self.level = 0.0
            if self._token is token:
                self._token = None

    def stop(self) -> None:
        """Cancel the current listen and discard its recording."""
        token, self._token = self._token, None
        if token is not None:
            token.cancel("listening stopped")
        if self.session.is_recording:
            self.session.stop_recording(keep=False)
        self.detector.reset()

    def close(self) -> None:
        self.stop()
        self.session.close()
