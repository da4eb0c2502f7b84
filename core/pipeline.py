"""
Turn pipeline: transcription -> response generation -> speech synthesis.

Stages run strictly in order. Progress is reported after each stage so the
conversation layer can update the caption while later stages run. Any
stage failure aborts the remaining stages and surfaces as that stage's
error type; cancellation surfaces as StoppedByUser.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from agent.llm_client import ResponseGenerationClient
from core.audio.playback import PlaybackHandle
from core.errors import (
    GenerationFailed,
    PipelineStageError,
    StoppedByUser,
    SynthesisFailed,
    TranscriptionFailed,
)
from core.stt.client import TranscriptionClient, TranscriptionInput
from core.tts.synthesis import SpeechSynthesisClient
from utils.cancellation import CancelToken
from utils.events import PipelineProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PipelineProgress], None]


@dataclass
class PipelineResult:
    user_text: str
    assistant_text: str
    latency: Dict[str, float] = field(default_factory=dict)
    playback: Optional[PlaybackHandle] = None


class PipelineOrchestrator:
    """Runs one turn at a time through the three stages."""

    def __init__(self, transcription: TranscriptionClient,
                 generation: ResponseGenerationClient,
                 synthesis: SpeechSynthesisClient):
        self.transcription = transcription
        self.generation = generation
        self.synthesis = synthesis
        self.audio_enabled = True
        self._token: Optional[CancelToken] = None

    @property
    def is_running(self) -> bool:
        return self._token is not None

    def cancel(self) -> None:
        """Cancel the active run, if any."""
        if self._token is not None:
            self._token.cancel("pipeline cancelled")

    async def run(self, input: TranscriptionInput, history: List[Dict[str, str]],
                  token: Optional[CancelToken] = None,
                  on_progress: Optional[ProgressCallback] = None) -> PipelineResult:
        """
        Process one utterance end to end.

        Args:
            input: Recorded audio, or an already-final transcript
            history: Prior turns as chat messages, oldest first
            token: Parent cancellation token
            on_progress: Called after each stage with a PipelineProgress

        Returns:
            PipelineResult with both texts and per-stage latency in ms
        """
        run_token = CancelToken(parent=token)
        self._token = run_token
        report = on_progress or (lambda progress: None)
        latency: Dict[str, float] = {}
        started = time.time()

        try:
            stage_start = time.time()
            transcript = await self._stage(
                TranscriptionFailed, self.transcription.transcribe(input, run_token), run_token
            )
            latency["stt"] = (time.time() - stage_start) * 1000
            user_text = transcript.text.strip()
            report(PipelineProgress(stage="stt", text=user_text))

            stage_start = time.time()
            response = await self._stage(
                GenerationFailed,
                self.generation.get_response(user_text, history, run_token),
                run_token,
            )
            latency["ai"] = (time.time() - stage_start) * 1000
            assistant_text = response.content
            report(PipelineProgress(stage="ai", text=assistant_text))

            handle = None
            if self.audio_enabled:
                stage_start = time.time()
                handle = await self._stage(
                    SynthesisFailed, self.synthesis.speak(assistant_text, run_token), run_token
                )
                latency["tts"] = (time.time() - stage_start) * 1000
                report(PipelineProgress(stage="tts", text=assistant_text))

            latency["total"] = (time.time() - started) * 1000
            report(PipelineProgress(stage="complete", text=assistant_text, latency=dict(latency)))
            logger.info("Turn complete: " + ", ".join(f"{k}={v:.0f}ms" for k, v in latency.items()))
            return PipelineResult(user_text, assistant_text, latency, handle)
        finally:
            if self._token is run_token:
                self._token = None

    async def _stage(self, error_type, awaitable, token: CancelToken):
        try:
            result = await awaitable
        except StoppedByUser:
            raise
        except PipelineStageError as e:
            if token.cancelled:
                raise StoppedByUser(token.reason or "cancelled") from e
            raise
        except Exception as e:
            if token.cancelled:
                raise StoppedByUser(token.reason or "cancelled") from e
            logger.exception(f"Unexpected error in {error_type.stage} stage")
            raise error_type(str(e), cause=e) from e
        token.raise_if_cancelled()
        return result
