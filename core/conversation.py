"""
Conversation state machine.

IDLE -> LISTENING -> PROCESSING -> SPEAKING -> WAITING -> LISTENING ...

Owns the conversation history and the session cancel token. Utterances
that arrive while a turn is in flight are dropped, never queued. stop()
works from any state and runs every cleanup step even when an earlier
one fails.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from agent.memory import ConversationHistory, ConversationTurn
from core.audio.listener import UtteranceListener
from core.errors import (
    DeviceError,
    NoSpeechDetected,
    PipelineStageError,
    StoppedByUser,
    SynthesisFailed,
    TranscriptionFailed,
    TranscriptionUnavailable,
)
from core.pipeline import PipelineOrchestrator
from core.stt.client import TranscriptionInput
from core.tts.synthesis import SpeechSynthesisClient
from utils.cancellation import CancelToken
from utils.display import TypewriterDisplay
from utils.events import AudioBuffer, PipelineProgress
from utils.metrics import record_turn

logger = logging.getLogger(__name__)

WELCOME_MESSAGES = [
    "Hey there! How can I help you today?",
    "Hi! What can I do for you?",
    "Hello! How can I assist you?",
    "Hey! What would you like to know?",
]

ERROR_MESSAGE = "Sorry, something went wrong. Please try again."


class ConversationState(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    SPEAKING = "SPEAKING"
    WAITING = "WAITING"


@dataclass
class ConversationTimings:
    """Delays (seconds) and guards used between states."""
    min_utterance_bytes: int = 5000
    tiny_buffer_resume_s: float = 0.5
    resume_after_speech_s: float = 0.5
    resume_after_text_s: float = 1.0
    error_resume_s: float = 2.0
    waiting_s: float = 0.2
    char_delay_s: float = 0.06


class ConversationStateMachine:
    """
    Drives listening, turn processing and speaking for one conversation.

    Without a listener the conversation is text-driven: the caller feeds
    handle_utterance() directly.
    """

    def __init__(self, pipeline: PipelineOrchestrator, synthesis: SpeechSynthesisClient,
                 listener: Optional[UtteranceListener] = None,
                 history: Optional[ConversationHistory] = None,
                 timings: Optional[ConversationTimings] = None,
                 streaming: bool = False, barge_in: bool = True, audio_enabled: bool = True,
                 greet: bool = True, welcome_messages: Optional[List[str]] = None,
                 on_state_change: Optional[Callable[["ConversationState"], None]] = None,
                 on_display: Optional[Callable[[str], None]] = None,
                 rng: Optional[random.Random] = None):
        self.pipeline = pipeline
        self.synthesis = synthesis
        self.listener = listener
        self.history = history or ConversationHistory()
        self.timings = timings or ConversationTimings()
        self.streaming = streaming
        self.barge_in = barge_in
        self.greet = greet
        self.welcome_messages = welcome_messages or WELCOME_MESSAGES
        self.on_state_change = on_state_change
        self.display = TypewriterDisplay(on_display, self.timings.char_delay_s)
        self._rng = rng or random.Random()

        self.state = ConversationState.IDLE
        self.error: Optional[str] = None
        self.is_active = False
        self._audio_enabled = audio_enabled
        self.pipeline.audio_enabled = audio_enabled
        self._processing = False
        self._session: Optional[CancelToken] = None
        self._current_turn: Optional[ConversationTurn] = None
        self._tasks: Set[asyncio.Task] = set()
        self.dropped_utterances = 0

    # Properties

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    @property
    def display_text(self) -> str:
        return self.display.text

    @property
    def audio_level(self) -> float:
        return self.listener.level if self.listener is not None else 0.0

    @property
    def is_processing(self) -> bool:
        return self._processing

    def _session_ended(self) -> bool:
        return not self.is_active or self._session is None or self._session.cancelled

    def _set_state(self, state: ConversationState) -> None:
        if state is self.state:
            return
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Lifecycle

    async def start(self) -> bool:
        """Greet the user and start listening. Returns False if the microphone is unavailable."""
        if self.is_active:
            return True

        self.error = None
        self._session = CancelToken()
        self.is_active = True
        self._processing = False

        if self.listener is not None:
            try:
                self.listener.session.open()
            except DeviceError as e:
                logger.error(f"Cannot start conversation: {e}")
                self.error = str(e)
                self.is_active = False
                self._set_state(ConversationState.IDLE)
                return False

        try:
            if self.greet:
                await self._greet()
        except StoppedByUser:
            if self._session_ended():
                logger.debug("Stopped during greeting")
                return False
            logger.debug("Greeting silenced")

        if not self.is_active:
            return False
        self._set_state(ConversationState.LISTENING)
        self._start_listening()
        return True

    async def _greet(self) -> None:
        greeting = self._rng.choice(self.welcome_messages)
        self.display.show(greeting)
        if not self._audio_enabled:
            return

        self._set_state(ConversationState.SPEAKING)
        try:
            await self.synthesis.speak(greeting, self._session)
            await self._session.run(self.synthesis.wait_until_done())
        except SynthesisFailed as e:
            logger.warning(f"Greeting could not be spoken: {e}")

    def stop(self) -> None:
        """Stop everything and return to IDLE. Each step runs even if an earlier one fails."""
        logger.info("Stopping conversation")
        self.is_active = False

        steps = [
            ("stop speech", self.synthesis.stop),
            ("cancel pipeline", self.pipeline.cancel),
            ("stop listening", self._stop_listening),
            ("cancel typing", self.display.cancel),
            ("clear display", self.display.clear),
        ]
        for name, step in steps:
            try:
                step()
            except Exception:
                logger.exception(f"Cleanup step failed: {name}")

        self._processing = False
        self._current_turn = None
        self._set_state(ConversationState.IDLE)

    def _stop_listening(self) -> None:
        if self._session is not None:
            self._session.cancel("conversation stopped")
        if self.listener is not None:
            self.listener.close()

    async def wait_closed(self) -> None:
        """Wait for background tasks to settle after stop()."""
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def toggle_audio(self) -> bool:
        """Silence any reply in progress and flip audio output. Returns the new setting."""
        self.synthesis.stop()
        self._audio_enabled = not self._audio_enabled
        self.pipeline.audio_enabled = self._audio_enabled
        logger.info(f"Audio {'enabled' if self._audio_enabled else 'disabled'}")
        return self._audio_enabled

    # Listening

    def _start_listening(self) -> None:
        if self.listener is None or not self.is_active:
            return
        self._spawn(self._listen_once())

    async def _listen_once(self) -> None:
        try:
            if self.streaming:
                utterance = await self._listen_streaming()
            else:
                captured = await self.listener.listen(self._session)
                utterance = captured.buffer
        except StoppedByUser:
            return
        except DeviceError as e:
            logger.error(f"Microphone failure: {e}")
            self.stop()
            self.error = str(e)
            return
        except TranscriptionFailed as e:
            logger.warning(f"Streaming transcription failed: {e}")
            self._fail(e)
            return

        if utterance is None:
            self._schedule_resume(self.timings.tiny_buffer_resume_s)
            return
        await self.handle_utterance(utterance)

    async def _listen_streaming(self) -> Optional[str]:
        """Feed live audio to the streaming recognizer. Falls back to VAD if it is unreachable."""
        transcription = self.pipeline.transcription
        token = CancelToken(parent=self._session)
        try:
            if not transcription.supports_streaming:
                raise TranscriptionUnavailable("Streaming transcription not configured")
            audio = self.listener.session.stream_chunks(token)
            final: Optional[str] = None
            async for delta in transcription.stream(audio, token):
                if delta.is_final:
                    final = delta.text.strip()
                elif delta.text:
                    self.display.show(f"You: {delta.text}")
            return final or None
        except TranscriptionUnavailable as e:
            logger.warning(f"Streaming unavailable ({e}), falling back to voice activity detection")
            self.streaming = False
            captured = await self.listener.listen(self._session)
            return captured.buffer
        finally:
            token.cancel("stream finished")

    def _schedule_resume(self, delay_s: float) -> None:
        if not self.is_active or self._session is None:
            return
        self._spawn(self._resume_after(delay_s))

    async def _resume_after(self, delay_s: float) -> None:
        try:
            await self._session.sleep(delay_s)
            if self.is_active and not self._processing:
                await self.resume_listening()
        except StoppedByUser:
            logger.debug("Resume cancelled")

    async def resume_listening(self) -> None:
        """WAITING, then back to LISTENING after a short pause."""
        if not self.is_active:
            return
        self._set_state(ConversationState.WAITING)
        if not self.barge_in:
            await self._session.run(self.synthesis.wait_until_done())
        await self._session.sleep(self.timings.waiting_s)
        if self.is_active and not self._processing:
            self._set_state(ConversationState.LISTENING)
            self._start_listening()

    # Turn handling

    async def handle_utterance(self, input: TranscriptionInput) -> None:
        """Process one utterance, or drop it if the conversation is busy."""
        if not self.is_active:
            logger.info("Conversation not active, dropping utterance")
            self.dropped_utterances += 1
            return
        if self._processing or self.state is not ConversationState.LISTENING:
            logger.info(f"Busy ({self.state.value}), dropping utterance")
            self.dropped_utterances += 1
            return

        # VAD timing already filters noise; this catches captures that are
        # too short to transcribe regardless.
        if isinstance(input, AudioBuffer) and input.size < self.timings.min_utterance_bytes:
            logger.info(f"Ignoring tiny audio buffer ({input.size} bytes)")
            self._schedule_resume(self.timings.tiny_buffer_resume_s)
            return

        self._processing = True
        self._set_state(ConversationState.PROCESSING)
        if self.synthesis.is_speaking:
            logger.info("Barge-in: stopping current reply")
            self.synthesis.stop()

        resume_delay: Optional[float] = None
        try:
            await self.pipeline.run(
                input, self.history.as_messages(), self._session, self._on_progress
            )
            resume_delay = (self.timings.resume_after_speech_s if self._audio_enabled
                            else self.timings.resume_after_text_s)
        except StoppedByUser:
            if self._session_ended():
                logger.debug("Turn stopped")
            else:
                # only the reply was silenced, the conversation goes on
                logger.debug("Reply silenced, resuming")
                resume_delay = self.timings.resume_after_text_s
        except NoSpeechDetected:
            logger.info("No speech detected, listening again")
            self._set_state(ConversationState.LISTENING)
            resume_delay = self.timings.tiny_buffer_resume_s
        except PipelineStageError as e:
            self._fail(e)
        finally:
            self._processing = False
            self._current_turn = None

        if resume_delay is not None:
            self._schedule_resume(resume_delay)

    def _fail(self, error: PipelineStageError) -> None:
        logger.error(f"Turn failed: {error}")
        self.error = str(error)
        self.display.show(ERROR_MESSAGE)
        # capture restarts only when the resume fires
        self._set_state(ConversationState.WAITING)
        self._schedule_resume(self.timings.error_resume_s)

    def _on_progress(self, progress: PipelineProgress) -> None:
        if not self.is_active:
            return
        if progress.stage == "stt":
            self._current_turn = self.history.start_turn(progress.text)
            self.display.show(f"You: {progress.text}")
        elif progress.stage == "ai":
            if self._current_turn is not None:
                self._current_turn.complete(progress.text)
            self._set_state(ConversationState.SPEAKING)
            self.display.type_out(progress.text)
        elif progress.stage == "complete" and progress.latency:
            record_turn(progress.latency)
