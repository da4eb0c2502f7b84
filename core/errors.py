"""
Error taxonomy for the voice conversation pipeline.

Every failure that crosses a component boundary is one of these types.
Pipeline stage errors carry the stage they were raised from ("stt", "ai",
"tts") so the conversation layer can report them without inspecting
messages.
"""

from typing import Optional


class VoiceAgentError(Exception):
    """Base class for all errors raised by the agent."""


class DeviceError(VoiceAgentError):
    """Microphone or speaker could not be acquired or failed mid-stream."""


class StoppedByUser(VoiceAgentError):
    """Operation was cancelled by a user stop or barge-in. Never shown to the user."""


class CredentialsUnavailable(VoiceAgentError):
    """Access token could not be fetched from the token endpoint."""


class PipelineStageError(VoiceAgentError):
    """Failure tagged with the pipeline stage that produced it."""

    stage = "pipeline"

    def __init__(self, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message or self.__class__.__name__)
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class TranscriptionFailed(PipelineStageError):
    stage = "stt"


class TranscriptionUnavailable(TranscriptionFailed):
    """Transcription backend unreachable and no on-device fallback available."""


class TranscriptionTimeout(TranscriptionFailed):
    """Long-running transcription did not finish within the poll budget."""


class NoSpeechDetected(TranscriptionFailed):
    """Transcription succeeded but produced no text."""


class GenerationFailed(PipelineStageError):
    stage = "ai"


class SynthesisFailed(PipelineStageError):
    stage = "tts"
