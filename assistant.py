#!/usr/bin/env python3
"""
Parley Voice Agent - composition root and CLI.

Wires the pipeline components from configuration:
- Microphone capture with adaptive voice activity detection
- Speech-to-text via Google Speech (streaming or buffered), faster-whisper fallback
- Responses via the Groq chat proxy, direct API fallback
- Text-to-speech via Sarvam, pyttsx3 fallback
- Conversation state machine with typed captions and barge-in
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from agent.knowledge import KnowledgeBase
from agent.llm_client import LLMConfig, ResponseGenerationClient
from agent.memory import ConversationHistory
from config.settings import AgentConfig, load_config
from core.audio.capture import AudioCaptureSession, AudioConfig
from core.audio.listener import UtteranceListener
from core.audio.playback import PlaybackManager
from core.audio.vad import VADProfile, VADThresholds, VoiceActivityDetector
from core.auth import TokenProvider
from core.conversation import ConversationState, ConversationStateMachine, ConversationTimings
from core.pipeline import PipelineOrchestrator
from core.stt.client import TranscriptionClient
from core.stt.google_client import GoogleSpeechTranscriber, SpeechConfig
from core.stt.local_whisper import LocalSTTConfig, LocalWhisperTranscriber
from core.stt.streaming import StreamingTranscriber
from core.tts.local_client import LocalTTSClient
from core.tts.sarvam_client import SarvamTTSClient, TTSConfig
from core.tts.synthesis import SpeechSynthesisClient
from utils.metrics import log_latency

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('parley_assistant.log')
        ]
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_vad(config: AgentConfig, profile: Optional[str] = None) -> VoiceActivityDetector:
    vad = config.vad
    vad_profile = VADProfile(profile or vad.get("profile", "desktop"))
    defaults = vad_profile.defaults()
    thresholds = VADThresholds(
        energy_threshold=vad.get("energy_threshold") or defaults.energy_threshold,
        speech_frequency_threshold=vad.get("speech_frequency_threshold") or defaults.speech_frequency_threshold,
        silence_threshold_ms=vad.get("silence_threshold_ms") or defaults.silence_threshold_ms,
        min_speech_duration_ms=vad.get("min_speech_duration_ms") or defaults.min_speech_duration_ms,
    )
    return VoiceActivityDetector(vad_profile, thresholds, adaptive=vad.get("adaptive_thresholds", True))


def build_conversation(config: AgentConfig, text_only: bool = False,
                       streaming: Optional[bool] = None,
                       profile: Optional[str] = None) -> ConversationStateMachine:
    """Construct every component from config and return the state machine."""
    features = config.features
    speech = config.speech

    speech_config = SpeechConfig(
        language_code=speech["language_code"],
        model=speech["model"],
        use_enhanced=speech["use_enhanced"],
        token_endpoint=speech["token_endpoint"],
        stream_url=speech["stream_url"],
    )
    token_provider = TokenProvider(speech_config.token_endpoint) if speech_config.token_endpoint else None
    local_stt = None
    local_tts = None
    if features.get("enable_local_fallback", True):
        local_stt = LocalWhisperTranscriber(LocalSTTConfig(model_name=speech["local_model"]))
        local_tts = LocalTTSClient()

    transcription = TranscriptionClient(
        cloud=GoogleSpeechTranscriber(speech_config, token_provider),
        local=local_stt,
        streaming=StreamingTranscriber(speech_config, token_provider,
                                       sample_rate=config.audio["sample_rate"]),
    )

    knowledge = None
    if config.knowledge_base.get("enabled"):
        knowledge = KnowledgeBase.load(config.knowledge_base["path"])

    llm = config.llm
    generation = ResponseGenerationClient(
        LLMConfig(
            model_name=llm["model"],
            temperature=llm["temperature"],
            max_tokens=llm["max_tokens"],
            top_p=llm["top_p"],
            proxy_url=llm["proxy_url"],
            direct_url=llm["direct_url"],
            system_prompt=llm["system_prompt"],
            company_name=config.company["name"],
            company_description=config.company["description"],
            assistant_name=config.company["assistant_name"],
        ),
        api_key=config.groq_api_key,
        knowledge=knowledge,
    )

    tts = config.tts
    synthesis = SpeechSynthesisClient(
        PlaybackManager(),
        cloud=SarvamTTSClient(
            TTSConfig(
                url=tts["url"],
                language_code=tts["language_code"],
                speaker_id=tts["voice_name"],
                pitch=tts["pitch"],
                speaking_rate=tts["speaking_rate"],
            ),
            api_key=config.sarvam_api_key,
        ),
        local=local_tts,
    )

    listener = None
    if not text_only:
        audio = config.audio
        session = AudioCaptureSession(AudioConfig(
            sample_rate=audio["sample_rate"],
            channels=audio["channels"],
            chunk_size_ms=audio["chunk_size_ms"],
        ))
        listener = UtteranceListener(
            session, build_vad(config, profile), calibration_ms=config.vad["calibration_ms"]
        )

    conversation = config.conversation
    return ConversationStateMachine(
        PipelineOrchestrator(transcription, generation, synthesis),
        synthesis,
        listener=listener,
        history=ConversationHistory(conversation["max_turns"]),
        timings=ConversationTimings(
            min_utterance_bytes=conversation["min_utterance_bytes"],
            char_delay_s=conversation["char_delay_ms"] / 1000.0,
        ),
        streaming=features["enable_streaming"] if streaming is None else streaming,
        barge_in=features["enable_barge_in"],
        audio_enabled=features["audio_enabled"] and not text_only,
    )


class VoiceAgentApp:
    """Terminal front end for one conversation."""

    def __init__(self, conversation: ConversationStateMachine, quiet: bool = False):
        self.conversation = conversation
        self.quiet = quiet
        self.shutdown_event = asyncio.Event()
        self._listening = asyncio.Event()
        conversation.on_state_change = self._on_state_change
        conversation.display.on_update = self._on_display

    def _on_state_change(self, state: ConversationState) -> None:
        if state is ConversationState.LISTENING:
            self._listening.set()
        else:
            self._listening.clear()
        if not self.quiet:
            sys.stdout.write(f"\n[{state.value}]\n")
            sys.stdout.flush()

    def _on_display(self, text: str) -> None:
        if not self.quiet:
            sys.stdout.write("\r\033[K" + text)
            sys.stdout.flush()

    def request_shutdown(self) -> None:
        self.conversation.stop()
        self.shutdown_event.set()

    async def run_voice(self) -> int:
        if not await self.conversation.start():
            logger.error(f"Failed to start conversation: {self.conversation.error}")
            return 1
        await self.shutdown_event.wait()
        return 0

    async def run_text(self) -> int:
        """Type utterances instead of speaking them. Empty line or EOF exits."""
        await self.conversation.start()
        loop = asyncio.get_running_loop()
        while not self.shutdown_event.is_set():
            await self._listening.wait()
            try:
                line = await loop.run_in_executor(None, input, "\n> ")
            except EOFError:
                break
            if not line.strip():
                break
            await self.conversation.handle_utterance(line)
        self.request_shutdown()
        return 0


def setup_signal_handlers(app: VoiceAgentApp) -> None:
    """Stop the conversation on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        loop.call_soon_threadsafe(app.request_shutdown)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def shutdown(conversation: ConversationStateMachine) -> None:
    """Stop the conversation and close every HTTP client it owns."""
    conversation.stop()
    await conversation.wait_closed()
    pipeline = conversation.pipeline
    await conversation.synthesis.aclose()
    await pipeline.generation.close()
    cloud = pipeline.transcription.cloud
    if cloud is not None:
        await cloud.close()
        if cloud.token_provider is not None:
            await cloud.token_provider.close()


async def main(argv=None) -> int:
    """Main entry point for the voice agent."""
    parser = argparse.ArgumentParser(description="Parley Voice Agent")
    parser.add_argument("--config", help="Path to config.toml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Quiet mode")
    parser.add_argument("--text-only", action="store_true", help="Type instead of speaking; no audio")
    parser.add_argument("--streaming", action="store_true", help="Use streaming transcription")
    parser.add_argument("--profile", choices=[p.value for p in VADProfile], help="VAD threshold profile")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(verbose=args.verbose or config.ui["verbose"], quiet=args.quiet or config.ui["quiet"])

    conversation = build_conversation(
        config,
        text_only=args.text_only,
        streaming=True if args.streaming else None,
        profile=args.profile,
    )
    app = VoiceAgentApp(conversation, quiet=args.quiet)
    setup_signal_handlers(app)

    try:
        if args.text_only:
            return await app.run_text()
        return await app.run_voice()
    finally:
        await shutdown(conversation)
        if not args.quiet:
            log_latency()


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
