"""
Fast unit tests for the Parley voice agent (< 3 seconds).

These tests focus on individual components without external dependencies.
Designed for fast CI/CD feedback loops.
"""
import pytest
import asyncio
import json
import time
from unittest.mock import Mock

from utils.events import AudioBuffer, AudioChunk, PipelineProgress
from utils.metrics import TimingStats, MetricsCollector, clear_metrics, get_stats, timer
from utils.cancellation import CancelToken
from utils.display import TypewriterDisplay
from core.errors import (
    StoppedByUser, TranscriptionFailed, TranscriptionUnavailable, NoSpeechDetected,
    GenerationFailed, SynthesisFailed, PipelineStageError,
)
from agent.memory import ConversationHistory
from agent.knowledge import KnowledgeBase
from config.settings import load_config, AgentConfig, DEFAULT_CONFIG


class TestEvents:
    """Test event dataclasses."""

    def test_audio_buffer_from_chunks(self):
        chunks = [AudioChunk(b"\x01\x00" * 10), AudioChunk(b"\x02\x00" * 5)]
        buffer = AudioBuffer.from_chunks(chunks, sample_rate=16000)

        assert buffer.size == 30
        assert buffer.encoding == "LINEAR16"
        assert buffer.to_array().shape == (15,)

    def test_linear16_duration_estimate(self):
        # one second of 16kHz mono PCM16
        buffer = AudioBuffer(data=b"\x00" * 32000, sample_rate=16000)
        assert buffer.estimated_duration_s == pytest.approx(1.0)

    def test_opus_duration_estimate(self):
        buffer = AudioBuffer(data=b"\x00" * 4000, encoding="WEBM_OPUS")
        assert buffer.estimated_duration_s == pytest.approx(1.0)

    def test_pipeline_progress_defaults(self):
        progress = PipelineProgress(stage="stt", text="hello")
        assert progress.latency is None


class TestErrors:
    """Stage-tagged error taxonomy."""

    def test_stage_tags(self):
        assert TranscriptionFailed().stage == "stt"
        assert TranscriptionUnavailable().stage == "stt"
        assert GenerationFailed().stage == "ai"
        assert SynthesisFailed().stage == "tts"

    def test_subclassing(self):
        assert issubclass(NoSpeechDetected, TranscriptionFailed)
        assert issubclass(TranscriptionUnavailable, PipelineStageError)
        assert not issubclass(StoppedByUser, PipelineStageError)

    def test_message_includes_stage(self):
        assert str(GenerationFailed("empty reply")) == "[ai] empty reply"


class TestMetrics:
    """Test performance metrics system."""

    def test_metrics_collector_creation(self):
        collector = MetricsCollector()

        assert len(collector.timings) == 0
        assert "stt" in collector.thresholds
        assert "ai" in collector.thresholds
        assert "tts" in collector.thresholds
        assert "total" in collector.thresholds

    def test_record_timing(self):
        collector = MetricsCollector()
        collector.record_timing("stt", 0.3)
        collector.record_timing("stt", 0.4)

        stats = collector.get_stats("stt")
        assert isinstance(stats, TimingStats)
        assert stats.count == 2
        assert stats.avg_time == pytest.approx(0.35)
        assert stats.min_time == 0.3
        assert stats.max_time == 0.4

    def test_threshold_warnings(self):
        collector = MetricsCollector()
        collector.record_timing("stt", 5.0)

        assert len(collector.warnings) == 1
        assert "stt exceeded threshold" in collector.warnings[0]

    def test_record_turn_converts_ms(self):
        collector = MetricsCollector()
        collector.record_turn({"stt": 200.0, "ai": 800.0, "tts": 300.0, "total": 1300.0})

        assert collector.get_stats("total").last_time == pytest.approx(1.3)
        assert not collector.warnings

    def test_timer_context_manager(self):
        clear_metrics()

        with timer("test_operation"):
            time.sleep(0.01)

        stats = get_stats("test_operation")
        assert stats is not None
        assert stats.count == 1
        assert stats.last_time >= 0.01


class TestCancelToken:
    """Cancellation token semantics."""

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        token = CancelToken()

        async def work():
            return 42

        assert await token.run(work()) == 42

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pending_work(self):
        token = CancelToken()

        async def slow():
            await asyncio.sleep(10)

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(StoppedByUser):
            await token.run(slow())

    @pytest.mark.asyncio
    async def test_cancellation_wins_over_failure(self):
        token = CancelToken()

        async def fails_after_cancel():
            token.cancel("user stop")
            raise RuntimeError("backend error")

        with pytest.raises(StoppedByUser):
            await token.run(fails_after_cancel())

    @pytest.mark.asyncio
    async def test_child_follows_parent(self):
        parent = CancelToken()
        child = CancelToken(parent=parent)

        parent.cancel("stop")

        assert child.cancelled
        assert child.reason == "stop"

    @pytest.mark.asyncio
    async def test_sleep_raises_when_cancelled(self):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        start = time.time()
        with pytest.raises(StoppedByUser):
            await token.sleep(5)
        assert time.time() - start < 1.0

    def test_cancel_is_idempotent(self):
        token = CancelToken()
        callback = Mock()
        token.add_callback(callback)

        token.cancel("first")
        token.cancel("second")

        callback.assert_called_once()
        assert token.reason == "first"


class TestTypewriterDisplay:
    """Progressive caption display."""

    @pytest.mark.asyncio
    async def test_types_characters_in_order(self):
        updates = []
        display = TypewriterDisplay(updates.append, char_delay_s=0.001)

        await display.type_out("Hi!")

        assert updates == ["H", "Hi", "Hi!"]
        assert display.text == "Hi!"

    @pytest.mark.asyncio
    async def test_show_cancels_typing(self):
        display = TypewriterDisplay(char_delay_s=0.05)
        task = display.type_out("a long reply that takes a while")

        await asyncio.sleep(0.01)
        display.show("")
        await task

        assert display.text == ""
        assert not display.is_typing


class TestConversationHistory:
    """Bounded turn history."""

    def test_evicts_oldest_first(self):
        history = ConversationHistory(max_turns=2)
        for i in range(3):
            history.start_turn(f"q{i}").complete(f"a{i}")

        assert [t.user_text for t in history.turns] == ["q1", "q2"]

    def test_messages_skip_missing_reply(self):
        history = ConversationHistory()
        history.start_turn("hello").complete("hi there")
        history.start_turn("still thinking")

        assert history.as_messages() == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
            {"role": "user", "content": "still thinking"},
        ]

    def test_display_messages_are_last_six(self):
        history = ConversationHistory(max_turns=10)
        for i in range(5):
            history.start_turn(f"q{i}").complete(f"a{i}")

        display = history.display_messages()
        assert len(display) == 6
        assert display[-1]["content"] == "a4"


class TestKnowledgeBase:
    """Knowledge file loading and prompt extracts."""

    def test_load_with_metadata(self, tmp_path):
        path = tmp_path / "knowledge.json"
        path.write_text(json.dumps({
            "items": [
                "Resonira was founded in 2020.",
                "Project: Smart Farm. Client: AgriCo. Built an IoT dashboard.",
                "Project: VoiceDesk. Client: HelpCo. Built a voice bot.",
                "Priya is the CTO.",
            ],
            "metadata": [{"type": "company"}, {"type": "project"}, {"type": "project"}, {"type": "team"}],
        }))

        kb = KnowledgeBase.load(path)

        assert kb.initialized
        assert kb.project_list() == "Smart Farm, VoiceDesk"
        assert kb.company_info() == "Resonira was founded in 2020.\nPriya is the CTO."

    def test_summary_item_wins(self):
        kb = KnowledgeBase([
            "Project: A. Client: X.",
            "Summary List of All Resonira Projects: A, B, C",
        ])
        assert kb.project_list() == "A, B, C"

    def test_missing_file_leaves_empty(self, tmp_path):
        kb = KnowledgeBase.load(tmp_path / "missing.json")

        assert not kb.initialized
        assert kb.company_info() == ""


class TestConfiguration:
    """Test configuration system."""

    def test_default_config_structure(self):
        for section in ["company", "audio", "vad", "speech", "llm", "tts",
                        "conversation", "features", "knowledge_base", "ui"]:
            assert section in DEFAULT_CONFIG

        assert DEFAULT_CONFIG["audio"]["sample_rate"] == 16000
        assert DEFAULT_CONFIG["llm"]["model"] == "llama-3.1-8b-instant"
        assert DEFAULT_CONFIG["conversation"]["min_utterance_bytes"] == 5000

    def test_config_loading_with_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "config.toml"))

        assert isinstance(config, AgentConfig)
        assert config.audio["sample_rate"] == 16000
        assert config.company["assistant_name"] == "Jessi"
        # example file written on first load
        assert (tmp_path / "config.toml").exists()

    def test_user_config_overrides(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[vad]\nprofile = "mobile"\n\n[features]\nenable_streaming = true\n')

        config = load_config(str(path))

        assert config.vad["profile"] == "mobile"
        assert config.vad["adaptive_thresholds"] is True
        assert config.features["enable_streaming"] is True

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "saved.toml"
        config = load_config(str(tmp_path / "config.toml"))
        config.company["name"] = 'Acme "Labs"'

        assert config.save(str(path))
        assert load_config(str(path)).company["name"] == 'Acme "Labs"'

    def test_api_keys_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk_test")
        monkeypatch.delenv("SARVAM_API_KEY", raising=False)

        config = load_config(str(tmp_path / "config.toml"))

        assert config.groq_api_key == "gsk_test"
        assert config.sarvam_api_key is None


@pytest.mark.performance
class TestPerformance:
    """Performance-focused tests."""

    def test_history_operations_speed(self):
        history = ConversationHistory(max_turns=10)

        start = time.time()
        for i in range(1000):
            history.start_turn(f"question {i}").complete(f"answer {i}")
            history.as_messages()
        elapsed = time.time() - start

        assert elapsed < 0.5
        assert len(history) == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
