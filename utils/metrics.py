"""
Performance metrics and timing utilities for the conversation pipeline.

Per-stage latencies (stt, ai, tts, total) are recorded for every turn and
compared against thresholds so slow backends show up in the log.
"""
import time
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict

logger = logging.getLogger(__name__)


@dataclass
class TimingStats:
    """Statistics for a timed operation."""
    stage: str
    count: int
    total_time: float
    avg_time: float
    min_time: float
    max_time: float
    last_time: float


class MetricsCollector:
    """Collects and analyzes performance metrics."""

    def __init__(self):
        self.timings: Dict[str, List[float]] = defaultdict(list)
        self.thresholds: Dict[str, float] = {
            "stt": 2.0,
            "ai": 3.0,
            "tts": 2.0,
            "total": 6.0,
        }
        self.warnings: List[str] = []

    def record_timing(self, stage: str, duration: float) -> None:
        """Record a timing measurement in seconds."""
        self.timings[stage].append(duration)

        threshold = self.thresholds.get(stage)
        if threshold and duration > threshold:
            warning = f"{stage} exceeded threshold: {duration:.3f}s > {threshold}s"
            self.warnings.append(warning)
            logger.warning(warning)

    def record_turn(self, latency_ms: Dict[str, float]) -> None:
        """Record the per-stage latencies of one completed turn."""
        for stage, value in latency_ms.items():
            self.record_timing(stage, value / 1000.0)

    def get_stats(self, stage: str) -> Optional[TimingStats]:
        """Get statistics for a specific stage."""
        times = self.timings.get(stage, [])
        if not times:
            return None

        return TimingStats(
            stage=stage,
            count=len(times),
            total_time=sum(times),
            avg_time=sum(times) / len(times),
            min_time=min(times),
            max_time=max(times),
            last_time=times[-1]
        )

    def log_summary(self) -> None:
        """Print a summary table of all timing stats."""
        print("\n" + "=" * 70)
        print("PERFORMANCE METRICS SUMMARY")
        print("=" * 70)
        print(f"{'Stage':<15} {'Count':<6} {'Avg':<8} {'Min':<8} {'Max':<8} {'Last':<8}")
        print("-" * 70)

        for stage in sorted(self.timings.keys()):
            stats = self.get_stats(stage)
            if stats:
                print(f"{stage:<15} {stats.count:<6} "
                      f"{stats.avg_time*1000:>6.0f}ms {stats.min_time*1000:>6.0f}ms "
                      f"{stats.max_time*1000:>6.0f}ms {stats.last_time*1000:>6.0f}ms")

        if self.warnings:
            print(f"\n{len(self.warnings)} threshold violations:")
            for warning in self.warnings[-10:]:
                print(f"   {warning}")

        print("=" * 70)

    def clear(self) -> None:
        """Clear all collected metrics."""
        self.timings.clear()
        self.warnings.clear()


# Global metrics collector
_metrics = MetricsCollector()


@contextmanager
def timer(stage: str):
    """Context manager for timing operations."""
    start_time = time.time()
    try:
        yield
    finally:
        duration = time.time() - start_time
        _metrics.record_timing(stage, duration)


def record_turn(latency_ms: Dict[str, float]) -> None:
    _metrics.record_turn(latency_ms)


def get_stats(stage: str) -> Optional[TimingStats]:
    return _metrics.get_stats(stage)


def log_latency() -> None:
    """Log latency summary table."""
    _metrics.log_summary()


def clear_metrics() -> None:
    _metrics.clear()

