"""Summary statistics over sample ring snapshots."""

import statistics
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from speedping.models import Sample, SampleState


@dataclass(frozen=True)
class SampleSummary:
    """Aggregates of one target's retained samples."""

    count: int = 0
    ok: int = 0
    lost: int = 0
    late: int = 0
    min_ms: float | None = None
    avg_ms: float | None = None
    max_ms: float | None = None
    jitter_ms: float | None = None  # standard deviation of on-time latencies

    @property
    def loss_percent(self) -> float | None:
        if self.count == 0:
            return None
        return self.lost / self.count * 100.0


def samples_since(samples: Sequence[Sample], since: datetime) -> list[Sample]:
    """Return the samples at or after since (input must be chronological)."""
    for i, sample in enumerate(samples):
        if sample.ts >= since:
            return list(samples[i:])
    return []


def nearest_sample(samples: Sequence[Sample], when: datetime) -> Sample | None:
    """Return the sample closest in time to when, or None if there are none."""
    if not samples:
        return None
    return min(samples, key=lambda s: abs((s.ts - when).total_seconds()))


def summarize(samples: Sequence[Sample]) -> SampleSummary:
    """Summarize a snapshot.

    Latency aggregates only cover OK samples; LATE samples are counted but
    left out since their latency exceeds the loss deadline.
    """
    if not samples:
        return SampleSummary()

    latencies = [s.latency_ms for s in samples if s.state is SampleState.OK]
    lost = sum(1 for s in samples if s.state is SampleState.LOSS)
    late = sum(1 for s in samples if s.state is SampleState.LATE)

    if not latencies:
        return SampleSummary(count=len(samples), lost=lost, late=late)

    return SampleSummary(
        count=len(samples),
        ok=len(latencies),
        lost=lost,
        late=late,
        min_ms=min(latencies),
        avg_ms=statistics.mean(latencies),
        max_ms=max(latencies),
        jitter_ms=statistics.stdev(latencies) if len(latencies) >= 2 else None,
    )


def format_summary(name: str, summary: SampleSummary) -> str:
    """One-line human readable summary."""
    if summary.count == 0:
        return f"{name}: no samples"

    parts = [f"{name}: {summary.count} samples"]
    if summary.avg_ms is not None:
        parts.append(f"avg {summary.avg_ms:.1f} ms (min {summary.min_ms:.1f}, max {summary.max_ms:.1f})")
    if summary.jitter_ms is not None:
        parts.append(f"jitter {summary.jitter_ms:.2f} ms")
    parts.append(f"loss {summary.loss_percent:.1f}%")
    if summary.late:
        parts.append(f"late {summary.late}")
    return ", ".join(parts)
