"""Data models for SpeedPing probe samples and targets."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from speedping.ring import SampleRing

# Roughly ten minutes of history at one probe per second
DEFAULT_RING_CAPACITY = 600

# Latency reported for samples without a valid round trip
NO_LATENCY = -1.0


class SampleState(Enum):
    """Outcome of a single probe."""

    OK = "ok"
    LOSS = "loss"  # deadline expired before any reply
    LATE = "late"  # reply arrived after the deadline


@dataclass
class Sample:
    """A single probe measurement stored in a sample ring."""

    ts: datetime
    latency_ms: float
    seq: int
    state: SampleState = SampleState.OK

    def __post_init__(self):
        """Ensure a lost sample always carries the no-latency sentinel."""
        if self.state is SampleState.LOSS:
            self.latency_ms = NO_LATENCY

    @property
    def has_latency(self) -> bool:
        return self.latency_ms >= 0

    @property
    def is_gap(self) -> bool:
        """True for samples that break the continuous latency line."""
        return self.state is not SampleState.OK


class TargetState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(eq=False)
class Target:
    """A monitored network endpoint owning its own sample ring."""

    name: str
    address: str
    ring: "SampleRing"
    color_index: int = 0
    state: TargetState = TargetState.STOPPED
    created: datetime = field(default_factory=datetime.now)

    def snapshot(self) -> list[Sample]:
        """Return the retained samples oldest to newest."""
        return self.ring.snapshot()

    @property
    def is_running(self) -> bool:
        return self.state is TargetState.RUNNING
