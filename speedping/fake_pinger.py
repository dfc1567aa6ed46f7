"""Simulated pinger for SpeedPing development and testing."""

import logging
import random
import threading

from speedping.probing import ProbeRuntimeError, ProbeSetupError, RecvHook, SendHook
from speedping.tracker import TimerFactory, thread_timer

logger = logging.getLogger(__name__)


class FakePinger:
    """Generates simulated echo replies with occasional spikes and loss."""

    def __init__(
        self,
        address: str,
        interval: float = 1.0,
        seed: int | None = None,
        fail_after: int | None = None,
        timer_factory: TimerFactory = thread_timer,
    ):
        """Initialize with optional random seed for deterministic behavior.

        Args:
            address: Simulated target (must be non-empty)
            interval: Seconds between simulated requests
            seed: Random seed
            fail_after: Raise ProbeRuntimeError after this many probes
            timer_factory: Schedules the simulated replies
        """
        if not address or not address.strip():
            raise ProbeSetupError("address cannot be empty")
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.target = address
        self.interval = interval
        self.fail_after = fail_after
        self.on_send: SendHook | None = None
        self.on_recv: RecvHook | None = None

        # Isolated random instance for thread safety
        self._random = random.Random(seed)
        self._timer_factory = timer_factory

        # Simulation parameters (seconds)
        self.base_latency = 0.025
        self.latency_variance = 0.005
        self.spike_probability = 0.05  # 5% chance of latency spike
        self.spike_multiplier = 3.0
        self.loss_probability = 0.02  # 2% chance of no reply at all

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._replies = {}  # seq -> timer delivering the reply
        self.sent = 0

    def next_latency(self) -> float | None:
        """Draw the next simulated round-trip time, or None for a lost probe."""
        if self._random.random() < self.loss_probability:
            return None

        if self._random.random() < self.spike_probability:
            latency = self.base_latency * self.spike_multiplier + self._random.gauss(
                0, self.latency_variance
            )
        else:
            latency = self.base_latency + self._random.gauss(0, self.latency_variance)

        return max(0.0001, latency)

    def run(self):
        while not self._stop.is_set():
            if self.fail_after is not None and self.sent >= self.fail_after:
                raise ProbeRuntimeError(f"simulated failure probing {self.target}")

            self._probe(self.sent)
            self.sent += 1
            if self._stop.wait(self.interval):
                break

    def _probe(self, seq: int):
        if self.on_send is not None:
            self.on_send(seq)

        latency = self.next_latency()
        if latency is None:
            logger.debug("Simulated loss: target=%s, seq=%d", self.target, seq)
            return

        timer = self._timer_factory(latency, lambda: self._deliver(seq, latency))
        with self._lock:
            self._replies[seq] = timer
        timer.start()

    def _deliver(self, seq: int, latency: float):
        with self._lock:
            if self._replies.pop(seq, None) is None:
                return
        if self.on_recv is not None and not self._stop.is_set():
            self.on_recv(seq, latency)

    def stop(self):
        self._stop.set()
        with self._lock:
            for timer in self._replies.values():
                timer.cancel()
            self._replies.clear()
