"""Pending-reply tracking and OK/LOSS/LATE reconciliation for one probe loop."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from speedping.models import NO_LATENCY, Sample, SampleState
from speedping.probing import REPLY_HORIZON
from speedping.ring import INVALID_INDEX, SampleRing

logger = logging.getLogger(__name__)


class DeadlineTimer(Protocol):
    """Minimal timer interface (satisfied by threading.Timer)."""

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], DeadlineTimer]


def thread_timer(interval: float, callback: Callable[[], None]) -> DeadlineTimer:
    """Default timer factory: a daemon threading.Timer."""
    timer = threading.Timer(interval, callback)
    timer.daemon = True
    return timer


class ProbeState(Enum):
    """Lifecycle of one outstanding probe.

    SENT -> OK               reply within MaxRTT
    SENT -> LOST             deadline fired, LOSS sample inserted
    LOST -> LOST_THEN_LATE   reply within grace, LOSS slot converted in place
    SENT/LOST -> LATE        reply past grace (or slot gone), disjoint marker
    """

    SENT = "sent"
    LOST = "lost"
    OK = "ok"
    LOST_THEN_LATE = "lost_then_late"
    LATE = "late"


@dataclass
class PendingReply:
    """Bookkeeping for one sent probe awaiting its reply."""

    seq: int
    timer: DeadlineTimer | None = None
    index: int = INVALID_INDEX  # ring slot of the inserted LOSS sample
    generation: int = 0  # ring generation of that slot
    loss_inserted: bool = False
    state: ProbeState = ProbeState.SENT


class PendingReplyTracker:
    """Correlates replies with sent probes under a MaxRTT deadline.

    Each sent sequence number gets a PendingReply record and a deadline timer.
    The deadline callback and the reply handler run on different threads and
    both go through a single lock, so exactly one of them decides the first
    transition out of SENT; the other sees the resulting state and follows
    the matching branch.

    The record survives a deadline expiry so that a reply arriving within
    GraceLate can locate and convert its LOSS sample instead of adding a
    second point for the same probe. Once reply_horizon has passed since
    the send, the LOSS is final and the record is forgotten.
    """

    def __init__(
        self,
        ring: SampleRing,
        max_rtt: float,
        grace_late: float,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], datetime] = datetime.now,
        reply_horizon: float = REPLY_HORIZON,
    ):
        """Initialize tracker.

        Args:
            ring: Ring receiving the samples of this target
            max_rtt: Deadline in seconds after which a probe is presumed lost
            grace_late: Seconds past max_rtt during which a late reply still
                        converts its LOSS sample in place
            timer_factory: Creates deadline timers (injectable for tests)
            clock: Timestamp source for inserted samples
            reply_horizon: Seconds after sending past which a lost probe is
                           forgotten; later replies are ignored
        """
        if max_rtt <= 0:
            raise ValueError("max_rtt must be positive")
        if grace_late < 0:
            raise ValueError("grace_late must not be negative")

        # A record must outlive the grace window it serves
        reply_horizon = max(reply_horizon, max_rtt + grace_late)

        self.ring = ring
        self.max_rtt = max_rtt
        self.grace_late = grace_late
        self.reply_horizon = reply_horizon
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.Lock()
        self._pending: dict[int, PendingReply] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def on_send(self, seq: int):
        """Register a just-sent probe and arm its deadline."""
        with self._lock:
            if self._closed:
                return

            previous = self._pending.pop(seq, None)
            if previous is not None and previous.timer is not None:
                # Sequence number wrapped around while an old record lingered
                previous.timer.cancel()

            record = PendingReply(seq=seq)
            record.timer = self._timer_factory(self.max_rtt, lambda: self._on_deadline(record))
            self._pending[seq] = record
            record.timer.start()

    def _on_deadline(self, record: PendingReply):
        """Deadline expired: insert a provisional LOSS sample."""
        with self._lock:
            if self._closed or self._pending.get(record.seq) is not record:
                return  # reply already handled or loop shut down
            if record.state is not ProbeState.SENT:
                return

            record.index, record.generation = self.ring.push_versioned(
                Sample(ts=self._clock(), latency_ms=NO_LATENCY, seq=record.seq, state=SampleState.LOSS)
            )
            record.loss_inserted = True
            record.state = ProbeState.LOST

            # Expiry replaces the deadline timer, so reply and cancel paths stop it
            record.timer = self._timer_factory(self.reply_horizon - self.max_rtt, lambda: self._on_expired(record))
            record.timer.start()

        logger.debug("Probe lost: seq=%d, index=%d", record.seq, record.index)

    def _on_expired(self, record: PendingReply):
        """Reply horizon passed: the LOSS sample is final."""
        with self._lock:
            if self._closed or self._pending.get(record.seq) is not record:
                return
            del self._pending[record.seq]

        logger.debug("Lost probe forgotten: seq=%d", record.seq)

    def on_reply(self, seq: int, rtt: float) -> ProbeState | None:
        """Reconcile a reply with its pending record.

        Args:
            seq: Sequence number of the reply
            rtt: Measured round-trip time in seconds

        Returns:
            The final state of the probe, or None if the reply was ignored
            (unknown or duplicate sequence, or tracker closed)
        """
        now = self._clock()
        latency_ms = rtt * 1000.0

        with self._lock:
            if self._closed:
                return None

            record = self._pending.pop(seq, None)
            if record is None:
                logger.debug("Reply without pending record ignored: seq=%d", seq)
                return None

            if record.timer is not None:
                record.timer.cancel()

            def to_state(state: SampleState):
                def mutate(sample: Sample):
                    sample.state = state
                    sample.latency_ms = latency_ms
                    sample.ts = now

                return mutate

            if rtt <= self.max_rtt:
                # Timer jitter can fire the deadline just ahead of an on-time reply
                if record.loss_inserted and self.ring.update_at(
                    record.index, to_state(SampleState.OK), record.generation
                ):
                    record.state = ProbeState.OK
                    return record.state

                self.ring.push(Sample(ts=now, latency_ms=latency_ms, seq=seq, state=SampleState.OK))
                record.state = ProbeState.OK
                return record.state

            if record.loss_inserted and rtt <= self.max_rtt + self.grace_late:
                if self.ring.update_at(record.index, to_state(SampleState.LATE), record.generation):
                    record.state = ProbeState.LOST_THEN_LATE
                    logger.debug("Late reply reconciled: seq=%d, rtt=%.1fms", seq, latency_ms)
                    return record.state

            # Past grace, or the LOSS slot was already overwritten
            self.ring.push(Sample(ts=now, latency_ms=latency_ms, seq=seq, state=SampleState.LATE))
            record.state = ProbeState.LATE
            logger.debug("Late reply recorded: seq=%d, rtt=%.1fms", seq, latency_ms)
            return record.state

    def cancel_all(self) -> int:
        """Stop every deadline timer and discard all records.

        After this call the tracker never writes to the ring again.

        Returns:
            Number of records discarded
        """
        with self._lock:
            self._closed = True
            discarded = len(self._pending)
            for record in self._pending.values():
                if record.timer is not None:
                    record.timer.cancel()
            self._pending.clear()

        logger.debug("Pending replies cancelled: %d", discarded)
        return discarded
