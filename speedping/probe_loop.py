"""Per-target probe loop run on a background thread."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from PySide6.QtCore import QObject, QRunnable, Signal

from speedping.config import ProbeConfig
from speedping.models import Target
from speedping.probing import Pinger, ProbeRuntimeError
from speedping.tracker import PendingReplyTracker, TimerFactory, thread_timer

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal shared by a loop and its owner.

    Callbacks registered with add_callback() run exactly once, on the
    thread calling cancel(), or immediately if the token is already
    cancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class LoopOutcome(Enum):
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class LoopResult:
    """Terminal result of a probe loop."""

    outcome: LoopOutcome
    error: Exception | None = None

    @property
    def cancelled(self) -> bool:
        return self.outcome is LoopOutcome.CANCELLED


class LoopSignals(QObject):
    """Signals for reporting loop termination to the main thread."""

    finished = Signal(object, object)  # (Target, LoopResult)


class ProbeLoop(QRunnable):
    """Runs one pinger against one target until cancelled.

    Sent probes are registered with a PendingReplyTracker writing into the
    target's ring; replies are reconciled through the same tracker. On
    cancellation the pinger is stopped and every outstanding deadline is
    cancelled so nothing is written to the ring after the loop ends.
    """

    def __init__(
        self,
        target: Target,
        pinger: Pinger,
        config: ProbeConfig,
        token: CancellationToken | None = None,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__()
        # The handle keeps reading result/done after run() returns
        self.setAutoDelete(False)
        self.target = target
        self.pinger = pinger
        self.config = config.resolved()
        self.token = token if token is not None else CancellationToken()
        self.signals = LoopSignals()

        self.tracker = PendingReplyTracker(
            target.ring,
            max_rtt=self.config.max_rtt,
            grace_late=self.config.grace_late,
            timer_factory=timer_factory,
            clock=clock,
        )
        self.result: LoopResult | None = None
        self.done = threading.Event()

    def run(self):
        """Execute the probe loop in a background thread."""
        self.pinger.on_send = self.tracker.on_send
        self.pinger.on_recv = self._on_recv
        # Deadlines die with cancel(), not after the pinger finishes unwinding
        self.token.add_callback(self.tracker.cancel_all)
        self.token.add_callback(self.pinger.stop)

        logger.debug(
            "Loop starting: target=%s, interval=%dms, max_rtt=%dms, grace=%dms",
            self.target.address,
            self.config.interval_ms,
            self.config.max_rtt_ms,
            self.config.grace_late_ms,
        )

        error = None
        try:
            if not self.token.cancelled:
                self.pinger.run()
        except Exception as e:
            error = e
        finally:
            if not self.tracker.closed:
                self.tracker.cancel_all()

        if self.token.cancelled:
            result = LoopResult(LoopOutcome.CANCELLED)
            logger.debug("Loop cancelled: target=%s", self.target.address)
        else:
            if error is None:
                error = ProbeRuntimeError(f"probing {self.target.address} stopped unexpectedly")
            result = LoopResult(LoopOutcome.FAILED, error)
            logger.warning("Loop failed: target=%s, error=%s", self.target.address, error)

        self.result = result
        self.done.set()
        self.signals.finished.emit(self.target, result)

    def _on_recv(self, seq: int, rtt: float):
        state = self.tracker.on_reply(seq, rtt)
        logger.debug(
            "Reply: target=%s, seq=%d, rtt=%.2fms, state=%s",
            self.target.address,
            seq,
            rtt * 1000.0,
            state.value if state else "ignored",
        )


class LoopHandle:
    """Owner-side handle of a running probe loop."""

    def __init__(self, loop: ProbeLoop):
        self.loop = loop

    @property
    def target(self) -> Target:
        return self.loop.target

    @property
    def token(self) -> CancellationToken:
        return self.loop.token

    @property
    def done(self) -> bool:
        return self.loop.done.is_set()

    @property
    def result(self) -> LoopResult | None:
        return self.loop.result

    def stop(self):
        """Request cancellation; idempotent, safe after the loop ended."""
        self.loop.token.cancel()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the loop has stopped writing; True if it did."""
        return self.loop.done.wait(timeout)
