"""Multi-target probe engine: one probe loop per target."""

import logging
import threading
from typing import Callable

from PySide6.QtCore import QObject, QThreadPool, Signal

from speedping.config import ProbeConfig
from speedping.icmp_pinger import IcmpPinger
from speedping.models import DEFAULT_RING_CAPACITY, Target, TargetState
from speedping.probe_loop import LoopHandle, LoopResult, ProbeLoop
from speedping.probing import Pinger, ProbeSetupError
from speedping.registry import TargetRegistry
from speedping.tracker import TimerFactory, thread_timer

logger = logging.getLogger(__name__)

PingerFactory = Callable[[Target, ProbeConfig], Pinger]


def icmp_pinger_factory(target: Target, config: ProbeConfig) -> Pinger:
    """Create a real ICMP pinger for target (raises ProbeSetupError)."""
    return IcmpPinger(
        target.address,
        interval=config.interval,
        privileged=config.privileged,
        payload_size=config.payload_size,
    )


class ProbeEngine(QObject):
    """Starts and stops probe loops for the targets of a registry.

    Key features:
    - One dedicated pool thread per running loop, no cross-target serialization
    - Setup failures raise synchronously from start_loop()
    - Runtime failures arrive through loop_finished/error and are not retried
    - Reconfiguration is cancel-then-restart, never in-place

    Intended to be driven from the Qt main thread; loop results are delivered
    there through queued signals.
    """

    # Signals
    loop_finished = Signal(object, object)  # (Target, LoopResult)
    error = Signal(str, str)  # (target name, error message)

    def __init__(
        self,
        registry: TargetRegistry,
        pinger_factory: PingerFactory = icmp_pinger_factory,
        config: ProbeConfig | None = None,
        timer_factory: TimerFactory = thread_timer,
        parent=None,
    ):
        """Initialize probe engine.

        Args:
            registry: Targets to probe
            pinger_factory: Builds the pinger for a target and configuration
            config: Probe timing; defaults to the registry's ping interval
            timer_factory: Deadline timer factory handed to every loop
            parent: Qt parent object
        """
        super().__init__(parent)

        self.registry = registry
        self.pinger_factory = pinger_factory
        self.config = config if config is not None else ProbeConfig(interval_ms=registry.ping_interval_ms)
        self.timer_factory = timer_factory

        self._lock = threading.Lock()
        self._handles: dict[Target, LoopHandle] = {}
        self._loops: list[ProbeLoop] = []  # every loop not yet finished, incl. cancelled ones

        # Private pool: loops are long-running and must not starve other users
        self.thread_pool = QThreadPool()
        self.thread_pool.setMaxThreadCount(1)

        self.is_running = False

    def start_loop(self, target: Target, config: ProbeConfig | None = None) -> LoopHandle:
        """Begin probing target.

        A loop already running for target is cancelled first.

        Raises:
            ProbeSetupError: If the target cannot be resolved or opened
        """
        config = (config if config is not None else self.config).resolved()

        previous = self.handle_for(target)
        if previous is not None:
            self.stop_loop(previous)

        pinger = self.pinger_factory(target, config)

        loop = ProbeLoop(target, pinger, config, timer_factory=self.timer_factory)
        loop.signals.finished.connect(self._on_loop_finished)
        handle = LoopHandle(loop)

        with self._lock:
            self._handles[target] = handle
            self._loops = [running for running in self._loops if not running.done.is_set()]
            self._loops.append(loop)
            live = len(self._loops)

        # One thread per unfinished loop, plus a spare
        if self.thread_pool.maxThreadCount() < live + 1:
            self.thread_pool.setMaxThreadCount(live + 1)

        target.state = TargetState.RUNNING
        self.thread_pool.start(loop)

        logger.info(
            "Loop started: target=%s (%s), interval=%dms, max_rtt=%dms",
            target.name,
            target.address,
            config.interval_ms,
            config.max_rtt_ms,
        )
        return handle

    def stop_loop(self, handle: LoopHandle):
        """Cancel a loop; idempotent and safe after the loop terminated."""
        handle.stop()

        with self._lock:
            if self._handles.get(handle.target) is handle:
                del self._handles[handle.target]
                handle.target.state = TargetState.STOPPED

        logger.debug("Loop stop requested: target=%s", handle.target.name)

    def handle_for(self, target: Target) -> LoopHandle | None:
        with self._lock:
            return self._handles.get(target)

    def start_all(self) -> list[tuple[Target, ProbeSetupError]]:
        """Start a loop for every registered target.

        Targets that fail setup stay stopped and are reported on the error
        signal.

        Returns:
            (target, error) for each target that failed setup
        """
        if self.is_running:
            return []

        self.is_running = True
        failures = []
        for target in self.registry.list_targets():
            try:
                self.start_loop(target)
            except ProbeSetupError as e:
                logger.warning("Setup failed: target=%s, error=%s", target.name, e)
                failures.append((target, e))
                self.error.emit(target.name, str(e))

        logger.info(
            "Probing started: %d targets, %d failed, interval=%dms",
            self.registry.count(),
            len(failures),
            self.config.resolved().interval_ms,
        )
        return failures

    def stop_all(self):
        """Cancel every running loop."""
        with self._lock:
            handles = list(self._handles.values())

        for handle in handles:
            self.stop_loop(handle)

        self.is_running = False
        logger.info("Probing stopped: %d loops cancelled", len(handles))

    def restart_all(self, config: ProbeConfig | None = None):
        """Apply a new configuration by cancelling and restarting all loops."""
        if config is not None:
            self.config = config

        if not self.is_running:
            return

        self.stop_all()
        self.start_all()

    def set_interval(self, interval_ms: int):
        """Update the probe interval; running loops are restarted."""
        self.registry.ping_interval_ms = interval_ms
        self.restart_all(self.config.with_interval(self.registry.ping_interval_ms))
        logger.debug("Interval updated: %dms", self.registry.ping_interval_ms)

    def add_target(self, name: str, address: str, ring_capacity: int = DEFAULT_RING_CAPACITY) -> Target:
        """Register a target, starting its loop if probing is active.

        Raises:
            ProbeSetupError: If probing is active and the target cannot be
                             opened; the target stays registered but stopped
        """
        target = self.registry.add_target(name, address, ring_capacity)
        if self.is_running:
            self.start_loop(target)
        return target

    def remove_target_at(self, position: int, wait: float | None = 5.0) -> bool:
        """Stop the target's loop and remove it from the registry.

        The target found at position is removed by identity, so concurrent
        registry changes never cause a different target to be dropped.

        Args:
            position: Registry position
            wait: Seconds to wait for the loop to stop writing; None skips
                  the wait

        Returns:
            False if position is out of range or the target was already
            removed
        """
        target = self.registry.target_at(position)
        if target is None:
            return False

        handle = self.handle_for(target)
        if handle is not None:
            self.stop_loop(handle)
            if wait is not None and not handle.wait(wait):
                logger.warning("Loop still stopping after %.1fs: target=%s", wait, target.name)

        return self.registry.remove(target)

    def shutdown(self, timeout: float = 5.0) -> bool:
        """Stop all loops and wait for their threads to finish."""
        self.stop_all()
        return self.thread_pool.waitForDone(int(timeout * 1000))

    def _on_loop_finished(self, target: Target, result: LoopResult):
        """Handle loop termination on the main thread.

        Results of loops that were already replaced or stopped only get
        forwarded; the target state belongs to the current loop.
        """
        with self._lock:
            handle = self._handles.get(target)
            current = handle is not None and handle.result is result
            if current:
                del self._handles[target]
                target.state = TargetState.STOPPED

        if not result.cancelled:
            logger.error("Probing failed: target=%s, error=%s", target.name, result.error)
            if current:
                self.error.emit(target.name, str(result.error))

        self.loop_finished.emit(target, result)

    def get_stats(self):
        """Get engine statistics.

        Returns:
            Dict with engine state info
        """
        with self._lock:
            live = sum(1 for running in self._loops if not running.done.is_set())

        return {
            "targets": self.registry.count(),
            "loops": live,
            "monitoring": self.is_running,
            "interval_ms": self.config.resolved().interval_ms,
            "max_threads": self.thread_pool.maxThreadCount(),
        }
