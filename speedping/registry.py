"""Registry of monitored targets and their sample rings."""

import logging
import threading

from speedping.config import DEFAULT_INTERVAL_MS
from speedping.models import DEFAULT_RING_CAPACITY, Target, TargetState
from speedping.ring import SampleRing

logger = logging.getLogger(__name__)


class TargetRegistry:
    """Ordered, lock-guarded collection of targets.

    Color indices always equal list positions, so legend colors stay gap-free
    after removals. A removed Target keeps its ring; any reader or loop still
    holding the Target can keep using it until it drops the reference.

    Thread-safe: every operation takes the registry lock, and a Target is
    fully built before it is published.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._targets: list[Target] = []
        self._interval_ms = DEFAULT_INTERVAL_MS

    def add_target(self, name: str, address: str, ring_capacity: int = DEFAULT_RING_CAPACITY) -> Target:
        """Add a target with a fresh ring.

        Args:
            name: Display name (defaults to the address when blank)
            address: Hostname or IP address
            ring_capacity: Samples retained; non-positive means the default

        Returns:
            The new Target
        """
        address = address.strip()
        if not address:
            raise ValueError("address cannot be empty")
        name = name.strip() or address

        if ring_capacity <= 0:
            ring_capacity = DEFAULT_RING_CAPACITY

        target = Target(name=name, address=address, ring=SampleRing(ring_capacity))
        with self._lock:
            target.color_index = len(self._targets)
            self._targets.append(target)
            total = len(self._targets)

        logger.debug("Target added: %s (%s), total: %d", name, address, total)
        return target

    def remove_target_at(self, position: int) -> bool:
        """Remove the target at position and renumber color indices.

        Returns:
            False if position is out of range
        """
        with self._lock:
            if position < 0 or position >= len(self._targets):
                return False
            self._remove_locked(position)
        return True

    def remove(self, target: Target) -> bool:
        """Remove target by identity; False if it is not registered."""
        with self._lock:
            position = self.index_of(target)
            if position < 0:
                return False
            self._remove_locked(position)
        return True

    def _remove_locked(self, position: int):
        removed = self._targets.pop(position)
        for i, target in enumerate(self._targets):
            target.color_index = i
        logger.debug("Target removed: %s (remaining: %d)", removed.name, len(self._targets))

    def target_at(self, position: int) -> Target | None:
        with self._lock:
            if position < 0 or position >= len(self._targets):
                return None
            return self._targets[position]

    def index_of(self, target: Target) -> int:
        """Return the position of target, or -1 if it is not registered."""
        with self._lock:
            for i, candidate in enumerate(self._targets):
                if candidate is target:
                    return i
            return -1

    def list_targets(self) -> list[Target]:
        """Return a copy of the target list."""
        with self._lock:
            return list(self._targets)

    def count(self) -> int:
        with self._lock:
            return len(self._targets)

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._targets if t.state is TargetState.RUNNING)

    def clear(self):
        """Remove all targets."""
        with self._lock:
            self._targets.clear()
        logger.debug("All targets cleared")

    @property
    def ping_interval_ms(self) -> int:
        with self._lock:
            return self._interval_ms

    @ping_interval_ms.setter
    def ping_interval_ms(self, value: int):
        if value <= 0:
            value = DEFAULT_INTERVAL_MS
        with self._lock:
            self._interval_ms = value
