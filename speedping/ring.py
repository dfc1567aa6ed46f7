"""Fixed-capacity circular sample store shared by a probe loop and its readers."""

import logging
import threading
from copy import copy
from typing import Callable

from speedping.models import DEFAULT_RING_CAPACITY, Sample

logger = logging.getLogger(__name__)

INVALID_INDEX = -1


class SampleRing:
    """Overwrite-oldest ring buffer of probe samples.

    Written by exactly one probe loop, read by any number of consumers via
    snapshot(). Every slot carries a write generation so that a deferred
    update aimed at a slot which has since been overwritten can be detected
    and dropped instead of corrupting the newer sample.

    Thread-safe: all operations take a single lock and are at most O(N).
    """

    def __init__(self, capacity: int = DEFAULT_RING_CAPACITY):
        if capacity < 0:
            raise ValueError("capacity must not be negative")

        self._lock = threading.Lock()
        self._data: list[Sample | None] = [None] * capacity
        self._generations = [0] * capacity
        self._head = 0  # next slot to write
        self._count = 0
        self._writes = 0  # monotonically increasing write counter

    def __len__(self) -> int:
        with self._lock:
            return self._count

    @property
    def capacity(self) -> int:
        return len(self._data)

    def push(self, sample: Sample) -> int:
        """Insert a sample at the write cursor and return the slot index used.

        Returns INVALID_INDEX for a zero-capacity ring.
        """
        index, _ = self.push_versioned(sample)
        return index

    def push_versioned(self, sample: Sample) -> tuple[int, int]:
        """Insert a sample and return (slot index, slot generation).

        The generation can later be passed to update_at() to make the update
        conditional on the slot not having been overwritten in between.
        """
        with self._lock:
            if not self._data:
                return INVALID_INDEX, 0

            index = self._head
            self._writes += 1
            self._data[index] = sample
            self._generations[index] = self._writes
            self._head = (self._head + 1) % len(self._data)
            if self._count < len(self._data):
                self._count += 1
            return index, self._writes

    def update_at(
        self,
        index: int,
        mutator: Callable[[Sample], None],
        generation: int | None = None,
    ) -> bool:
        """Apply mutator in place to the sample stored at index.

        Silently does nothing when the ring is empty, the index is outside
        the retained range, or generation is given and no longer matches
        the slot (the slot was overwritten after the caller recorded it).

        Returns:
            True if the mutator was applied
        """
        with self._lock:
            if self._count == 0 or index < 0 or index >= len(self._data):
                return False

            # Before the first wraparound only [0, count) holds samples
            if self._count < len(self._data) and index >= self._count:
                return False

            if generation is not None and self._generations[index] != generation:
                logger.debug(
                    "Stale ring update ignored: index=%d, generation=%d (current=%d)",
                    index,
                    generation,
                    self._generations[index],
                )
                return False

            mutator(self._data[index])
            return True

    def snapshot(self) -> list[Sample]:
        """Return copies of the retained samples, oldest to newest."""
        with self._lock:
            if self._count == 0:
                return []

            size = len(self._data)
            start = (self._head - self._count) % size
            return [copy(self._data[(start + i) % size]) for i in range(self._count)]

    def clear(self):
        """Drop all retained samples."""
        with self._lock:
            self._data = [None] * len(self._data)
            self._generations = [0] * len(self._data)
            self._head = 0
            self._count = 0
