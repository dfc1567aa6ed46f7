"""Probe timing configuration for SpeedPing."""

import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 1000
MIN_MAX_RTT_MS = 300  # floor for the derived MaxRTT (helps on Wi-Fi)
DEFAULT_GRACE_LATE_MS = 100
DEFAULT_PAYLOAD_SIZE = 56


@dataclass(frozen=True)
class ProbeConfig:
    """Timing parameters for one probe loop.

    Unset or non-positive values are replaced by defaults in resolved():
    interval 1000 ms, MaxRTT max(2 x interval, 300 ms), GraceLate 100 ms.
    """

    interval_ms: int = DEFAULT_INTERVAL_MS
    max_rtt_ms: int | None = None
    grace_late_ms: int | None = None
    privileged: bool = False
    payload_size: int = DEFAULT_PAYLOAD_SIZE

    def resolved(self) -> "ProbeConfig":
        """Return a copy with every default applied."""
        interval_ms = self.interval_ms if self.interval_ms and self.interval_ms > 0 else DEFAULT_INTERVAL_MS

        max_rtt_ms = self.max_rtt_ms
        if not max_rtt_ms or max_rtt_ms <= 0:
            max_rtt_ms = max(2 * interval_ms, MIN_MAX_RTT_MS)

        grace_late_ms = self.grace_late_ms
        if not grace_late_ms or grace_late_ms <= 0:
            grace_late_ms = DEFAULT_GRACE_LATE_MS

        return replace(
            self,
            interval_ms=interval_ms,
            max_rtt_ms=max_rtt_ms,
            grace_late_ms=grace_late_ms,
        )

    def with_interval(self, interval_ms: int) -> "ProbeConfig":
        """Return a copy for a new interval, re-deriving MaxRTT."""
        return replace(self, interval_ms=interval_ms, max_rtt_ms=None)

    @property
    def interval(self) -> float:
        return self.resolved().interval_ms / 1000.0

    @property
    def max_rtt(self) -> float:
        return self.resolved().max_rtt_ms / 1000.0

    @property
    def grace_late(self) -> float:
        return self.resolved().grace_late_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ProbeConfig":
        """Build a configuration from SPEEDPING_* environment variables.

        Environment Variables:
            SPEEDPING_INTERVAL_MS: Probe interval in milliseconds
            SPEEDPING_MAX_RTT_MS: Deadline before a probe counts as lost
            SPEEDPING_GRACE_LATE_MS: Window after MaxRTT for in-place LATE
            SPEEDPING_PRIVILEGED: "1"/"true" to use raw ICMP sockets

        Malformed numbers are logged and ignored.
        """
        if environ is None:
            environ = os.environ

        def read_int(name: str) -> int | None:
            raw = environ.get(name, "").strip()
            if not raw:
                return None
            try:
                return int(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", name, raw)
                return None

        privileged = environ.get("SPEEDPING_PRIVILEGED", "").strip().lower() in ("1", "true", "yes")

        return cls(
            interval_ms=read_int("SPEEDPING_INTERVAL_MS") or DEFAULT_INTERVAL_MS,
            max_rtt_ms=read_int("SPEEDPING_MAX_RTT_MS"),
            grace_late_ms=read_int("SPEEDPING_GRACE_LATE_MS"),
            privileged=privileged,
        )
