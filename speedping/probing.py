"""Echo-probing abstraction consumed by the probe loop."""

from typing import Callable, Protocol

SendHook = Callable[[int], None]
RecvHook = Callable[[int, float], None]

# Seconds after sending during which a reply is still matched to its probe
REPLY_HORIZON = 60.0


class ProbeError(Exception):
    """Base class for probing failures."""


class ProbeSetupError(ProbeError):
    """The target address cannot be resolved or opened for probing."""


class ProbeRuntimeError(ProbeError):
    """The probing mechanism failed while running."""


class Pinger(Protocol):
    """Protocol for periodic echo probers.

    A pinger sends one echo request per interval until stopped. It reports
    every sent sequence number through on_send (before the request hits the
    wire) and every matching reply through on_recv with the round-trip time
    in seconds. Hooks are invoked from the pinger's own threads.
    """

    on_send: SendHook | None
    on_recv: RecvHook | None

    def run(self) -> None:
        """Probe until stop() is called.

        Raises:
            ProbeRuntimeError: If the underlying mechanism fails
        """
        ...

    def stop(self) -> None:
        """Stop probing; safe to call more than once and before run()."""
        ...
