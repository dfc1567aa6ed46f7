"""Real ICMP echo pinger for SpeedPing built on icmplib sockets."""

import logging
import os
import platform
import threading
import time

from icmplib import (
    ICMPLibError,
    ICMPRequest,
    ICMPv4Socket,
    ICMPv6Socket,
    NameLookupError,
    TimeoutExceeded,
    is_ipv6_address,
    resolve,
)

from speedping.probing import REPLY_HORIZON, ProbeRuntimeError, ProbeSetupError, RecvHook, SendHook

logger = logging.getLogger(__name__)

ECHO_REPLY_V4 = 0
ECHO_REPLY_V6 = 129

# Sequence numbers are 16-bit on the wire
SEQUENCE_MODULO = 1 << 16


class IcmpPinger:
    """Continuous pinger sending one echo request per interval.

    The address is resolved and the socket opened at construction time, so
    an unreachable name or missing socket permission is reported to the
    caller before any loop is started. run() sends from the calling thread
    while a receiver thread matches replies by sequence number.

    **Privileges:**
    Unprivileged (datagram) ICMP sockets are used by default. On Linux they
    require the net.ipv4.ping_group_range sysctl to include the user's group.
    Windows only supports privileged sockets, which work there without
    elevation.
    """

    def __init__(
        self,
        address: str,
        interval: float = 1.0,
        privileged: bool = False,
        payload_size: int = 56,
        max_reply_age: float = REPLY_HORIZON,
    ):
        """Initialize pinger.

        Args:
            address: Hostname or IP address of the target
            interval: Seconds between echo requests
            privileged: Use raw sockets instead of datagram sockets
            payload_size: ICMP payload size in bytes
            max_reply_age: Seconds after which a sent request is no longer
                           matched against incoming replies

        Raises:
            ValueError: If interval or payload_size are invalid
            ProbeSetupError: If the address cannot be resolved or the
                             socket cannot be opened
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if payload_size < 0:
            raise ValueError("payload_size must not be negative")

        self.target = address
        self.interval = interval
        self.payload_size = payload_size
        self.max_reply_age = max_reply_age
        self.privileged = privileged or platform.system() == "Windows"
        self.poll_timeout = min(0.25, interval)

        self.on_send: SendHook | None = None
        self.on_recv: RecvHook | None = None

        self.address = self._resolve(address)
        self.ident = (os.getpid() ^ id(self)) & 0xFFFF
        self._echo_reply_type = ECHO_REPLY_V6 if is_ipv6_address(self.address) else ECHO_REPLY_V4

        self._lock = threading.Lock()
        self._sent: dict[int, ICMPRequest] = {}
        self._next_seq = 0
        self._stop = threading.Event()
        self._started = False
        self._failure: Exception | None = None
        self._sock = self._open_socket()

        logger.debug(
            "IcmpPinger initialized: target=%s, address=%s, interval=%.3fs, privileged=%s",
            address,
            self.address,
            interval,
            self.privileged,
        )

    def _resolve(self, address: str) -> str:
        if not address or not address.strip():
            raise ProbeSetupError("address cannot be empty")

        try:
            return resolve(address.strip())[0]
        except NameLookupError as e:
            raise ProbeSetupError(f"cannot resolve {address}: {e}") from e

    def _open_socket(self):
        socket_class = ICMPv6Socket if is_ipv6_address(self.address) else ICMPv4Socket
        try:
            return socket_class(privileged=self.privileged)
        except ICMPLibError as e:
            raise ProbeSetupError(f"cannot open ICMP socket for {self.target}: {e}") from e

    def run(self):
        """Send echo requests until stop() is called.

        Raises:
            ProbeRuntimeError: If the socket fails while probing
        """
        with self._lock:
            if self._stop.is_set():
                return
            self._started = True

        receiver = threading.Thread(
            target=self._receive_loop,
            name=f"icmp-recv-{self.target}",
            daemon=True,
        )
        receiver.start()

        try:
            while not self._stop.is_set():
                self._send_one()
                if self._stop.wait(self.interval):
                    break
        except ICMPLibError as e:
            self._failure = e
        finally:
            self._stop.set()
            receiver.join(timeout=self.poll_timeout + 1.0)
            self._sock.close()

        if self._failure is not None:
            raise ProbeRuntimeError(f"probing {self.target} failed: {self._failure}") from self._failure

    def stop(self):
        """Stop probing; run() returns within one poll timeout."""
        with self._lock:
            if self._stop.is_set():
                return
            self._stop.set()
            started = self._started
        if not started:
            # run() will never own the socket
            self._sock.close()
        logger.debug("IcmpPinger stop requested: target=%s", self.target)

    def _send_one(self):
        now = time.time()
        with self._lock:
            seq = self._next_seq
            self._next_seq = (seq + 1) % SEQUENCE_MODULO

            request = ICMPRequest(
                destination=self.address,
                id=self.ident,
                sequence=seq,
                payload_size=self.payload_size,
            )
            self._sent[seq] = request
            self._prune_sent(now)

        # Register the deadline before a reply can possibly arrive
        if self.on_send is not None:
            self.on_send(seq)

        try:
            self._sock.send(request)
        except ICMPLibError as e:
            with self._lock:
                self._sent.pop(seq, None)
            if self._stop.is_set():
                return
            # Transient send errors (e.g. network down) surface as loss
            logger.debug("Send failed: target=%s, seq=%d, error=%s", self.target, seq, e)

    def _prune_sent(self, now: float):
        expired = [
            seq
            for seq, request in self._sent.items()
            if request.time and now - request.time > self.max_reply_age
        ]
        for seq in expired:
            del self._sent[seq]

    def _receive_loop(self):
        while not self._stop.is_set():
            try:
                reply = self._sock.receive(None, timeout=self.poll_timeout)
            except TimeoutExceeded:
                continue
            except ICMPLibError as e:
                if not self._stop.is_set():
                    logger.warning("Receive failed: target=%s, error=%s", self.target, e)
                    self._failure = e
                    self._stop.set()
                return

            self._handle_reply(reply)

    def _handle_reply(self, reply):
        if reply.source != self.address or reply.type != self._echo_reply_type:
            return
        # Datagram sockets get their identifier rewritten by the kernel
        if self.privileged and reply.id != self.ident:
            return

        with self._lock:
            request = self._sent.pop(reply.sequence, None)
        if request is None or not request.time:
            return

        rtt = max(0.0, reply.time - request.time)
        if self.on_recv is not None:
            self.on_recv(reply.sequence, rtt)


def check_icmp_available(privileged: bool = False):
    """Verify that an ICMP socket can be opened with the given privileges.

    Raises:
        ProbeSetupError: If the socket cannot be opened
    """
    privileged = privileged or platform.system() == "Windows"
    try:
        sock = ICMPv4Socket(privileged=privileged)
    except ICMPLibError as e:
        raise ProbeSetupError(f"ICMP sockets unavailable (privileged={privileged}): {e}") from e
    sock.close()
