"""Entry point for the SpeedPing probe engine."""

import argparse
import logging
import os
import signal
import sys
from dataclasses import replace

from PySide6.QtCore import QCoreApplication, QTimer

from speedping.config import ProbeConfig
from speedping.engine import ProbeEngine, icmp_pinger_factory
from speedping.fake_pinger import FakePinger
from speedping.icmp_pinger import check_icmp_available
from speedping.logging_config import configure_logging
from speedping.probing import ProbeSetupError
from speedping.registry import TargetRegistry
from speedping.stats import format_summary, summarize

# Configure logging early
configure_logging()
logger = logging.getLogger(__name__)


def fake_pinger_factory(target, config):
    return FakePinger(target.address, interval=config.interval)


def build_argparser():
    ap = argparse.ArgumentParser(description="Continuously ping hosts and report OK/LOSS/LATE samples")
    ap.add_argument("hosts", nargs="+", help="hostnames or IP addresses to probe")
    ap.add_argument("--interval", type=int, default=None, help="probe interval in ms")
    ap.add_argument("--max-rtt", type=int, default=None, help="loss deadline in ms")
    ap.add_argument("--grace", type=int, default=None, help="late grace window in ms")
    ap.add_argument("--report", type=float, default=5.0, help="seconds between summaries")
    ap.add_argument("--duration", type=float, default=None, help="stop after this many seconds")
    ap.add_argument("--privileged", action="store_true", help="use raw ICMP sockets")
    return ap


def select_pinger_factory(config: ProbeConfig):
    """Pick the real ICMP pinger, falling back to simulated data."""
    if os.environ.get("SPEEDPING_PINGER", "").lower() == "fake":
        logger.info("Fake pinger explicitly requested via environment variable")
        return fake_pinger_factory

    try:
        check_icmp_available(config.privileged)
    except ProbeSetupError as e:
        logger.warning("Using simulated data (real probing unavailable): %s", e)
        return fake_pinger_factory

    logger.info("ICMP sockets available (privileged=%s)", config.privileged)
    return icmp_pinger_factory


def main(argv=None):
    """Main entry point for the SpeedPing probe engine."""
    args = build_argparser().parse_args(argv)
    app = QCoreApplication(sys.argv[:1])

    config = ProbeConfig.from_env()
    if args.interval is not None:
        config = config.with_interval(args.interval)
    if args.max_rtt is not None:
        config = replace(config, max_rtt_ms=args.max_rtt)
    if args.grace is not None:
        config = replace(config, grace_late_ms=args.grace)
    if args.privileged:
        config = replace(config, privileged=True)
    config = config.resolved()

    registry = TargetRegistry()
    registry.ping_interval_ms = config.interval_ms
    for host in args.hosts:
        registry.add_target(host, host)

    engine = ProbeEngine(registry, pinger_factory=select_pinger_factory(config), config=config)
    engine.error.connect(lambda name, message: logger.error("%s: %s", name, message))

    failures = engine.start_all()
    if len(failures) == registry.count():
        logger.error("No target could be started")
        return 1

    def report():
        for target in registry.list_targets():
            logger.info("%s", format_summary(target.name, summarize(target.snapshot())))

    report_timer = QTimer()
    report_timer.timeout.connect(report)
    report_timer.start(int(args.report * 1000))

    # Let the Python interpreter run periodically so SIGINT is handled
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    wakeup_timer = QTimer()
    wakeup_timer.timeout.connect(lambda: None)
    wakeup_timer.start(200)

    if args.duration is not None:
        QTimer.singleShot(int(args.duration * 1000), app.quit)

    app.exec()

    if not engine.shutdown():
        logger.warning("Some probe loops did not stop in time")
    report()
    return 0


if __name__ == "__main__":
    sys.exit(main())
