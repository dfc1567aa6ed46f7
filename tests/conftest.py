"""Shared fixtures: deterministic timers and a Qt core application."""

from datetime import datetime, timedelta

import pytest
from PySide6.QtCore import QCoreApplication


class ManualTimer:
    """Timer that only fires when its ManualTimers owner is advanced."""

    def __init__(self, owner, interval, callback):
        self.owner = owner
        self.interval = interval
        self.callback = callback
        self.due = None
        self.cancelled = False
        self.fired = False

    def start(self):
        self.due = self.owner.elapsed + self.interval
        self.owner.timers.append(self)

    def cancel(self):
        self.cancelled = True


class ManualTimers:
    """Timer factory plus clock driven by advance()."""

    def __init__(self, start=datetime(2025, 1, 1, 12, 0, 0)):
        self.start = start
        self.elapsed = 0.0
        self.timers = []

    def __call__(self, interval, callback):
        return ManualTimer(self, interval, callback)

    def clock(self):
        return self.start + timedelta(seconds=self.elapsed)

    def at(self, seconds):
        return self.start + timedelta(seconds=seconds)

    def advance(self, seconds):
        """Move time forward, firing due timers in deadline order."""
        target = self.elapsed + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and not t.fired and t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.elapsed = max(self.elapsed, timer.due)
            timer.fired = True
            timer.callback()
        self.elapsed = target

    def armed(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture(scope="module")
def qapp():
    """Create QCoreApplication instance for tests."""
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app
