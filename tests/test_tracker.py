"""Unit tests for PendingReplyTracker reconciliation."""

import threading

import pytest

from speedping.models import NO_LATENCY, SampleState
from speedping.ring import SampleRing
from speedping.tracker import PendingReplyTracker, ProbeState, thread_timer


@pytest.fixture
def ring():
    return SampleRing(600)


@pytest.fixture
def tracker(ring, timers):
    """MaxRTT 300 ms, GraceLate 100 ms on manual timers."""
    return PendingReplyTracker(ring, max_rtt=0.3, grace_late=0.1, timer_factory=timers, clock=timers.clock)


def samples_for(ring, seq):
    return [s for s in ring.snapshot() if s.seq == seq]


class TestTrackerConstruction:
    def test_invalid_max_rtt(self, ring):
        with pytest.raises(ValueError, match="max_rtt"):
            PendingReplyTracker(ring, max_rtt=0, grace_late=0.1)

    def test_invalid_grace(self, ring):
        with pytest.raises(ValueError, match="grace_late"):
            PendingReplyTracker(ring, max_rtt=0.3, grace_late=-0.1)

    def test_default_timer_is_daemon(self):
        timer = thread_timer(10.0, lambda: None)
        assert timer.daemon


class TestOnTimeReply:
    """Reply within MaxRTT."""

    def test_single_ok_sample(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.05)

        assert tracker.on_reply(0, 0.05) is ProbeState.OK

        samples = samples_for(ring, 0)
        assert len(samples) == 1
        assert samples[0].state is SampleState.OK
        assert samples[0].latency_ms == pytest.approx(50.0)
        assert samples[0].ts == timers.at(0.05)

    def test_deadline_cancelled(self, tracker, ring, timers):
        tracker.on_send(0)
        tracker.on_reply(0, 0.05)

        timers.advance(1.0)

        assert len(ring) == 1
        assert tracker.pending_count() == 0
        assert timers.armed() == []

    def test_reply_at_exact_deadline_is_ok(self, tracker, ring):
        tracker.on_send(0)

        assert tracker.on_reply(0, 0.3) is ProbeState.OK
        assert samples_for(ring, 0)[0].state is SampleState.OK


class TestLostProbe:
    """No reply before MaxRTT."""

    def test_single_loss_sample(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.299)
        assert len(ring) == 0

        timers.advance(0.001)

        samples = samples_for(ring, 0)
        assert len(samples) == 1
        assert samples[0].state is SampleState.LOSS
        assert samples[0].latency_ms == NO_LATENCY
        assert samples[0].ts == timers.at(0.3)

    def test_record_kept_after_loss(self, tracker, timers):
        """The record survives the deadline so a late reply can find its slot."""
        tracker.on_send(0)
        timers.advance(0.3)

        assert tracker.pending_count() == 1

    def test_no_further_sample_without_reply(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(10.0)

        assert len(samples_for(ring, 0)) == 1

    def test_record_forgotten_at_reply_horizon(self, ring, timers):
        tracker = PendingReplyTracker(
            ring, max_rtt=0.3, grace_late=0.1, timer_factory=timers, clock=timers.clock, reply_horizon=5.0
        )
        tracker.on_send(0)
        timers.advance(4.9)
        assert tracker.pending_count() == 1

        timers.advance(0.1)

        assert tracker.pending_count() == 0
        assert timers.armed() == []
        assert tracker.on_reply(0, 5.2) is None
        assert [s.state for s in ring.snapshot()] == [SampleState.LOSS]

    def test_reply_before_horizon_still_recorded_late(self, ring, timers):
        tracker = PendingReplyTracker(
            ring, max_rtt=0.3, grace_late=0.1, timer_factory=timers, clock=timers.clock, reply_horizon=5.0
        )
        tracker.on_send(0)
        timers.advance(2.0)

        assert tracker.on_reply(0, 2.0) is ProbeState.LATE
        assert timers.armed() == []

    def test_sustained_loss_keeps_pending_bounded(self, tracker, timers):
        for seq in range(1000):
            tracker.on_send(seq)
            timers.advance(1.0)

        assert tracker.pending_count() <= 61

    def test_horizon_never_shorter_than_grace(self, ring):
        tracker = PendingReplyTracker(ring, max_rtt=0.3, grace_late=0.1, reply_horizon=0.1)

        assert tracker.reply_horizon == pytest.approx(0.4)


class TestLateReply:
    """Reply after MaxRTT."""

    def test_within_grace_converts_loss_in_place(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.35)

        assert tracker.on_reply(0, 0.35) is ProbeState.LOST_THEN_LATE

        samples = samples_for(ring, 0)
        assert len(samples) == 1
        assert samples[0].state is SampleState.LATE
        assert samples[0].latency_ms == pytest.approx(350.0)
        assert samples[0].ts == timers.at(0.35)
        assert tracker.pending_count() == 0

    def test_at_grace_boundary_converts(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.4)

        assert tracker.on_reply(0, 0.4) is ProbeState.LOST_THEN_LATE
        assert len(samples_for(ring, 0)) == 1

    def test_past_grace_adds_disjoint_marker(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.65)

        assert tracker.on_reply(0, 0.65) is ProbeState.LATE

        samples = samples_for(ring, 0)
        assert [s.state for s in samples] == [SampleState.LOSS, SampleState.LATE]
        assert samples[1].latency_ms == pytest.approx(650.0)
        assert tracker.pending_count() == 0

    def test_late_without_loss_inserted(self, tracker, ring, timers):
        """A late reply racing ahead of its deadline callback pushes a LATE marker."""
        tracker.on_send(0)

        assert tracker.on_reply(0, 0.35) is ProbeState.LATE

        timers.advance(1.0)
        samples = samples_for(ring, 0)
        assert [s.state for s in samples] == [SampleState.LATE]

    def test_evicted_loss_slot_gets_disjoint_marker(self, timers):
        """If the LOSS slot was overwritten, the newer sample is left untouched."""
        ring = SampleRing(2)
        tracker = PendingReplyTracker(ring, 0.3, 0.1, timer_factory=timers, clock=timers.clock)

        tracker.on_send(0)
        timers.advance(0.3)  # LOSS for seq 0 in slot 0
        for seq in (1, 2):
            tracker.on_send(seq)
            tracker.on_reply(seq, 0.01)  # slot 0 overwritten by seq 2

        assert tracker.on_reply(0, 0.35) is ProbeState.LATE

        snapshot = ring.snapshot()
        assert [(s.seq, s.state) for s in snapshot] == [(2, SampleState.OK), (0, SampleState.LATE)]


class TestRaces:
    """Deadline versus reply ordering."""

    def test_on_time_reply_after_early_deadline_converts_to_ok(self, tracker, ring, timers):
        """Deadline fired first but measured RTT is within MaxRTT: one OK sample."""
        tracker.on_send(0)
        timers.advance(0.3)

        assert tracker.on_reply(0, 0.299) is ProbeState.OK

        samples = samples_for(ring, 0)
        assert len(samples) == 1
        assert samples[0].state is SampleState.OK

    def test_duplicate_reply_ignored(self, tracker, ring):
        tracker.on_send(0)
        tracker.on_reply(0, 0.02)

        assert tracker.on_reply(0, 0.03) is None
        assert len(ring) == 1

    def test_unknown_sequence_ignored(self, tracker, ring):
        assert tracker.on_reply(42, 0.02) is None
        assert len(ring) == 0

    def test_reused_sequence_cancels_old_deadline(self, tracker, ring, timers):
        tracker.on_send(0)
        tracker.on_send(0)

        timers.advance(0.3)

        assert len(samples_for(ring, 0)) == 1

    def test_exactly_one_outcome_with_real_timers(self):
        """Replies racing real deadline timers never produce two samples for one probe."""
        ring = SampleRing(1000)
        tracker = PendingReplyTracker(ring, max_rtt=0.01, grace_late=0.05)

        for seq in range(200):
            tracker.on_send(seq)

        barrier = threading.Event()

        def reply_all():
            barrier.wait()
            for seq in range(200):
                tracker.on_reply(seq, 0.012)

        worker = threading.Thread(target=reply_all)
        worker.start()
        barrier.set()
        worker.join(timeout=10)
        tracker.cancel_all()

        counts = {}
        for sample in ring.snapshot():
            counts[sample.seq] = counts.get(sample.seq, 0) + 1
        assert set(counts) == set(range(200))
        assert all(count == 1 for count in counts.values())


class TestCancelAll:
    def test_cancel_stops_timers_and_drops_records(self, tracker, ring, timers):
        for seq in range(3):
            tracker.on_send(seq)

        assert tracker.cancel_all() == 3

        timers.advance(5.0)
        assert len(ring) == 0
        assert tracker.pending_count() == 0
        assert tracker.closed

    def test_no_writes_after_cancel(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.3)
        tracker.cancel_all()

        assert tracker.on_reply(0, 0.35) is None
        tracker.on_send(1)
        timers.advance(1.0)

        assert [s.seq for s in ring.snapshot()] == [0]
        assert ring.snapshot()[0].state is SampleState.LOSS


class TestEndToEndTiming:
    """interval=1000 ms, MaxRTT=300 ms, GraceLate=100 ms."""

    def test_fast_reply(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.05)
        tracker.on_reply(0, 0.05)
        timers.advance(0.95)

        snapshot = ring.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0].state is SampleState.OK
        assert snapshot[0].latency_ms == pytest.approx(50.0)

    def test_no_reply(self, tracker, ring, timers):
        before = len(ring)
        tracker.on_send(0)
        timers.advance(1.0)

        snapshot = ring.snapshot()
        assert len(ring) == before + 1
        assert snapshot[0].state is SampleState.LOSS
        assert snapshot[0].ts == timers.at(0.3)

    def test_reply_within_grace_single_sample(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.3)
        assert ring.snapshot()[0].state is SampleState.LOSS

        timers.advance(0.05)
        tracker.on_reply(0, 0.35)

        snapshot = ring.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0].state is SampleState.LATE
        assert snapshot[0].latency_ms == pytest.approx(350.0)

    def test_reply_at_650ms_keeps_loss_and_adds_late(self, tracker, ring, timers):
        tracker.on_send(0)
        timers.advance(0.65)
        tracker.on_reply(0, 0.65)

        snapshot = ring.snapshot()
        assert [s.state for s in snapshot] == [SampleState.LOSS, SampleState.LATE]
        assert snapshot[0].ts == timers.at(0.3)
        assert snapshot[1].ts == timers.at(0.65)
