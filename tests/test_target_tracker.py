"""
Tests for active-endpoint tracking and failover.
"""

import threading

import pytest

from hadoop_exporter import (
    DaemonType,
    Endpoint,
    LivenessState,
    ServiceTopology,
    TargetTracker,
)


def make_tracker(count: int, resolver=None) -> TargetTracker:
    peers = tuple(Endpoint(f'10.0.0.{i}', 9870, member_id=f'nn{i}') for i in range(1, count + 1))
    topology = ServiceTopology(
        daemon=DaemonType.NAMENODE,
        peers=peers,
        active=peers[0],
        self_endpoint=peers[0],
        group_id='ns1',
        server_ip='10.0.0.1',
    )
    if resolver is None:
        return TargetTracker(topology)
    return TargetTracker(topology, resolve_host=resolver)


# ============================================================
# FAILOVER
# ============================================================

class TestReportFailure:
    """Selecting the next peer after a failure."""

    def test_two_peers_switch_to_other(self):
        tracker = make_tracker(2)
        first = tracker.current_endpoint()

        selected = tracker.report_failure(first)

        assert selected != first
        assert tracker.current_endpoint() == selected
        assert selected.member_id == 'nn2'

    def test_two_peers_flip_back(self):
        tracker = make_tracker(2)
        tracker.report_failure(tracker.current_endpoint())

        selected = tracker.report_failure(tracker.current_endpoint())

        assert selected.member_id == 'nn1'

    def test_never_selects_failed_endpoint(self):
        tracker = make_tracker(4)
        for _ in range(10):
            failed = tracker.current_endpoint()
            assert tracker.report_failure(failed) != failed

    @pytest.mark.parametrize("count", [3, 4, 5])
    def test_no_early_return_to_first_peer(self, count):
        tracker = make_tracker(count)
        first = tracker.current_endpoint()

        for _ in range(count - 1):
            tracker.report_failure(tracker.current_endpoint())
            assert tracker.current_endpoint() != first

        tracker.report_failure(tracker.current_endpoint())
        assert tracker.current_endpoint() == first

    def test_stale_report_is_ignored(self):
        tracker = make_tracker(3)
        first = tracker.current_endpoint()
        second = tracker.report_failure(first)

        assert tracker.report_failure(first) == second
        assert tracker.current_endpoint() == second

    def test_single_peer_stays(self):
        tracker = make_tracker(1)
        only = tracker.current_endpoint()

        assert tracker.report_failure(only) == only

    def test_concurrent_reports_advance_once(self):
        tracker = make_tracker(3)
        failed = tracker.current_endpoint()
        barrier = threading.Barrier(8)

        def report():
            barrier.wait()
            tracker.report_failure(failed)

        threads = [threading.Thread(target=report) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tracker.current_endpoint().member_id == 'nn2'


# ============================================================
# LIVENESS CORRECTION
# ============================================================

class TestCorrectLiveness:
    """Payload-reported host identity."""

    def test_matching_host_keeps_active(self):
        tracker = make_tracker(2)
        liveness = LivenessState(reachable=True, active=True)

        assert tracker.correct_liveness(liveness, '10.0.0.1:8020') == liveness

    def test_resolved_hostname_keeps_active(self):
        tracker = make_tracker(2, resolver=lambda host: {'nn1.example.com': '10.0.0.1'}[host])
        liveness = LivenessState(reachable=True, active=True)

        assert tracker.correct_liveness(liveness, 'nn1.example.com:8020').active is True

    def test_other_host_forces_inactive(self):
        tracker = make_tracker(2)

        corrected = tracker.correct_liveness(LivenessState(True, True), '10.0.0.2:8020')

        assert corrected == LivenessState(reachable=True, active=False)

    def test_empty_report_changes_nothing(self):
        tracker = make_tracker(2)
        liveness = LivenessState(reachable=True, active=True)

        assert tracker.correct_liveness(liveness, '') is liveness

    def test_inactive_stays_inactive(self):
        tracker = make_tracker(2)
        liveness = LivenessState(reachable=True, active=False)

        assert tracker.correct_liveness(liveness, '10.0.0.1:8020') is liveness
