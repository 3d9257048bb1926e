#!/usr/bin/env python3
"""
Tests for the statistics aggregator: accounting, windows, summary
"""

import threading

import pytest

from udp_stats import Stats, calc_stats, jitter, percentile

MS = 1_000_000
T0 = 1_700_000_000_000_000_000


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1e9)


def answered(stats, latencies_ms, start_seq=1, server_proc_ns=None):
    for i, lat in enumerate(latencies_ms):
        seq = start_seq + i
        sent = T0 + seq * 1000 * MS
        stats.record_sent(seq, sent)
        stats.record_received(seq, sent + int(lat * MS), server_proc_ns)


# ---------- helpers ----------

def test_percentile_interpolates():
    data = [40, 10, 30, 20]
    assert percentile(data, 50) == pytest.approx(25.0)
    assert percentile(data, 90) == pytest.approx(37.0)
    assert percentile(data, 100) == 40.0
    assert percentile(data, 0) == 10.0
    assert percentile(data, 150) == 40.0
    assert percentile([], 50) is None


def test_jitter_is_mean_absolute_deviation():
    assert jitter([50, 50, 50]) == 0.0
    assert jitter([10, 20]) == pytest.approx(5.0)
    assert jitter([]) == 0.0
    assert calc_stats([10, 20, 30, 40, 50]) == (10, 30.0, 50, pytest.approx(12.0))
    assert calc_stats([]) == (0.0, 0.0, 0.0, 0.0)


# ---------- accounting ----------

def test_unanswered_packets_are_lost():
    stats = Stats()
    for seq in range(1, 11):
        stats.record_sent(seq, T0 + seq * MS)

    s = stats.final_summary()
    assert (s.sent, s.received, s.lost) == (10, 0, 10)
    assert s.loss_pct == 100.0
    assert not s.has_data
    assert s.latency is None
    assert s.server_proc is None

    records = stats.all_records()
    assert len(records) == 10
    assert all(r.lost and r.recv_time_ns == 0 for r in records)


def test_all_answered_summary():
    stats = Stats(late_threshold_ms=0)
    answered(stats, [10, 20, 30, 40, 50])

    s = stats.final_summary()
    assert (s.sent, s.received, s.lost, s.late) == (5, 5, 0, 0)
    assert s.loss_pct == 0.0
    assert s.latency.min_ms == pytest.approx(10.0)
    assert s.latency.avg_ms == pytest.approx(30.0)
    assert s.latency.max_ms == pytest.approx(50.0)
    assert s.latency.jitter_ms == pytest.approx(12.0)
    assert s.latency.p50_ms == pytest.approx(30.0)
    assert s.latency.p90_ms == pytest.approx(46.0)
    assert s.latency.p99_ms == pytest.approx(49.6)


def test_partial_loss_counts_exactly():
    stats = Stats()
    answered(stats, [10, 20])
    stats.record_sent(3, T0)
    stats.record_sent(4, T0)

    s = stats.final_summary()
    assert (s.sent, s.received, s.lost) == (4, 2, 2)
    assert s.loss_pct == pytest.approx(50.0)
    lost = sorted(r.seq_num for r in stats.all_records() if r.lost)
    assert lost == [3, 4]


def test_duplicate_receive_is_ignored():
    stats = Stats()
    stats.record_sent(1, T0)
    stats.record_received(1, T0 + 10 * MS)
    before = stats.all_records()[0]

    stats.record_received(1, T0 + 99 * MS)
    after = stats.all_records()[0]
    s = stats.final_summary()

    assert after == before
    assert s.received == 1
    assert s.latency.avg_ms == pytest.approx(10.0)
    assert s.latency.max_ms == pytest.approx(10.0)


def test_unknown_sequence_is_ignored():
    stats = Stats()
    stats.record_sent(1, T0)
    stats.record_received(99, T0 + 5 * MS)

    s = stats.final_summary()
    assert s.received == 0
    assert len(stats.all_records()) == 1


def test_late_packets_still_count_as_received():
    stats = Stats(late_threshold_ms=25)
    answered(stats, [10, 20, 30, 40, 50])

    s = stats.final_summary()
    assert s.received == 5
    assert s.late == 3
    assert s.late_pct == pytest.approx(60.0)
    assert s.late_threshold_ms == 25
    late = sorted(r.seq_num for r in stats.all_records() if r.late)
    assert late == [3, 4, 5]


def test_late_check_disabled():
    stats = Stats(late_threshold_ms=0)
    answered(stats, [500])
    s = stats.final_summary()
    assert s.late == 0
    assert s.late_threshold_ms is None


def test_server_processing_time_splits_latency():
    stats = Stats()
    stats.record_sent(1, T0)
    stats.record_received(1, T0 + 20 * MS, 5 * MS)
    stats.record_sent(2, T0)
    stats.record_received(2, T0 + 2 * MS, 3 * MS)

    by_seq = {r.seq_num: r for r in stats.all_records()}
    assert by_seq[1].server_proc_ms == pytest.approx(5.0)
    assert by_seq[1].net_latency_ms == pytest.approx(15.0)
    # floored at zero
    assert by_seq[2].net_latency_ms == 0.0

    s = stats.final_summary()
    assert s.server_proc.min_ms == pytest.approx(3.0)
    assert s.server_proc.max_ms == pytest.approx(5.0)
    assert s.server_proc.avg_ms == pytest.approx(4.0)
    assert s.net_latency.max_ms == pytest.approx(15.0)
    assert s.net_latency.min_ms == 0.0


def test_no_server_time_means_no_server_summary():
    stats = Stats()
    answered(stats, [10, 20])
    s = stats.final_summary()
    assert s.server_proc is None
    assert s.net_latency is None
    assert all(r.net_latency_ms == r.latency_ms for r in stats.all_records())


def test_all_records_are_copies():
    stats = Stats()
    stats.record_sent(1, T0)
    stats.all_records()[0].lost = False
    assert stats.all_records()[0].lost


def test_concurrent_duplicate_receivers_count_once():
    stats = Stats()
    n = 2000
    for seq in range(1, n + 1):
        stats.record_sent(seq, T0)

    def receive_all():
        for seq in range(1, n + 1):
            stats.record_received(seq, T0 + 7 * MS)

    threads = [threading.Thread(target=receive_all) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    s = stats.final_summary()
    assert s.received == n
    assert s.lost == 0
    assert s.latency.avg_ms == pytest.approx(7.0)


# ---------- windows ----------

def test_window_snapshot_cadence_and_reset():
    clock = FakeClock()
    stats = Stats(clock_ns=clock)
    stats.record_sent(1, clock.now)
    stats.record_received(1, clock.now + 20 * MS)
    stats.record_sent(2, clock.now)

    assert stats.window_snapshot() is None
    clock.advance(4.9)
    assert stats.window_snapshot() is None

    clock.advance(0.1)
    snap = stats.window_snapshot()
    assert snap is not None
    assert snap.elapsed_s == pytest.approx(5.0)
    assert (snap.sent, snap.received, snap.late) == (2, 1, 0)
    assert snap.loss_pct == pytest.approx(50.0)
    assert snap.avg_ms == pytest.approx(20.0)
    assert not snap.spike

    # Too soon after the last one
    clock.advance(1)
    assert stats.window_snapshot() is None

    clock.advance(4)
    snap = stats.window_snapshot()
    assert (snap.sent, snap.received) == (0, 0)
    assert snap.loss_pct == 0.0
    assert snap.avg_ms == 0.0


def test_reply_for_packet_sent_before_window_stays_out_of_it():
    clock = FakeClock()
    stats = Stats(clock_ns=clock)
    sent_at = clock.now
    stats.record_sent(1, sent_at)

    clock.advance(5)
    stats.window_snapshot()

    stats.record_received(1, clock.now)
    clock.advance(5)
    snap = stats.window_snapshot()
    assert snap.received == 0
    assert stats.final_summary().received == 1


def test_window_spike_flag():
    clock = FakeClock()
    stats = Stats(late_threshold_ms=30, clock_ns=clock)
    for seq, lat in ((1, 10), (2, 40)):
        stats.record_sent(seq, clock.now)
        stats.record_received(seq, clock.now + lat * MS, 2 * MS)

    clock.advance(5)
    snap = stats.window_snapshot()
    assert snap.jitter_ms == pytest.approx(15.0)
    assert snap.spike
    assert snap.late == 1
    assert (snap.min_ms, snap.max_ms) == (pytest.approx(10.0), pytest.approx(40.0))
    assert snap.avg_server_ms == pytest.approx(2.0)
    assert snap.avg_net_ms == pytest.approx(23.0)
