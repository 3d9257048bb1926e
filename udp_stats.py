#!/usr/bin/env python3
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import List, Optional

# ===== Statistics Aggregator =====
WINDOW_INTERVAL_S = 5.0
SPIKE_JITTER_MS = 10.0


def percentile(data, p):
    if not data:
        return None
    if p <= 0:
        return float(min(data))
    if p >= 100:
        return float(max(data))
    s = sorted(data)
    k = (len(s) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return float(s[int(k)])
    w = k - f
    return float(s[int(f)] * (1.0 - w) + s[int(c)] * w)


def mean(xs):
    if not xs:
        return 0.0
    return sum(xs) / len(xs)


def jitter(xs):
    """Mean absolute deviation from the sample mean."""
    if not xs:
        return 0.0
    m = mean(xs)
    return sum(abs(x - m) for x in xs) / len(xs)


def calc_stats(xs):
    # min, avg, max, jitter
    if not xs:
        return 0.0, 0.0, 0.0, 0.0
    return min(xs), mean(xs), max(xs), jitter(xs)


@dataclass
class PacketRecord:
    seq_num: int
    sent_time_ns: int
    recv_time_ns: int = 0
    latency_ms: float = 0.0
    server_proc_ms: float = 0.0
    net_latency_ms: float = 0.0
    lost: bool = True
    late: bool = False


@dataclass
class WindowSnapshot:
    elapsed_s: float
    sent: int
    received: int
    late: int
    loss_pct: float
    min_ms: float
    avg_ms: float
    max_ms: float
    jitter_ms: float
    avg_net_ms: float
    avg_server_ms: float
    spike: bool


@dataclass
class LatencySummary:
    min_ms: float
    avg_ms: float
    max_ms: float
    jitter_ms: float
    p50_ms: float
    p90_ms: float
    p99_ms: float


@dataclass
class ServerProcSummary:
    min_ms: float
    avg_ms: float
    max_ms: float


@dataclass
class Summary:
    sent: int
    received: int
    lost: int
    late: int
    loss_pct: float
    late_pct: float
    late_threshold_ms: Optional[float]
    latency: Optional[LatencySummary] = None
    net_latency: Optional[LatencySummary] = None
    server_proc: Optional[ServerProcSummary] = None

    @property
    def has_data(self):
        return self.latency is not None


class _Extremes:
    __slots__ = ("count", "total", "lo", "hi")

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.lo = math.inf
        self.hi = -math.inf

    def add(self, v):
        self.count += 1
        self.total += v
        if v < self.lo:
            self.lo = v
        if v > self.hi:
            self.hi = v

    @property
    def avg(self):
        return self.total / self.count if self.count else 0.0


class Stats:
    """Thread-safe accounting of probes sent and responses received.

    Every public method takes the one lock for the whole of its work, so the
    sender and receiver may call in from separate tasks or threads. Nothing
    here raises for unknown or repeated sequence numbers; such responses are
    dropped from the accounting.
    """

    def __init__(self, late_threshold_ms=100.0, clock_ns=None):
        self._lock = threading.Lock()
        self._clock_ns = clock_ns or time.time_ns
        self.late_threshold_ms = late_threshold_ms if late_threshold_ms and late_threshold_ms > 0 else None

        self._records = {}
        self.sent = 0
        self.received = 0
        self.late = 0

        self._latencies = []
        self._net_latencies = []
        self._lat = _Extremes()
        self._net = _Extremes()
        self._server = _Extremes()

        now = self._clock_ns()
        self._start_ns = now
        self._last_window_ns = now
        self._reset_window(now)

    def _reset_window(self, now):
        self._win_start_ns = now
        self._win_sent = 0
        self._win_received = 0
        self._win_late = 0
        self._win_lat = []
        self._win_net = []
        self._win_server = []

    def record_sent(self, seq, sent_time_ns):
        with self._lock:
            self.sent += 1
            self._win_sent += 1
            self._records[seq] = PacketRecord(seq_num=seq, sent_time_ns=sent_time_ns)

    def record_received(self, seq, recv_time_ns, server_proc_ns=None):
        """Resolve a probe on its first response.

        ``server_proc_ns`` is None when the response carries no processing
        time; it then counts as zero and is left out of the server summary.
        """
        with self._lock:
            rec = self._records.get(seq)
            if rec is None or not rec.lost:
                return

            proc_ns = server_proc_ns or 0
            rec.recv_time_ns = recv_time_ns
            rec.latency_ms = (recv_time_ns - rec.sent_time_ns) / 1e6
            rec.server_proc_ms = proc_ns / 1e6
            rec.net_latency_ms = max(0.0, rec.latency_ms - rec.server_proc_ms)
            rec.lost = False
            if self.late_threshold_ms is not None and rec.latency_ms > self.late_threshold_ms:
                rec.late = True
                self.late += 1

            self.received += 1
            self._latencies.append(rec.latency_ms)
            self._lat.add(rec.latency_ms)
            if server_proc_ns is not None:
                self._net_latencies.append(rec.net_latency_ms)
                self._net.add(rec.net_latency_ms)
                self._server.add(rec.server_proc_ms)

            if rec.sent_time_ns >= self._win_start_ns:
                self._win_received += 1
                if rec.late:
                    self._win_late += 1
                self._win_lat.append(rec.latency_ms)
                self._win_net.append(rec.net_latency_ms)
                self._win_server.append(rec.server_proc_ms)

    def window_snapshot(self) -> Optional[WindowSnapshot]:
        """Capture and reset the current window.

        Returns None when called sooner than WINDOW_INTERVAL_S after the
        previous snapshot (or the start of the run).
        """
        with self._lock:
            now = self._clock_ns()
            if now - self._last_window_ns < WINDOW_INTERVAL_S * 1e9:
                return None
            elapsed_s = (now - self._start_ns) / 1e9
            sent = self._win_sent
            received = self._win_received
            late = self._win_late
            lat = self._win_lat
            net = self._win_net
            server = self._win_server
            self._last_window_ns = now
            self._reset_window(now)

        loss_pct = (sent - received) / sent * 100.0 if sent else 0.0
        lo, avg, hi, jit = calc_stats(lat)
        return WindowSnapshot(
            elapsed_s=elapsed_s,
            sent=sent,
            received=received,
            late=late,
            loss_pct=loss_pct,
            min_ms=lo,
            avg_ms=avg,
            max_ms=hi,
            jitter_ms=jit,
            avg_net_ms=mean(net),
            avg_server_ms=mean(server),
            spike=jit > SPIKE_JITTER_MS,
        )

    def final_summary(self) -> Summary:
        with self._lock:
            sent = self.sent
            received = self.received
            late = self.late
            latencies = list(self._latencies)
            net_latencies = list(self._net_latencies)
            lat = (self._lat.lo, self._lat.avg, self._lat.hi)
            net = (self._net.lo, self._net.avg, self._net.hi)
            server = (self._server.lo, self._server.avg, self._server.hi, self._server.count)

        lost = sent - received
        summary = Summary(
            sent=sent,
            received=received,
            lost=lost,
            late=late,
            loss_pct=lost / sent * 100.0 if sent else 0.0,
            late_pct=late / sent * 100.0 if sent else 0.0,
            late_threshold_ms=self.late_threshold_ms,
        )
        if latencies:
            summary.latency = LatencySummary(
                min_ms=lat[0],
                avg_ms=lat[1],
                max_ms=lat[2],
                jitter_ms=jitter(latencies),
                p50_ms=percentile(latencies, 50),
                p90_ms=percentile(latencies, 90),
                p99_ms=percentile(latencies, 99),
            )
        if net_latencies:
            summary.net_latency = LatencySummary(
                min_ms=net[0],
                avg_ms=net[1],
                max_ms=net[2],
                jitter_ms=jitter(net_latencies),
                p50_ms=percentile(net_latencies, 50),
                p90_ms=percentile(net_latencies, 90),
                p99_ms=percentile(net_latencies, 99),
            )
        if server[3]:
            summary.server_proc = ServerProcSummary(min_ms=server[0], avg_ms=server[1], max_ms=server[2])
        return summary

    def all_records(self) -> List[PacketRecord]:
        # Copies, so callers can read them while the run continues
        with self._lock:
            return [replace(r) for r in self._records.values()]
