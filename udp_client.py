#!/usr/bin/env python3
import argparse
import asyncio
import csv
import logging
import socket
import sys
import time
from dataclasses import dataclass

from udp_packet import decode, encode, header_size, new_packet, now_ns
from udp_plot import generate_plot, open_browser
from udp_stats import Stats

# ================= DEFAULTS =================
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 9999
PACKET_SIZE = 128
RATE = 64                    # packets per second
DURATION = 30                # seconds
BURST_SIZE = 10
LATE_THRESHOLD_MS = 100.0
GRACE_S = 0.5                # wait for in-flight replies after the last send
RECV_POLL_S = 0.1            # receiver read timeout, bounds stop latency
REPORT_POLL_S = 0.1
# ============================================

logger = logging.getLogger(__name__)


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    packet_size: int = PACKET_SIZE
    rate: float = RATE
    duration: float = DURATION
    output: str = ""
    burst: bool = False
    burst_size: int = BURST_SIZE
    no_plot: bool = False
    late_threshold_ms: float = LATE_THRESHOLD_MS
    server_proc: bool = True
    grace_s: float = GRACE_S

    @property
    def header_size(self):
        return header_size(self.server_proc)

    def validate(self):
        if self.packet_size < self.header_size:
            raise ValueError(f"packet-size must be at least {self.header_size} bytes")
        if self.rate <= 0:
            raise ValueError("rate must be positive")
        if self.duration < 0:
            raise ValueError("duration must not be negative")
        if self.burst and self.burst_size < 1:
            raise ValueError("burst-size must be at least 1")


# ---------- Console rendering ----------
def format_window(snap):
    spike = "  << spike" if snap.spike else ""
    return (
        f"[{int(snap.elapsed_s)}s] Win Loss: {snap.loss_pct:.1f}%  Late: {snap.late}  "
        f"RTT: {snap.min_ms:.0f}/{snap.avg_ms:.0f}/{snap.max_ms:.0f}ms  Jitter: {snap.jitter_ms:.0f}ms  "
        f"Net: {snap.avg_net_ms:.0f}ms  Srv: {snap.avg_server_ms:.0f}ms{spike}"
    )


def _fmt_dist(name, d):
    return (
        f"{name}: min={d.min_ms:.2f}ms avg={d.avg_ms:.2f}ms max={d.max_ms:.2f}ms "
        f"p50={d.p50_ms:.2f}ms p90={d.p90_ms:.2f}ms p99={d.p99_ms:.2f}ms"
    )


def format_summary(s):
    lines = ["", "--- Summary ---"]
    lines.append(
        f"Packets: {s.sent} sent, {s.received} received, {s.lost} lost ({s.loss_pct:.2f}%), "
        f"{s.late} late ({s.late_pct:.2f}%)"
    )
    if s.late_threshold_ms is not None:
        lines.append(f"Late threshold: {s.late_threshold_ms:.0f}ms")
    else:
        lines.append("Late threshold: disabled")

    if s.latency is None:
        lines.append("RTT: no data (all packets lost)")
    else:
        lines.append(_fmt_dist("RTT", s.latency))
        lines.append(f"Jitter: {s.latency.jitter_ms:.2f}ms average")

    if s.net_latency is not None:
        lines.append(_fmt_dist("Net+Client", s.net_latency))

    if s.server_proc is not None:
        sp = s.server_proc
        lines.append(f"Server proc: min={sp.min_ms:.3f}ms avg={sp.avg_ms:.3f}ms max={sp.max_ms:.3f}ms")
    else:
        lines.append("Server proc: no data")
    return "\n".join(lines)


# ---------- CSV export ----------
def default_output_name():
    return f"packet-test_{time.strftime('%Y-%m-%d_%H-%M-%S')}.csv"


def csv_columns(server_proc=True, late=True):
    cols = ["seq", "sent_time", "recv_time", "latency_ms", "lost"]
    if server_proc:
        cols += ["server_proc_ms", "net_latency_ms"]
    if late:
        cols.append("late")
    return cols


def save_csv(path, records, server_proc=True, late=True):
    """Write per-packet records ordered by sequence number.

    Timestamps are written as integer milliseconds since the epoch; a
    record that never got a reply has recv_time 0.
    """
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(csv_columns(server_proc, late))
        for r in sorted(records, key=lambda r: r.seq_num):
            row = [
                r.seq_num,
                r.sent_time_ns // 1_000_000,
                r.recv_time_ns // 1_000_000,
                f"{r.latency_ms:.2f}",
                "true" if r.lost else "false",
            ]
            if server_proc:
                row += [f"{r.server_proc_ms:.3f}", f"{r.net_latency_ms:.2f}"]
            if late:
                row.append("true" if r.late else "false")
            w.writerow(row)
    logger.info(f"[client] Wrote {path}")


# ---------- Measurement ----------
def open_socket(host, port):
    gai = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP)
    if not gai:
        raise OSError(f"DNS resolution failed for {host}")
    af, _, _, _, sa = gai[0]
    sock = socket.socket(af, socket.SOCK_DGRAM)
    try:
        sock.setblocking(False)
        sock.connect(sa)
    except OSError:
        sock.close()
        raise
    return sock


async def run_client(cfg: ClientConfig, stats: Stats = None):
    """Run one measurement and return the populated Stats.

    The sender and receiver run as two tasks over one connected socket and
    share only ``stats`` and a stop event. The receiver keeps draining for
    ``cfg.grace_s`` after the last send before it is told to stop.
    """
    cfg.validate()
    if stats is None:
        stats = Stats(late_threshold_ms=cfg.late_threshold_ms)

    sock = open_socket(cfg.host, cfg.port)
    loop = asyncio.get_running_loop()
    sending_done = asyncio.Event()
    stop_event = asyncio.Event()

    target = f"{cfg.host}:{cfg.port}"
    if cfg.burst:
        print(f"Sending {cfg.rate:g} pps in bursts of {cfg.burst_size}, {cfg.packet_size} byte packets to {target}\n")
    else:
        print(f"Sending {cfg.rate:g} pps, {cfg.packet_size} byte packets to {target}\n")

    async def sender():
        if cfg.burst:
            per_tick = cfg.burst_size
            interval = cfg.burst_size / float(cfg.rate)
        else:
            per_tick = 1
            interval = 1.0 / float(cfg.rate)
        seq = 1
        deadline = time.monotonic() + cfg.duration
        next_t = time.monotonic()
        while time.monotonic() < deadline:
            for _ in range(per_tick):
                pkt = new_packet(seq)
                data = encode(pkt, cfg.packet_size, cfg.server_proc)
                # Account before the packet can possibly come back
                stats.record_sent(seq, pkt.timestamp_ns)
                try:
                    await loop.sock_sendall(sock, data)
                except OSError as e:
                    logger.warning(f"[client] Send error: {e}")
                seq += 1
            next_t += interval
            now = time.monotonic()
            if next_t < now:
                # Fell behind; drop the missed ticks instead of bursting to catch up
                next_t = now + interval
            await asyncio.sleep(next_t - now)
        sending_done.set()
        await asyncio.sleep(cfg.grace_s)
        stop_event.set()

    async def receiver():
        while not stop_event.is_set():
            try:
                data = await asyncio.wait_for(loop.sock_recv(sock, 65535), timeout=RECV_POLL_S)
            except asyncio.TimeoutError:
                continue
            except OSError as e:
                # e.g. ICMP port unreachable surfaced on a connected socket
                logger.debug(f"[client] Receive error: {e}")
                await asyncio.sleep(0.01)
                continue
            recv_ns = now_ns()
            pkt = decode(data, cfg.server_proc)
            if pkt is None:
                continue
            stats.record_received(pkt.seq_num, recv_ns, pkt.server_proc_ns if cfg.server_proc else None)

    async def reporter():
        while not sending_done.is_set():
            snap = stats.window_snapshot()
            if snap is not None:
                print(format_window(snap))
            try:
                await asyncio.wait_for(sending_done.wait(), timeout=REPORT_POLL_S)
            except asyncio.TimeoutError:
                pass

    try:
        await asyncio.gather(sender(), receiver(), reporter())
    finally:
        sock.close()
    return stats


def run(cfg: ClientConfig):
    stats = asyncio.run(run_client(cfg))
    print(format_summary(stats.final_summary()))

    output = cfg.output or default_output_name()
    save_csv(output, stats.all_records(), server_proc=cfg.server_proc, late=stats.late_threshold_ms is not None)
    print(f"\nResults saved to {output}")

    if not cfg.no_plot:
        html = generate_plot(output)
        open_browser(html)
    return stats


def main():
    ap = argparse.ArgumentParser(description="UDP packet loss / latency / jitter test client")
    ap.add_argument("--host", default=DEFAULT_HOST, help=f"Server address (default: {DEFAULT_HOST})")
    ap.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"UDP port (default: {DEFAULT_PORT})")
    ap.add_argument("--packet-size", type=int, default=PACKET_SIZE, help=f"Packet size in bytes (default: {PACKET_SIZE})")
    ap.add_argument("--rate", type=float, default=RATE, help=f"Packets per second (default: {RATE})")
    ap.add_argument("--duration", type=float, default=DURATION, help=f"Test duration in seconds (default: {DURATION})")
    ap.add_argument("--output", default="", help="CSV filename (auto-generated if empty)")
    ap.add_argument("--burst", action="store_true", help="Send packets in bursts (exposes WiFi buffering)")
    ap.add_argument("--burst-size", type=int, default=BURST_SIZE, help=f"Packets per burst with --burst (default: {BURST_SIZE})")
    ap.add_argument("--no-plot", action="store_true", help="Don't generate HTML plot or open browser")
    ap.add_argument("--late-threshold", type=float, default=LATE_THRESHOLD_MS,
                    help=f"Replies above this latency (ms) count as late, <= 0 disables (default: {LATE_THRESHOLD_MS:g})")
    ap.add_argument("--no-server-proc", action="store_true",
                    help="Use the short header without the server processing time field")
    ap.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    args = ap.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    cfg = ClientConfig(
        host=args.host,
        port=args.port,
        packet_size=args.packet_size,
        rate=args.rate,
        duration=args.duration,
        output=args.output,
        burst=args.burst,
        burst_size=args.burst_size,
        no_plot=args.no_plot,
        late_threshold_ms=args.late_threshold,
        server_proc=not args.no_server_proc,
    )
    try:
        cfg.validate()
        run(cfg)
    except KeyboardInterrupt:
        pass
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
