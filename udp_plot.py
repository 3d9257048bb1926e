#!/usr/bin/env python3
import argparse
import csv
import json
import logging
import math
import os
import platform
import subprocess
import sys
from string import Template

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("seq", "recv_time", "latency_ms", "lost")
THROUGHPUT_WINDOW_MS = 500

HTML_TEMPLATE = Template("""<!DOCTYPE html>
<html>
<head>
    <title>Packet Loss Test Results</title>
    <script src="https://cdn.jsdelivr.net/npm/chart.js"></script>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
               margin: 0; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .chart-container { background: #16213e; border-radius: 8px; padding: 20px; margin-bottom: 20px; }
        .stats { display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 15px; margin-bottom: 20px; }
        .stat-box { background: #16213e; padding: 15px; border-radius: 8px; text-align: center; }
        .stat-value { font-size: 2em; color: #00d9ff; font-weight: bold; }
        .stat-label { color: #888; font-size: 0.9em; }
    </style>
</head>
<body>
    <h1>UDP Packet Loss Test Results</h1>

    <div class="stats">
        <div class="stat-box"><div class="stat-value">$total_packets</div><div class="stat-label">Packets Sent</div></div>
        <div class="stat-box"><div class="stat-value">$loss_percent%</div><div class="stat-label">Packet Loss</div></div>
        <div class="stat-box"><div class="stat-value">${avg_latency}ms</div><div class="stat-label">Avg Latency</div></div>
        <div class="stat-box"><div class="stat-value">${max_latency}ms</div><div class="stat-label">Max Latency</div></div>
        <div class="stat-box"><div class="stat-value">$avg_net</div><div class="stat-label">Avg Net+Client</div></div>
        <div class="stat-box"><div class="stat-value">$avg_server</div><div class="stat-label">Avg Server Proc</div></div>
    </div>

    <div class="chart-container"><canvas id="latencyChart"></canvas></div>
    <div class="chart-container"><canvas id="netLatencyChart"></canvas></div>
    <div class="chart-container"><canvas id="serverProcChart"></canvas></div>
    <div class="chart-container"><canvas id="throughputChart"></canvas></div>
    <div class="chart-container"><canvas id="lossChart"></canvas></div>

    <script>
        const data = $data_json;
        const throughput = $throughput_json;
        const loss = $loss_json;

        function axes(xLabel, yLabel, minZero) {
            const y = { title: { display: true, text: yLabel, color: '#888' }, ticks: { color: '#888' }, grid: { color: '#333' } };
            if (minZero) y.min = 0;
            return {
                x: { title: { display: true, text: xLabel, color: '#888' }, ticks: { color: '#888', maxTicksLimit: 20 }, grid: { color: '#333' } },
                y: y
            };
        }

        function options(title, xLabel, yLabel, minZero) {
            return {
                responsive: true,
                plugins: { title: { display: true, text: title, color: '#eee' } },
                scales: axes(xLabel, yLabel, minZero)
            };
        }

        function lineSeries(id, key, label, color, fill, title, yLabel) {
            if (!data.some(d => d[key] !== null)) {
                document.getElementById(id).parentElement.style.display = 'none';
                return;
            }
            new Chart(document.getElementById(id), {
                type: 'line',
                data: {
                    labels: data.map(d => d.seq),
                    datasets: [{ label: label, data: data.map(d => d.lost ? null : d[key]),
                                 borderColor: color, backgroundColor: fill, pointRadius: 0, spanGaps: true, borderWidth: 2 }]
                },
                options: options(title, 'Packet Sequence', yLabel, false)
            });
        }

        new Chart(document.getElementById('latencyChart'), {
            type: 'bar',
            data: {
                labels: data.map(d => d.seq),
                datasets: [{
                    label: 'Latency (ms)',
                    data: data.map(d => d.lost ? null : d.latency),
                    backgroundColor: data.map(d => d.lost ? '#ff6b6b' : (d.latency > 50 ? '#feca57' : '#00d9ff')),
                    borderWidth: 0
                }]
            },
            options: options('Latency Per Packet', 'Packet Sequence', 'Latency (ms)', false)
        });

        lineSeries('netLatencyChart', 'net', 'Net+Client (ms)', '#4ecdc4', 'rgba(78, 205, 196, 0.2)',
                   'Net+Client Latency Per Packet', 'Latency (ms)');
        lineSeries('serverProcChart', 'server', 'Server Proc (ms)', '#feca57', 'rgba(254, 202, 87, 0.2)',
                   'Server Processing Time Per Packet', 'Time (ms)');

        if (throughput.length > 0) {
            new Chart(document.getElementById('throughputChart'), {
                type: 'bar',
                data: {
                    labels: throughput.map(d => d.time + 's'),
                    datasets: [{
                        label: 'Packets/sec',
                        data: throughput.map(d => d.pps),
                        backgroundColor: throughput.map(d => d.pps < 30 ? '#ff6b6b' : (d.pps < 50 ? '#feca57' : '#4ecdc4')),
                        borderWidth: 0
                    }]
                },
                options: options('Throughput Over Time (packets received per second)', 'Time', 'Packets/sec', true)
            });
        } else {
            document.getElementById('throughputChart').parentElement.style.display = 'none';
        }

        new Chart(document.getElementById('lossChart'), {
            type: 'bar',
            data: {
                labels: loss.map(d => d.seq),
                datasets: [{
                    label: 'Packet Loss %',
                    data: loss.map(d => d.loss),
                    backgroundColor: loss.map(d => d.loss > 1 ? '#ff6b6b' : '#4ecdc4')
                }]
            },
            options: options('Packet Loss Over Time', 'Packet Sequence', 'Loss %', true)
        });
    </script>
</body>
</html>
""")


def _to_float(v):
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _to_int(v):
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def read_points(csv_path):
    """Load per-packet points from a results CSV, looking columns up by name."""
    with open(csv_path, newline="") as f:
        reader = csv.reader(f)
        rows = list(reader)

    if len(rows) < 2:
        raise ValueError("CSV file is empty or has no data rows")

    col = {name.strip(): i for i, name in enumerate(rows[0])}
    for name in REQUIRED_COLUMNS:
        if name not in col:
            raise ValueError(f"CSV missing required column: {name}")
    net_idx = col.get("net_latency_ms")
    server_idx = col.get("server_proc_ms")
    needed = max(col[name] for name in REQUIRED_COLUMNS)

    points = []
    for row in rows[1:]:
        if len(row) <= needed:
            continue
        seq = _to_int(row[col["seq"]])
        if seq is None:
            continue
        lost = row[col["lost"]].strip().lower() == "true"
        net = _to_float(row[net_idx]) if net_idx is not None and net_idx < len(row) else None
        server = _to_float(row[server_idx]) if server_idx is not None and server_idx < len(row) else None
        points.append({
            "seq": seq,
            "recvTime": _to_int(row[col["recv_time"]]) or 0,
            "latency": _to_float(row[col["latency_ms"]]) or 0.0,
            "net": net,
            "server": server,
            "lost": lost,
        })
    points.sort(key=lambda p: p["seq"])
    return points


def throughput_series(points, window_ms=THROUGHPUT_WINDOW_MS):
    received = [p["recvTime"] for p in points if not p["lost"] and p["recvTime"] > 0]
    if not received:
        return []
    t_min = min(received)
    t_max = max(received)
    # Buckets start at t_min and stop before t_max; a reply landing exactly
    # on a boundary past the last bucket is not counted
    n = math.ceil((t_max - t_min) / window_ms)
    counts = [0] * n
    for r in received:
        idx = int((r - t_min) // window_ms)
        if idx < n:
            counts[idx] += 1
    return [
        {"time": f"{i * window_ms / 1000.0:.1f}", "pps": c / window_ms * 1000.0}
        for i, c in enumerate(counts)
    ]


def loss_series(points):
    if not points:
        return []
    size = max(10, len(points) // 100)
    out = []
    for i in range(0, len(points), size):
        win = points[i:i + size]
        lost = sum(1 for p in win if p["lost"])
        out.append({"seq": int(i + size / 2), "loss": lost / len(win) * 100.0})
    return out


def summarize_points(points):
    received = [p for p in points if not p["lost"]]
    total = len(points)
    lost = total - len(received)
    summary = {
        "total_packets": total,
        "loss_percent": lost / total * 100.0 if total else 0.0,
        "avg_latency": 0.0,
        "max_latency": 0.0,
        "avg_net": None,
        "avg_server": None,
    }
    if received:
        lats = [p["latency"] for p in received]
        summary["avg_latency"] = sum(lats) / len(lats)
        summary["max_latency"] = max(lats)
        nets = [p["net"] for p in received if p["net"] is not None]
        servers = [p["server"] for p in received if p["server"] is not None]
        if nets:
            summary["avg_net"] = sum(nets) / len(nets)
        if servers:
            summary["avg_server"] = sum(servers) / len(servers)
    return summary


def _fmt_ms(v):
    return "N/A" if v is None else f"{v:.1f}ms"


def render_html(points):
    s = summarize_points(points)
    return HTML_TEMPLATE.substitute(
        total_packets=s["total_packets"],
        loss_percent=f"{s['loss_percent']:.2f}",
        avg_latency=f"{s['avg_latency']:.1f}",
        max_latency=f"{s['max_latency']:.1f}",
        avg_net=_fmt_ms(s["avg_net"]),
        avg_server=_fmt_ms(s["avg_server"]),
        data_json=json.dumps(points, separators=(",", ":")),
        throughput_json=json.dumps(throughput_series(points), separators=(",", ":")),
        loss_json=json.dumps(loss_series(points), separators=(",", ":")),
    )


def html_path_for(csv_path):
    root, ext = os.path.splitext(csv_path)
    return (root if ext.lower() == ".csv" else csv_path) + ".html"


def generate_plot(csv_path):
    """Render the HTML report next to ``csv_path`` and return its path."""
    points = read_points(csv_path)
    out = html_path_for(csv_path)
    with open(out, "w") as f:
        f.write(render_html(points))
    logger.info(f"Generated {out}")
    return out


def open_browser(path):
    sys_name = platform.system().lower()
    if sys_name == "darwin":
        cmd = ["open", path]
    elif sys_name == "linux":
        cmd = ["xdg-open", path]
    elif sys_name == "windows":
        cmd = ["cmd", "/c", "start", "", path]
    else:
        print(f"Open {path} in your browser to view results")
        return
    try:
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as e:
        logger.warning(f"Could not launch browser ({e}); open {path} manually")


def main():
    ap = argparse.ArgumentParser(description="Generate an HTML chart from a packet test CSV")
    ap.add_argument("csv", help="CSV file written by udp-probe-client")
    ap.add_argument("--open", action="store_true", help="Open the generated report in a browser")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')

    try:
        out = generate_plot(args.csv)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Generated {out}")
    if args.open:
        open_browser(out)


if __name__ == "__main__":
    main()
