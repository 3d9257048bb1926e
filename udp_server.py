#!/usr/bin/env python3
import argparse
import asyncio
import logging
import socket
import sys
import time
from dataclasses import dataclass, field

from udp_packet import stamp_server_proc

DEFAULT_PORT = 9999

logger = logging.getLogger(__name__)


class _EchoProtocol(asyncio.DatagramProtocol):
    def __init__(self, name: str, stamp: bool, seen: set):
        self.name = name
        self.stamp = stamp
        self.seen = seen
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        recv_ns = time.perf_counter_ns()

        if addr not in self.seen:
            self.seen.add(addr)
            logger.info(f"[server] New client: {addr[0]}:{addr[1]} via {self.name}")

        if self.stamp:
            buf = bytearray(data)
            if stamp_server_proc(buf, time.perf_counter_ns() - recv_ns):
                data = bytes(buf)

        try:
            self.transport.sendto(data, addr)
        except OSError as e:
            logger.warning(f"[server] Write error to {addr[0]}:{addr[1]}: {e}")

    def error_received(self, exc):
        # Keep serving other clients
        logger.warning(f"[server] Read error on {self.name}: {exc}")


@dataclass
class EchoServer:
    host_v4: str = "0.0.0.0"
    host_v6: str = "::"
    port: int = DEFAULT_PORT
    stamp: bool = True
    seen: set = field(default_factory=set)

    async def _endpoint(self, loop, name, family, host):
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6:
                # v6-only to avoid dual-stack conflicts with the v4 socket
                try:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
                except OSError:
                    pass
            sock.bind((host, self.port))
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _EchoProtocol(name, self.stamp, self.seen), sock=sock
            )
        except Exception:
            sock.close()
            raise
        return transport

    async def start(self):
        """Bind the configured sockets and return their transports.

        If any bind fails, sockets already opened are closed before the
        error propagates.
        """
        loop = asyncio.get_running_loop()

        transports = []
        try:
            if self.host_v4:
                transports.append(await self._endpoint(loop, "v4", socket.AF_INET, self.host_v4))
            if self.host_v6:
                transports.append(await self._endpoint(loop, "v6", socket.AF_INET6, self.host_v6))
        except Exception:
            for t in transports:
                t.close()
            raise
        return transports


async def serve(server: EchoServer):
    transports = await server.start()
    for t in transports:
        host, port = t.get_extra_info("sockname")[:2]
        print(f"[server] UDP echo listening on {host}:{port}")
    print("[server] Press Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        for t in transports:
            t.close()


def main():
    ap = argparse.ArgumentParser(description="UDP echo server for packet loss / latency tests")
    ap.add_argument("--host-v4", default="0.0.0.0", help="IPv4 bind host, empty to disable (default: 0.0.0.0)")
    ap.add_argument("--host-v6", default="::", help="IPv6 bind host, empty to disable (default: ::)")
    ap.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"UDP port (default: {DEFAULT_PORT})")
    ap.add_argument("--no-stamp", action="store_true", help="Do not write server processing time into replies")
    ap.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = ap.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    server = EchoServer(host_v4=args.host_v4, host_v6=args.host_v6, port=args.port, stamp=not args.no_stamp)
    try:
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        pass
    except OSError as e:
        print(f"Error: failed to listen on port {args.port}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
