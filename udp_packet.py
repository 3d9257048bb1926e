#!/usr/bin/env python3
import struct
import time
from dataclasses import dataclass
from typing import Optional

"""
Probe header carried in both directions (network byte order):
    seq:          uint64  sequence number, starts at 1
    send_ns:      int64   client send time, ns since epoch
    server_ns:    int64   server processing time (extended header only)

The client fills seq and send_ns. When the extended header is in use the
responder overwrites server_ns in place before reflecting the datagram.
Everything after the header is zero padding.
"""
HEADER_FORMAT = "!Qq"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

EXT_HEADER_FORMAT = "!Qqq"
EXT_HEADER_SIZE = struct.calcsize(EXT_HEADER_FORMAT)

SERVER_PROC_FORMAT = "!q"
SERVER_PROC_OFFSET = HEADER_SIZE


def now_ns():
    return time.time_ns()


def header_size(extended=False):
    return EXT_HEADER_SIZE if extended else HEADER_SIZE


@dataclass
class Packet:
    seq_num: int
    timestamp_ns: int
    server_proc_ns: int = 0
    payload: bytes = b""


def new_packet(seq_num):
    """Create a packet stamped with the current time. Padding is added by encode."""
    return Packet(seq_num=seq_num, timestamp_ns=now_ns())


def encode(packet, size, extended=False):
    hlen = header_size(extended)
    if size < hlen:
        raise ValueError(f"packet size must be >= {hlen}")
    if extended:
        header = struct.pack(EXT_HEADER_FORMAT, packet.seq_num, packet.timestamp_ns, packet.server_proc_ns)
    else:
        header = struct.pack(HEADER_FORMAT, packet.seq_num, packet.timestamp_ns)
    return header.ljust(size, b"\x00")


def decode(data, extended=False) -> Optional[Packet]:
    hlen = header_size(extended)
    if len(data) < hlen:
        return None
    if extended:
        seq, send_ns, server_ns = struct.unpack(EXT_HEADER_FORMAT, data[:hlen])
    else:
        seq, send_ns = struct.unpack(HEADER_FORMAT, data[:hlen])
        server_ns = 0
    return Packet(seq_num=seq, timestamp_ns=send_ns, server_proc_ns=server_ns, payload=bytes(data[hlen:]))


def stamp_server_proc(buf, proc_ns):
    """Write processing time into a mutable datagram buffer.

    Returns False (buffer untouched) when the datagram is too short to carry
    the extended header.
    """
    if len(buf) < EXT_HEADER_SIZE:
        return False
    struct.pack_into(SERVER_PROC_FORMAT, buf, SERVER_PROC_OFFSET, proc_ns)
    return True
