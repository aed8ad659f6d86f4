"""
collectors/sockets.py

SocketTable — parses /proc/net/tcp and /proc/net/udp into SocketRecords
keyed by socket inode.

Column layout (space-separated, one header line):
  sl  local_address  rem_address  st  tx_queue:rx_queue  tr:tm->when  retrnsmt  uid  timeout  inode ...

Addresses are 'AABBCCDD:PPPP' — a little-endian 32-bit IPv4 address and a
big-endian port, both hex.
"""

from __future__ import annotations

import logging
import socket
import struct
from pathlib import Path

from ..metrics import METRICS
from ..models import Protocol, SocketRecord

logger = logging.getLogger(__name__)

TCP_STATES: dict[str, str] = {
    "01": "ESTABLISHED",
    "02": "SYN_SENT",
    "03": "SYN_RECV",
    "04": "FIN_WAIT1",
    "05": "FIN_WAIT2",
    "06": "TIME_WAIT",
    "07": "CLOSE",
    "08": "CLOSE_WAIT",
    "09": "LAST_ACK",
    "0A": "LISTEN",
    "0B": "CLOSING",
}

UDP_STATE = "STATELESS"

# Inode 0 means the socket has no owning file handle (e.g. TIME_WAIT).
_NO_INODE = "0"
_MIN_FIELDS = 10


def tcp_state(code: str) -> str:
    """Map a hex state code to its name; unknown codes pass through."""
    return TCP_STATES.get(code.upper(), code)


def parse_hex_ip(hex_addr: str) -> str:
    """'0100007F' → '127.0.0.1'."""
    if len(hex_addr) != 8:
        raise ValueError(f"not a 32-bit hex address: {hex_addr!r}")
    return socket.inet_ntoa(struct.pack("<I", int(hex_addr, 16)))


def _hex_to_ip_port(hex_endpoint: str) -> tuple[str, int]:
    addr, port_hex = hex_endpoint.split(":")
    return parse_hex_ip(addr), int(port_hex, 16)


def parse_table_line(line: str, protocol: Protocol) -> SocketRecord | None:
    """Parse one data row; None for rows that cannot be parsed."""
    parts = line.split()
    if len(parts) < _MIN_FIELDS:
        return None
    try:
        local_addr, local_port = _hex_to_ip_port(parts[1])
        remote_addr, remote_port = _hex_to_ip_port(parts[2])
    except (ValueError, struct.error):
        return None

    return SocketRecord(
        protocol=protocol,
        local_addr=local_addr,
        local_port=local_port,
        remote_addr=remote_addr,
        remote_port=remote_port,
        state=tcp_state(parts[3]) if protocol == "tcp" else UDP_STATE,
        connection_id=parts[9],
    )


class SocketTable:
    """Reads the kernel's IPv4 TCP and UDP tables."""

    def __init__(self, proc_root: Path = Path("/proc")) -> None:
        self._tables: tuple[tuple[Path, Protocol], ...] = (
            (proc_root / "net" / "tcp", "tcp"),
            (proc_root / "net" / "udp", "udp"),
        )

    def read_all(self) -> dict[str, SocketRecord]:
        """Return {connection_id: SocketRecord} across both tables."""
        sockets: dict[str, SocketRecord] = {}
        for path, protocol in self._tables:
            sockets.update(self._read_table(path, protocol))
        return sockets

    def _read_table(self, path: Path, protocol: Protocol) -> dict[str, SocketRecord]:
        try:
            lines = path.read_text().splitlines()
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            return {}

        records: dict[str, SocketRecord] = {}
        for line in lines[1:]:  # skip header
            if not line.strip():
                continue
            record = parse_table_line(line, protocol)
            if record is None:
                METRICS.table_rows_skipped.inc()
                continue
            if record.connection_id == _NO_INODE:
                continue
            records[record.connection_id] = record
        return records
