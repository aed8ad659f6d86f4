"""
backend/models.py

Core data models shared by the collectors, the bandwidth supervisor and the
broadcast hub.

InterfaceSample       — per-interface counters + derived speeds (one tick)
InterfaceDetails      — slow-changing interface metadata (TTL-cached)
SocketRecord          — one row of /proc/net/{tcp,udp}
ProcessConnectionInfo — sockets owned by one process (one scan)
BandwidthRecord       — latest per-process rates reported by nethogs
Snapshot              — everything above for one aggregation tick

to_dict() methods produce the wire shape consumed by dashboard clients,
which uses camelCase keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Protocol = Literal["tcp", "udp"]


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

@dataclass
class InterfaceSample:
    """Cumulative byte counters and derived speeds for one interface."""

    name: str
    category: str

    rx_bytes: int
    """Cumulative received bytes as reported by the kernel."""

    tx_bytes: int
    """Cumulative transmitted bytes as reported by the kernel."""

    rx_speed: float = 0.0
    """Bytes/second since the previous sample, never negative."""

    tx_speed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "category": self.category,
            "rxBytes": self.rx_bytes,
            "txBytes": self.tx_bytes,
            "rxSpeed": self.rx_speed,
            "txSpeed": self.tx_speed,
        }


@dataclass
class InterfaceDetails:
    """
    Interface metadata from /sys/class/net and `ip addr`.

    The defaults are the sentinels reported when a field cannot be read.
    """

    mac: str = "unknown"
    mtu: int = 0
    state: str = "unknown"

    speed: int | None = None
    """Link speed in Mbps (physical interfaces only)."""

    duplex: str | None = None
    ipv4: list[str] = field(default_factory=list)

    ipv6: list[str] = field(default_factory=list)
    """Global/ULA addresses only; fe80:: link-local is excluded."""

    def to_dict(self) -> dict:
        return {
            "mac": self.mac,
            "mtu": self.mtu,
            "state": self.state,
            "speed": self.speed,
            "duplex": self.duplex,
            "ipv4": list(self.ipv4),
            "ipv6": list(self.ipv6),
        }


# ---------------------------------------------------------------------------
# Sockets & processes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SocketRecord:
    protocol: Protocol
    local_addr: str
    local_port: int
    remote_addr: str
    remote_port: int
    state: str
    connection_id: str
    """Socket inode — matches the `socket:[<id>]` link in /proc/<pid>/fd."""

    def to_dict(self) -> dict:
        return {
            "protocol": self.protocol,
            "localAddr": self.local_addr,
            "localPort": self.local_port,
            "remoteAddr": self.remote_addr,
            "remotePort": self.remote_port,
            "state": self.state,
        }


@dataclass
class ProcessConnectionInfo:
    """
    Sockets owned by a single process.

    Identity is the pid alone; a pid recycled by the OS between scans is
    indistinguishable from the original process.
    """

    pid: int
    name: str
    cmdline: str
    sockets: list[SocketRecord] = field(default_factory=list)

    @property
    def tcp_count(self) -> int:
        return sum(1 for s in self.sockets if s.protocol == "tcp")

    @property
    def udp_count(self) -> int:
        return sum(1 for s in self.sockets if s.protocol == "udp")

    @property
    def total_count(self) -> int:
        return len(self.sockets)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "name": self.name,
            "cmdline": self.cmdline,
            "connections": {
                "tcp": self.tcp_count,
                "udp": self.udp_count,
                "total": self.total_count,
            },
            "sockets": [s.to_dict() for s in self.sockets],
        }


# ---------------------------------------------------------------------------
# Bandwidth
# ---------------------------------------------------------------------------

@dataclass
class BandwidthRecord:
    pid: int
    name: str
    user: str
    sent_kbs: float
    received_kbs: float

    @property
    def total_kbs(self) -> float:
        return self.sent_kbs + self.received_kbs

    @property
    def is_idle(self) -> bool:
        return self.total_kbs <= 0

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "name": self.name,
            "user": self.user,
            "sentKBs": self.sent_kbs,
            "receivedKBs": self.received_kbs,
        }


# ---------------------------------------------------------------------------
# Snapshot — the unit of broadcast
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Snapshot:
    """
    One fully assembled aggregation tick.

    `interfaces` holds (sample, details) pairs; they are flattened into a
    single object per interface on the wire.
    """

    interfaces: tuple[tuple[InterfaceSample, InterfaceDetails], ...]
    processes: tuple[ProcessConnectionInfo, ...]
    top_processes: tuple[ProcessConnectionInfo, ...]
    bandwidth: tuple[BandwidthRecord, ...]
    bandwidth_enabled: bool
    timestamp: int
    """Milliseconds since the Unix epoch."""

    def to_dict(self) -> dict:
        return {
            "interfaces": [
                {**sample.to_dict(), **details.to_dict()}
                for sample, details in self.interfaces
            ],
            "processes": [p.to_dict() for p in self.processes],
            "topProcesses": [p.to_dict() for p in self.top_processes],
            "bandwidth": [b.to_dict() for b in self.bandwidth],
            "bandwidthEnabled": self.bandwidth_enabled,
            "timestamp": self.timestamp,
        }
