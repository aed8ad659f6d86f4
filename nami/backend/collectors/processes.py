"""
collectors/processes.py

ProcessCorrelator — which process owns which socket.

Every socket row in /proc/net/{tcp,udp} carries an inode; every open socket
handle shows up as a /proc/<pid>/fd/<n> symlink to 'socket:[<inode>]'.
Walking all fd tables once per scan joins the two.

Cost is O(open handles across all processes). Processes vanish and deny
access mid-scan all the time, so every per-process and per-fd failure is
absorbed locally and the rest of the scan continues.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from ..models import ProcessConnectionInfo, SocketRecord
from .sockets import SocketTable

logger = logging.getLogger(__name__)

_SOCKET_LINK_RE = re.compile(r"^socket:\[(\d+)\]$")
UNKNOWN = "unknown"


def read_process_name(proc_root: Path, pid: int) -> str:
    try:
        raw = (proc_root / str(pid) / "comm").read_bytes()
    except OSError:
        return UNKNOWN
    return raw.decode(errors="replace").strip() or UNKNOWN


def read_process_cmdline(proc_root: Path, pid: int) -> str:
    """Full argv joined with spaces; falls back to the short name."""
    try:
        raw = (proc_root / str(pid) / "cmdline").read_bytes()
    except OSError:
        return read_process_name(proc_root, pid)
    cmdline = raw.replace(b"\0", b" ").decode(errors="replace").strip()
    return cmdline or read_process_name(proc_root, pid)


class ProcessCorrelator:
    """
    Builds per-process connection summaries.

    Args:
        socket_table: Source of {connection_id: SocketRecord}.
        proc_root:    Root of the proc filesystem.
    """

    def __init__(self, socket_table: SocketTable, proc_root: Path = Path("/proc")) -> None:
        self._socket_table = socket_table
        self._proc_root = proc_root

    def list_processes(self) -> list[ProcessConnectionInfo]:
        """All processes owning at least one socket, most connections first."""
        sockets = self._socket_table.read_all()
        if not sockets:
            return []

        processes: list[ProcessConnectionInfo] = []
        for pid in self._pids():
            owned = self._owned_sockets(pid, sockets)
            if not owned:
                continue
            processes.append(ProcessConnectionInfo(
                pid=pid,
                name=read_process_name(self._proc_root, pid),
                cmdline=read_process_cmdline(self._proc_root, pid),
                sockets=owned,
            ))

        processes.sort(key=lambda p: p.total_count, reverse=True)
        return processes

    def top(self, n: int = 5) -> list[ProcessConnectionInfo]:
        return self.list_processes()[:n]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pids(self) -> list[int]:
        try:
            with os.scandir(self._proc_root) as it:
                return [int(d.name) for d in it if d.name.isdigit()]
        except OSError as exc:
            logger.error("Failed to scan %s: %s", self._proc_root, exc)
            return []

    def _owned_sockets(self, pid: int, sockets: dict[str, SocketRecord]) -> list[SocketRecord]:
        fd_dir = self._proc_root / str(pid) / "fd"
        try:
            with os.scandir(fd_dir) as it:
                entries = list(it)
        except OSError:
            # Permission denied, or the process already exited.
            return []

        owned: list[SocketRecord] = []
        for entry in entries:
            try:
                target = os.readlink(entry.path)
            except OSError:
                continue
            match = _SOCKET_LINK_RE.match(target)
            if match is None:
                continue
            record = sockets.get(match.group(1))
            if record is not None:
                owned.append(record)
        return owned
