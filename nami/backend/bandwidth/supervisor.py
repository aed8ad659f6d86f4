"""
bandwidth/supervisor.py

BandwidthSupervisor — runs `nethogs` in tracemode as a long-lived child
process and keeps the latest per-process rates it reports.

Lifecycle:
    STOPPED → STARTING → RUNNING → STOPPED

nethogs needs root and has to be installed. Missing either one is not a
fault: start() returns False, logs why, and the feature reports itself as
disabled. If nethogs exits on its own the supervisor drops back to STOPPED
and clears its state; it is never restarted automatically.

Two cleanup paths, kept separate on purpose:
  - get_data() evicts records of dead pids on every query.
  - cleanup_stale_data() runs on the maintenance timer and also prunes the
    pid → name cache, which get_data() never touches.

Thread safety: NOT thread-safe. The stdout pump, queries and maintenance
all run on the same event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from ..metrics import METRICS
from ..models import BandwidthRecord
from .parser import SamplerLine, SamplerOutputParser

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_NAME_CACHE_MAX_DEFAULT = 500

# nethogs reports traffic it cannot attribute to a process under these.
_UNRESOLVED_PREFIXES = ("unknown TCP", "unknown UDP")


class SupervisorState(str, Enum):
    STOPPED  = "STOPPED"
    STARTING = "STARTING"
    RUNNING  = "RUNNING"


@dataclass
class CleanupResult:
    processes_removed: int = 0
    cache_entries_removed: int = 0


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def split_token(token: str) -> tuple[int, str] | None:
    """'/usr/bin/curl/4242/1000' → (4242, '1000'); None if malformed."""
    segments = token.split("/")
    if len(segments) < 3:
        return None
    pid_str = segments[-2]
    # A space-delimited device column can trail the owner.
    owner_fields = segments[-1].split()
    owner = owner_fields[0] if owner_fields else ""
    if not pid_str.isdigit():
        return None
    pid = int(pid_str)
    if pid <= 0:
        return None
    return pid, owner


class BandwidthSupervisor:
    """
    Supervises the nethogs child process and owns the bandwidth state.

    Args:
        binary:          nethogs executable name or path.
        refresh_seconds: nethogs refresh period (-d).
        devices:         Interfaces to watch; empty means all.
        proc_root:       Root of the proc filesystem (names and liveness).
        name_cache_max:  Default cap for cleanup_stale_data().
        is_alive:        Liveness check override, defaults to <proc_root>/<pid> existing.
    """

    def __init__(
        self,
        binary: str = "nethogs",
        refresh_seconds: int = 1,
        devices: Sequence[str] = (),
        proc_root: Path = Path("/proc"),
        name_cache_max: int = _NAME_CACHE_MAX_DEFAULT,
        is_alive: Callable[[int], bool] | None = None,
    ) -> None:
        self._binary = binary
        self._refresh_seconds = refresh_seconds
        self._devices = list(devices)
        self._proc_root = proc_root
        self._name_cache_max = name_cache_max
        self._is_alive = is_alive if is_alive is not None else self._pid_dir_exists

        self._state = SupervisorState.STOPPED
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task] = []
        self._parser = SamplerOutputParser()

        self._data: dict[int, BandwidthRecord] = {}
        self._names: OrderedDict[int, str] = OrderedDict()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def command(self) -> list[str]:
        # -t tracemode, -v 0 KB/s, -C TCP+UDP, -b short names, -d refresh
        return [
            self._binary, "-t", "-v", "0", "-C", "-b",
            "-d", str(self._refresh_seconds),
            *self._devices,
        ]

    async def start(self) -> bool:
        """Spawn nethogs. Returns False (and logs why) if it cannot run."""
        if self._state is SupervisorState.RUNNING:
            logger.warning("BandwidthSupervisor.start() called but already running")
            return True

        if not _is_root():
            logger.warning("nethogs requires root privileges — bandwidth monitoring disabled")
            return False

        if shutil.which(self._binary) is None:
            logger.warning("%s not installed — bandwidth monitoring disabled", self._binary)
            return False

        self._state = SupervisorState.STARTING
        cmd = self.command()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to start %s: %s", self._binary, exc)
            self._reset()
            return False

        self._process = proc
        self._parser = SamplerOutputParser()
        self._tasks = [
            asyncio.create_task(self._pump_stdout(proc), name="nethogs-stdout"),
            asyncio.create_task(self._drain_stderr(proc), name="nethogs-stderr"),
        ]
        self._state = SupervisorState.RUNNING
        logger.info("Bandwidth monitoring started — pid=%d cmd=%s", proc.pid, " ".join(cmd))
        return True

    def stop(self) -> None:
        """SIGTERM the child, cancel the readers and clear all state. Idempotent."""
        was_running = self._state is not SupervisorState.STOPPED
        proc = self._process
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        self._reset()
        if was_running:
            logger.info("Bandwidth monitoring stopped")

    async def shutdown(self, timeout: float = 2.0) -> None:
        """stop(), then wait up to *timeout* seconds for the child to exit."""
        proc = self._process
        self.stop()
        if proc is None or proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s ignored SIGTERM for %.1fs — killing", self._binary, timeout)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    def is_active(self) -> bool:
        return self._state is SupervisorState.RUNNING

    @property
    def state(self) -> SupervisorState:
        return self._state

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes | str) -> list[BandwidthRecord]:
        """Parse a raw stdout chunk and upsert every resulting record."""
        updated = []
        for line in self._parser.feed(chunk):
            record = self.ingest(line)
            if record is not None:
                updated.append(record)
        return updated

    def ingest(self, line: SamplerLine) -> BandwidthRecord | None:
        """Upsert the record for one parsed line; None if the line is dropped."""
        if line.token.startswith(_UNRESOLVED_PREFIXES):
            return None

        parsed = split_token(line.token)
        if parsed is None:
            METRICS.sampler_lines_skipped.inc()
            logger.debug("Sampler token without pid/owner: %r", line.token)
            return None
        pid, owner = parsed

        # An idle line only matters for a pid we already show as busy.
        if line.sent == 0 and line.received == 0 and pid not in self._data:
            return None

        record = BandwidthRecord(
            pid=pid,
            name=self.resolve_name(pid),
            user=owner,
            sent_kbs=line.sent,
            received_kbs=line.received,
        )
        self._data[pid] = record
        return record

    def resolve_name(self, pid: int) -> str:
        """
        Process name for *pid* from /proc/<pid>/comm, cached.

        The nethogs token is not used: for some processes it is a
        self-reference like '/proc/self/exe' rather than a program name.
        """
        name = self._names.get(pid)
        if name is not None:
            return name
        try:
            raw = (self._proc_root / str(pid) / "comm").read_bytes()
        except OSError:
            raw = b""
        name = raw.decode(errors="replace").strip()
        name = name or f"pid-{pid}"
        self._names[pid] = name
        return name

    # ------------------------------------------------------------------
    # Queries & cleanup
    # ------------------------------------------------------------------

    def get_data(self) -> list[BandwidthRecord]:
        """Busy processes, highest combined rate first. Evicts dead pids."""
        for pid in [pid for pid in self._data if not self._is_alive(pid)]:
            del self._data[pid]
        busy = [r for r in self._data.values() if not r.is_idle]
        busy.sort(key=lambda r: r.total_kbs, reverse=True)
        return busy

    def top(self, n: int = 5) -> list[BandwidthRecord]:
        return self.get_data()[:n]

    def cleanup_stale_data(self, max_cache_size: int | None = None) -> CleanupResult:
        """
        Drop dead pids from the records and the name cache, oldest first.
        Live pids are never evicted, so a cache of live pids may stay above
        the cap.
        """
        cap = self._name_cache_max if max_cache_size is None else max_cache_size
        result = CleanupResult()

        for pid in [pid for pid in self._data if not self._is_alive(pid)]:
            del self._data[pid]
            result.processes_removed += 1

        # OrderedDict iteration is insertion order, so oldest go first.
        for pid in [pid for pid in self._names if not self._is_alive(pid)]:
            del self._names[pid]
            result.cache_entries_removed += 1

        if len(self._names) > cap:
            logger.warning(
                "Name cache holds %d live pids, above cap %d — nothing evictable",
                len(self._names),
                cap,
            )
        return result

    @property
    def name_cache_size(self) -> int:
        return len(self._names)

    @property
    def record_count(self) -> int:
        return len(self._data)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pid_dir_exists(self, pid: int) -> bool:
        return (self._proc_root / str(pid)).is_dir()

    def _reset(self) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:  # no running loop
            current = None
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []
        self._process = None
        self._parser = SamplerOutputParser()
        self._data.clear()
        self._names.clear()
        self._state = SupervisorState.STOPPED

    async def _pump_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            while True:
                chunk = await proc.stdout.read(_READ_SIZE)
                if not chunk:
                    break
                self.feed(chunk)
            for line in self._parser.flush():
                self.ingest(line)

            code = await proc.wait()
            if self._process is proc:
                logger.warning(
                    "%s exited with code %s — bandwidth monitoring disabled", self._binary, code
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "nethogs output handling failed: %s — bandwidth monitoring disabled", exc
            )
        finally:
            # Only tear down if nobody replaced or stopped this process meanwhile.
            if self._process is proc:
                if proc.returncode is None:
                    try:
                        proc.terminate()
                    except ProcessLookupError:
                        pass
                self._reset()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        async for raw in proc.stderr:
            msg = raw.decode(errors="replace").strip()
            if msg and "Waiting" not in msg:
                logger.debug("nethogs stderr: %s", msg)
