"""
tests/test_supervisor.py

Tests for bandwidth/supervisor.py.

Strategy:
  - Ingest/query/cleanup tests drive the supervisor directly via feed() and
    ingest(), with liveness controlled by a set of "alive" pids.
  - Lifecycle tests patch asyncio.create_subprocess_exec with FakeProcess,
    whose stdout/stderr are real asyncio.StreamReaders we feed by hand.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nami.backend.bandwidth.parser import SamplerLine
from nami.backend.bandwidth.supervisor import (
    BandwidthSupervisor,
    SupervisorState,
    split_token,
)

MODULE = "nami.backend.bandwidth.supervisor"


class AliveSet(set):
    def __call__(self, pid: int) -> bool:
        return pid in self


@pytest.fixture
def alive():
    return AliveSet()


@pytest.fixture
def supervisor(tmp_path, alive):
    return BandwidthSupervisor(proc_root=tmp_path, is_alive=alive)


def add_comm(root, pid: int, name: str) -> None:
    (root / str(pid)).mkdir()
    (root / str(pid) / "comm").write_text(name + "\n")


# ---------------------------------------------------------------------------
# Token parsing
# ---------------------------------------------------------------------------

class TestSplitToken:

    def test_full_path(self):
        assert split_token("/usr/bin/curl/4242/1000") == (4242, "1000")

    def test_short_name(self):
        assert split_token("curl/4242/root") == (4242, "root")

    def test_too_few_segments(self):
        assert split_token("abc") is None
        assert split_token("4242/1000") is None

    def test_non_numeric_pid(self):
        assert split_token("curl/abc/1000") is None

    def test_zero_pid(self):
        assert split_token("unknown TCP/0/0") is None

    def test_space_delimited_device_column(self):
        assert split_token("/x/42/1000  eth0") == (42, "1000")


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

class TestIngest:

    def test_creates_record(self, supervisor, tmp_path, alive):
        add_comm(tmp_path, 4242, "curl")
        alive.add(4242)
        rec = supervisor.ingest(SamplerLine("/usr/bin/curl/4242/1000", 12.5, 3.0))
        assert rec.pid == 4242
        assert rec.name == "curl"
        assert rec.user == "1000"
        assert rec.sent_kbs == 12.5
        assert rec.received_kbs == 3.0
        assert supervisor.record_count == 1

    def test_name_from_proc_not_token(self, supervisor, tmp_path):
        add_comm(tmp_path, 77, "firefox")
        rec = supervisor.ingest(SamplerLine("/proc/self/exe/77/1000", 1.0, 1.0))
        assert rec.name == "firefox"

    def test_unresolvable_name_falls_back(self, supervisor):
        rec = supervisor.ingest(SamplerLine("ghost/31337/0", 1.0, 0.0))
        assert rec.name == "pid-31337"

    def test_non_utf8_comm(self, supervisor, tmp_path):
        (tmp_path / "77").mkdir()
        (tmp_path / "77" / "comm").write_bytes(b"\xff\xfebad\n")
        rec = supervisor.ingest(SamplerLine("x/77/0", 1.0, 2.0))
        assert rec.name == "\ufffd\ufffdbad"

    def test_device_column_not_in_owner(self, supervisor):
        rec = supervisor.feed(b"/x/42/1000  eth0  1.0  2.0\n")[0]
        assert (rec.pid, rec.user) == (42, "1000")

    def test_name_is_cached(self, supervisor, tmp_path):
        add_comm(tmp_path, 5, "first")
        supervisor.ingest(SamplerLine("a/5/0", 1.0, 0.0))
        (tmp_path / "5" / "comm").write_text("second\n")
        rec = supervisor.ingest(SamplerLine("a/5/0", 2.0, 0.0))
        assert rec.name == "first"
        assert supervisor.name_cache_size == 1

    def test_upsert_replaces_rates(self, supervisor):
        supervisor.ingest(SamplerLine("a/5/0", 1.0, 1.0))
        supervisor.ingest(SamplerLine("a/5/0", 4.0, 2.0))
        assert supervisor.record_count == 1

    def test_unresolved_sentinel_dropped(self, supervisor):
        assert supervisor.ingest(SamplerLine("unknown TCP/0/0", 5.0, 5.0)) is None
        assert supervisor.ingest(SamplerLine("unknown UDP/12/0", 5.0, 5.0)) is None
        assert supervisor.record_count == 0

    def test_token_without_pid_dropped(self, supervisor):
        assert supervisor.ingest(SamplerLine("abc", 1.0, 2.0)) is None

    def test_idle_line_for_new_pid_dropped(self, supervisor):
        assert supervisor.ingest(SamplerLine("a/5/0", 0.0, 0.0)) is None
        assert supervisor.record_count == 0

    def test_idle_line_marks_known_pid_idle(self, supervisor, alive):
        alive.add(5)
        supervisor.ingest(SamplerLine("a/5/0", 3.0, 3.0))
        rec = supervisor.ingest(SamplerLine("a/5/0", 0.0, 0.0))
        assert rec.is_idle
        assert supervisor.get_data() == []
        assert supervisor.record_count == 1

    def test_feed_parses_chunks(self, supervisor, alive):
        alive.update({1, 2})
        assert supervisor.feed(b"a/1/0\t1\t2") == []
        updated = supervisor.feed(b".0\nb/2/0\t3\t4\n")
        assert [r.pid for r in updated] == [1, 2]


# ---------------------------------------------------------------------------
# get_data
# ---------------------------------------------------------------------------

class TestGetData:

    def test_sorted_by_combined_rate(self, supervisor, alive):
        alive.update({1, 2, 3})
        supervisor.ingest(SamplerLine("a/1/0", 1.0, 1.0))
        supervisor.ingest(SamplerLine("b/2/0", 10.0, 0.0))
        supervisor.ingest(SamplerLine("c/3/0", 0.0, 5.0))
        assert [r.pid for r in supervisor.get_data()] == [2, 3, 1]

    def test_idle_excluded_but_retained(self, supervisor, alive):
        alive.update({1, 2})
        supervisor.ingest(SamplerLine("a/1/0", 1.0, 0.0))
        supervisor.ingest(SamplerLine("b/2/0", 2.0, 0.0))
        supervisor.ingest(SamplerLine("b/2/0", 0.0, 0.0))
        assert [r.pid for r in supervisor.get_data()] == [1]
        assert supervisor.record_count == 2

    def test_evicts_dead_pids_but_not_names(self, supervisor, alive):
        alive.update({1, 2})
        supervisor.ingest(SamplerLine("a/1/0", 1.0, 0.0))
        supervisor.ingest(SamplerLine("b/2/0", 2.0, 0.0))
        alive.discard(2)
        assert [r.pid for r in supervisor.get_data()] == [1]
        assert supervisor.record_count == 1
        assert supervisor.name_cache_size == 2

    def test_default_liveness_uses_proc_root(self, tmp_path):
        sup = BandwidthSupervisor(proc_root=tmp_path)
        add_comm(tmp_path, 9, "live")
        sup.ingest(SamplerLine("a/9/0", 1.0, 0.0))
        sup.ingest(SamplerLine("b/10/0", 1.0, 0.0))   # no /proc/10
        assert [r.pid for r in sup.get_data()] == [9]

    def test_top(self, supervisor, alive):
        alive.update({1, 2, 3})
        for pid, rate in ((1, 1.0), (2, 3.0), (3, 2.0)):
            supervisor.ingest(SamplerLine(f"p/{pid}/0", rate, 0.0))
        assert [r.pid for r in supervisor.top(2)] == [2, 3]


# ---------------------------------------------------------------------------
# cleanup_stale_data
# ---------------------------------------------------------------------------

class TestCleanup:

    def test_removes_dead_records_and_names(self, supervisor, alive):
        alive.update({1, 2})
        supervisor.ingest(SamplerLine("a/1/0", 1.0, 0.0))
        supervisor.ingest(SamplerLine("b/2/0", 1.0, 0.0))
        alive.discard(2)
        result = supervisor.cleanup_stale_data()
        assert result.processes_removed == 1
        assert result.cache_entries_removed == 1
        assert supervisor.record_count == 1
        assert supervisor.name_cache_size == 1

    def test_cap_with_600_pids(self, supervisor, alive):
        pids = list(range(1000, 1600))
        for pid in pids:
            supervisor.resolve_name(pid)
        # the oldest 150 have died, the rest are alive
        alive.update(pids[150:])
        result = supervisor.cleanup_stale_data(max_cache_size=500)
        assert supervisor.name_cache_size <= 500
        assert result.cache_entries_removed == 150
        remaining = set(supervisor._names)
        assert remaining == set(pids[150:])

    def test_never_evicts_live_pids_over_cap(self, supervisor, alive):
        pids = list(range(1, 601))
        for pid in pids:
            supervisor.resolve_name(pid)
        alive.update(pids)
        result = supervisor.cleanup_stale_data(max_cache_size=500)
        assert result.cache_entries_removed == 0
        assert supervisor.name_cache_size == 600

    def test_nothing_to_do(self, supervisor):
        result = supervisor.cleanup_stale_data()
        assert (result.processes_removed, result.cache_entries_removed) == (0, 0)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class FakeProcess:
    """Stand-in for asyncio.subprocess.Process with hand-fed pipes."""

    def __init__(self) -> None:
        self.pid = 4321
        self.returncode = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()
        self.terminate = MagicMock(side_effect=lambda: self.exit(-15))
        self.kill = MagicMock(side_effect=lambda: self.exit(-9))

    def exit(self, code: int) -> None:
        self.returncode = code
        if not self.stdout.at_eof():
            self.stdout.feed_eof()
        if not self.stderr.at_eof():
            self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


def spawn_patch(proc):
    return patch(f"{MODULE}.asyncio.create_subprocess_exec", AsyncMock(return_value=proc))


def allowed():
    return (
        patch(f"{MODULE}._is_root", return_value=True),
        patch(f"{MODULE}.shutil.which", return_value="/usr/sbin/nethogs"),
    )


class TestStartPreconditions:

    @pytest.mark.asyncio
    async def test_not_root(self, supervisor):
        with patch(f"{MODULE}._is_root", return_value=False):
            assert await supervisor.start() is False
        assert supervisor.is_active() is False
        assert supervisor.state is SupervisorState.STOPPED

    @pytest.mark.asyncio
    async def test_binary_missing(self, supervisor):
        with patch(f"{MODULE}._is_root", return_value=True), \
             patch(f"{MODULE}.shutil.which", return_value=None):
            assert await supervisor.start() is False
        assert supervisor.is_active() is False

    @pytest.mark.asyncio
    async def test_spawn_failure(self, supervisor):
        root, which = allowed()
        with root, which, patch(
            f"{MODULE}.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("nethogs")),
        ):
            assert await supervisor.start() is False
        assert supervisor.state is SupervisorState.STOPPED


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_spawns_tracemode(self, tmp_path, alive):
        sup = BandwidthSupervisor(proc_root=tmp_path, devices=["eth0"], is_alive=alive)
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc) as spawn:
            assert await sup.start() is True
        args = spawn.call_args[0]
        assert args == ("nethogs", "-t", "-v", "0", "-C", "-b", "-d", "1", "eth0")
        assert sup.is_active()
        sup.stop()

    @pytest.mark.asyncio
    async def test_streams_stdout_into_records(self, supervisor, alive):
        alive.update({10, 11})
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc):
            await supervisor.start()

        proc.stdout.feed_data(b"Refresh:\nfoo/10/0\t5.0\t1")
        await asyncio.sleep(0.01)
        proc.stdout.feed_data(b".0\nbar/11/0\t0.5\t0.5\n")
        await asyncio.sleep(0.01)

        data = supervisor.get_data()
        assert [(r.pid, r.sent_kbs, r.received_kbs) for r in data] == [
            (10, 5.0, 1.0),
            (11, 0.5, 0.5),
        ]
        supervisor.stop()

    @pytest.mark.asyncio
    async def test_stderr_is_not_fatal(self, supervisor):
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc):
            await supervisor.start()
        proc.stderr.feed_data(b"Waiting for first packet to arrive\nsome warning\n")
        await asyncio.sleep(0.01)
        assert supervisor.is_active()
        supervisor.stop()

    @pytest.mark.asyncio
    async def test_unexpected_exit_disables_and_clears(self, supervisor, alive):
        alive.add(10)
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc):
            await supervisor.start()
        proc.stdout.feed_data(b"foo/10/0\t5\t5\n")
        await asyncio.sleep(0.01)
        assert supervisor.record_count == 1

        proc.exit(1)
        await asyncio.sleep(0.01)
        assert supervisor.is_active() is False
        assert supervisor.record_count == 0
        assert supervisor.name_cache_size == 0

    @pytest.mark.asyncio
    async def test_ingest_failure_disables_and_clears(self, supervisor, alive):
        alive.add(10)
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc):
            await supervisor.start()
        proc.stdout.feed_data(b"foo/10/0\t5\t5\n")
        await asyncio.sleep(0.01)
        assert supervisor.record_count == 1

        with patch.object(supervisor, "feed", side_effect=RuntimeError("boom")):
            proc.stdout.feed_data(b"foo/10/0\t6\t6\n")
            await asyncio.sleep(0.01)

        assert supervisor.is_active() is False
        assert supervisor.record_count == 0
        proc.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_terminates_and_clears(self, supervisor, alive):
        alive.add(10)
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc):
            await supervisor.start()
        proc.stdout.feed_data(b"foo/10/0\t5\t5\n")
        await asyncio.sleep(0.01)

        supervisor.stop()
        proc.terminate.assert_called_once()
        assert supervisor.state is SupervisorState.STOPPED
        assert supervisor.record_count == 0
        assert supervisor.name_cache_size == 0

        supervisor.stop()   # idempotent
        proc.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, supervisor):
        proc = FakeProcess()
        root, which = allowed()
        with root, which, spawn_patch(proc) as spawn:
            assert await supervisor.start() is True
            assert await supervisor.start() is True
        spawn.assert_called_once()
        supervisor.stop()

    @pytest.mark.asyncio
    async def test_shutdown_kills_after_timeout(self, supervisor):
        proc = FakeProcess()
        proc.terminate = MagicMock()      # ignores SIGTERM
        root, which = allowed()
        with root, which, spawn_patch(proc):
            await supervisor.start()
        await supervisor.shutdown(timeout=0.05)
        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()

    def test_stop_without_start(self, supervisor):
        supervisor.stop()
        assert supervisor.state is SupervisorState.STOPPED
