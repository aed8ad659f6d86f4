"""
collectors/details.py

InterfaceDetailsCache — MAC / MTU / link state / addresses per interface.

These change rarely, so they are kept out of the 1-second sampling path:
the whole cache is refreshed in one pass when it is older than the TTL
(default 5 minutes) and every lookup in between is a dict read.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from ..models import InterfaceDetails

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
_IP_TIMEOUT_SECONDS = 2.0

_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="iface-details")

_INET_RE = re.compile(r"inet (\d+\.\d+\.\d+\.\d+/\d+)")
_INET6_RE = re.compile(r"inet6 ([a-f0-9:]+/\d+)")


def _read_attr(base: Path, attr: str) -> str | None:
    try:
        return (base / attr).read_text().strip()
    except OSError:
        return None


def list_addresses(name: str) -> tuple[list[str], list[str]]:
    """Run `ip addr show <name>` and return (ipv4, ipv6) in CIDR form."""
    try:
        out = subprocess.run(
            ["ip", "addr", "show", name],
            capture_output=True,
            text=True,
            timeout=_IP_TIMEOUT_SECONDS,
            check=False,
        ).stdout
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("ip addr show %s failed: %s", name, exc)
        return [], []

    ipv4 = _INET_RE.findall(out)
    ipv6 = [a for a in _INET6_RE.findall(out) if not a.startswith("fe80:")]
    return ipv4, ipv6


def fetch_interface_details(
    name: str,
    sys_class_net: Path = Path("/sys/class/net"),
    addresses: Callable[[str], tuple[list[str], list[str]]] = list_addresses,
) -> InterfaceDetails:
    """Read one interface's metadata. Unreadable fields keep their sentinel."""
    base = sys_class_net / name
    details = InterfaceDetails()

    mac = _read_attr(base, "address")
    if mac:
        details.mac = mac

    mtu = _read_attr(base, "mtu")
    if mtu and mtu.isdigit():
        details.mtu = int(mtu)

    state = _read_attr(base, "operstate")
    if state:
        details.state = state

    # Reading speed on a down or virtual link raises EINVAL or returns -1.
    speed = _read_attr(base, "speed")
    if speed and speed.isdigit() and int(speed) > 0:
        details.speed = int(speed)

    duplex = _read_attr(base, "duplex")
    if duplex:
        details.duplex = duplex

    details.ipv4, details.ipv6 = addresses(name)
    return details


class InterfaceDetailsCache:
    """
    TTL cache with a single refresh timestamp for all entries.

    Thread safety: NOT thread-safe. Used from the event loop only; the
    blocking refresh pass in refresh_if_stale() runs in a worker thread but
    its result is stored back on the loop.

    Args:
        list_names: Returns the interface names to refresh.
        fetch:      Reads the details for one interface.
        ttl:        Seconds between full refresh passes.
        clock:      Monotonic clock in seconds.
    """

    def __init__(
        self,
        list_names: Callable[[], list[str]],
        fetch: Callable[[str], InterfaceDetails] = fetch_interface_details,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._list_names = list_names
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[str, InterfaceDetails] = {}
        self._last_refresh: float | None = None
        self._generation = 0

    def get(self, name: str) -> InterfaceDetails:
        """Return cached details, refreshing every interface first if stale."""
        if self.is_stale():
            self._store(self._fetch_all(), self._clock())
        return self._cache.get(name) or InterfaceDetails()

    def is_stale(self) -> bool:
        return self._last_refresh is None or self._clock() - self._last_refresh >= self._ttl

    async def refresh_if_stale(self) -> None:
        """
        Run the refresh pass off the event loop if the TTL has expired.

        `ip addr` is a subprocess per interface, so a full pass can block
        for seconds. A refresh that completes after invalidate() is
        discarded; the next call starts a new one.
        """
        if not self.is_stale():
            return
        generation = self._generation
        started = self._clock()
        loop = asyncio.get_running_loop()
        fresh = await loop.run_in_executor(_executor, self._fetch_all)
        if generation == self._generation:
            self._store(fresh, started)

    def invalidate(self) -> None:
        """Drop everything; the next get() performs a full refresh."""
        self._cache.clear()
        self._last_refresh = None
        self._generation += 1
        logger.info("Interface details cache cleared, will refresh on next request")

    def __len__(self) -> int:
        return len(self._cache)

    def _fetch_all(self) -> dict[str, InterfaceDetails]:
        return {name: self._fetch(name) for name in self._list_names()}

    def _store(self, details: dict[str, InterfaceDetails], at: float) -> None:
        self._cache = details
        self._last_refresh = at
        logger.info("Refreshed details cache for %d interfaces", len(details))
