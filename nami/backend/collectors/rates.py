"""
collectors/rates.py

RateSampler — turns the cumulative byte counters in /proc/net/dev into
per-interface speeds.

Speed for an interface is the counter delta divided by the wall time since
that interface's previous sample. The previous sample is replaced on every
call, including when the clock did not advance, so a clock anomaly only
costs one zero reading.

A counter that goes backwards (interface reset, driver reload) is clamped
to zero speed. Genuine 64-bit wraparound is not distinguished from a reset.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ..models import InterfaceSample

logger = logging.getLogger(__name__)

_RX_BYTES_FIELD = 0
_TX_BYTES_FIELD = 8

CATEGORY_ORDER: tuple[str, ...] = (
    "ethernet",
    "wireless",
    "vpn",
    "docker",
    "bridge",
    "virtual",
    "loopback",
    "other",
)
_CATEGORY_RANK = {name: i for i, name in enumerate(CATEGORY_ORDER)}

_VIRTUAL_PREFIXES = ("virbr", "vnet")
_VPN_PREFIXES = ("tun", "tap", "wg", "tailscale", "nordlynx", "proton")
_WIRELESS_PREFIXES = ("wl", "wlan", "wifi")
_ETHERNET_PREFIXES = ("eth", "en", "em")


def categorize(name: str) -> str:
    """Classify an interface by its name. Rules are checked in order."""
    if name == "lo":
        return "loopback"
    if name == "docker0" or name.startswith(("br-", "veth")):
        return "docker"
    if name.startswith(_VIRTUAL_PREFIXES):
        return "virtual"
    if name.startswith(_VPN_PREFIXES):
        return "vpn"
    if name.startswith(_WIRELESS_PREFIXES):
        return "wireless"
    if name.startswith(_ETHERNET_PREFIXES):
        return "ethernet"
    if name.startswith("br") or "bridge" in name:
        return "bridge"
    return "other"


def sort_key(sample: InterfaceSample) -> tuple[int, str]:
    return (_CATEGORY_RANK.get(sample.category, len(CATEGORY_ORDER)), sample.name)


def read_interface_counters(path: Path) -> dict[str, tuple[int, int]]:
    """
    Parse /proc/net/dev into {name: (rx_bytes, tx_bytes)}.

    Format (two header lines, then one line per interface):
        eth0: 1234 10 0 0 0 0 0 0  5678 12 0 0 0 0 0 0
    """
    try:
        lines = path.read_text().splitlines()
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return {}

    counters: dict[str, tuple[int, int]] = {}
    for line in lines[2:]:
        name, sep, rest = line.partition(":")
        if not sep:
            continue
        name = name.strip()
        fields = rest.split()
        if not name or len(fields) <= _TX_BYTES_FIELD:
            continue
        try:
            counters[name] = (int(fields[_RX_BYTES_FIELD]), int(fields[_TX_BYTES_FIELD]))
        except ValueError:
            logger.debug("Skipping malformed /proc/net/dev line: %r", line)
    return counters


@dataclass
class _PriorSample:
    rx_bytes: int
    tx_bytes: int
    timestamp: float
    last_seen_tick: int


class RateSampler:
    """
    Keeps the previous counter reading per interface and derives speeds.

    Thread safety: NOT thread-safe. Called only from the aggregation tick.

    Args:
        proc_root:      Root of the proc filesystem (counters read from <root>/net/dev).
        clock:          Monotonic clock in seconds.
        max_idle_ticks: Prior samples for interfaces absent from this many
                        consecutive sample() calls are forgotten.
    """

    def __init__(
        self,
        proc_root: Path = Path("/proc"),
        clock: Callable[[], float] = time.monotonic,
        max_idle_ticks: int = 60,
        read_counters: Callable[[], dict[str, tuple[int, int]]] | None = None,
    ) -> None:
        self._dev_path = proc_root / "net" / "dev"
        self._clock = clock
        self._max_idle_ticks = max_idle_ticks
        if read_counters is None:
            read_counters = self._read_proc_net_dev
        self._read_counters = read_counters
        self._prior: dict[str, _PriorSample] = {}
        self._tick = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sample(self) -> list[InterfaceSample]:
        """Read all counters once and return speeds, ordered for display."""
        counters = self._read_counters()
        now = self._clock()
        self._tick += 1

        samples: list[InterfaceSample] = []
        for name, (rx, tx) in counters.items():
            rx_speed = tx_speed = 0.0
            prior = self._prior.get(name)
            if prior is not None:
                elapsed = now - prior.timestamp
                if elapsed > 0:
                    rx_speed = max(0.0, (rx - prior.rx_bytes) / elapsed)
                    tx_speed = max(0.0, (tx - prior.tx_bytes) / elapsed)

            samples.append(InterfaceSample(
                name=name,
                category=categorize(name),
                rx_bytes=rx,
                tx_bytes=tx,
                rx_speed=rx_speed,
                tx_speed=tx_speed,
            ))
            self._prior[name] = _PriorSample(rx, tx, now, self._tick)

        self._evict_idle()
        samples.sort(key=sort_key)
        return samples

    def available_interfaces(self) -> list[str]:
        """Names currently present in the counter table, sorted."""
        return sorted(self._read_counters())

    @property
    def tracked_count(self) -> int:
        return len(self._prior)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_proc_net_dev(self) -> dict[str, tuple[int, int]]:
        return read_interface_counters(self._dev_path)

    def _evict_idle(self) -> None:
        cutoff = self._tick - self._max_idle_ticks
        stale = [name for name, p in self._prior.items() if p.last_seen_tick <= cutoff]
        for name in stale:
            del self._prior[name]
        if stale:
            logger.info("Forgot %d vanished interface(s): %s", len(stale), stale)
