"""
backend/aggregator.py

SnapshotAggregator — one aggregation tick.

Pulls every producer exactly once and freezes the result into a Snapshot:
  RateSampler + InterfaceDetailsCache → interfaces
  ProcessCorrelator                   → processes (+ top-N sliced from them)
  BandwidthSupervisor                 → bandwidth + enabled flag

Also exposes the on-demand pull operations used by the REST routes.
"""

from __future__ import annotations

import logging
import time

from .bandwidth import BandwidthSupervisor
from .collectors import InterfaceDetailsCache, ProcessCorrelator, RateSampler
from .metrics import METRICS
from .models import (
    BandwidthRecord,
    InterfaceDetails,
    InterfaceSample,
    ProcessConnectionInfo,
    Snapshot,
)

logger = logging.getLogger(__name__)


class SnapshotAggregator:
    """
    Args:
        rates:      Interface speed sampler.
        details:    Interface metadata cache.
        processes:  Socket → process correlator.
        bandwidth:  nethogs supervisor.
        top_n:      Size of the topProcesses list.
    """

    def __init__(
        self,
        rates: RateSampler,
        details: InterfaceDetailsCache,
        processes: ProcessCorrelator,
        bandwidth: BandwidthSupervisor,
        top_n: int = 5,
    ) -> None:
        self._rates = rates
        self._details = details
        self._processes = processes
        self._bandwidth = bandwidth
        self._top_n = top_n

    def build(self) -> Snapshot:
        interfaces = self.interfaces()
        processes = self._processes.list_processes()
        snapshot = Snapshot(
            interfaces=tuple(interfaces),
            processes=tuple(processes),
            top_processes=tuple(processes[: self._top_n]),
            bandwidth=tuple(self._bandwidth.get_data()),
            bandwidth_enabled=self._bandwidth.is_active(),
            timestamp=int(time.time() * 1000),
        )
        METRICS.snapshots_built.inc()
        return snapshot

    # ------------------------------------------------------------------
    # Pull operations
    # ------------------------------------------------------------------

    def interfaces(self) -> list[tuple[InterfaceSample, InterfaceDetails]]:
        return [(s, self._details.get(s.name)) for s in self._rates.sample()]

    def available_interfaces(self) -> list[str]:
        return self._rates.available_interfaces()

    def processes(self) -> list[ProcessConnectionInfo]:
        return self._processes.list_processes()

    def bandwidth(self) -> tuple[bool, list[BandwidthRecord]]:
        return self._bandwidth.is_active(), self._bandwidth.get_data()

    def bandwidth_active(self) -> bool:
        return self._bandwidth.is_active()

    def refresh_details(self) -> None:
        self._details.invalidate()

    async def prepare(self) -> None:
        """Do the slow, blocking part of the next build() off the event loop."""
        await self._details.refresh_if_stale()
