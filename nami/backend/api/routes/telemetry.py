"""
api/routes/telemetry.py

On-demand pulls of the same data the WebSocket pushes:

GET  /api/interfaces — interface names currently in /proc/net/dev
GET  /api/processes  — per-process connection summaries
GET  /api/bandwidth  — per-process bandwidth + whether nethogs is running
POST /api/refresh    — drop the interface details cache
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...aggregator import SnapshotAggregator
from ..serializers import (
    BandwidthResponse,
    InterfacesResponse,
    ProcessesResponse,
    RefreshResponse,
)

router = APIRouter(tags=["telemetry"])


def _get_aggregator() -> SnapshotAggregator:
    from ..main import get_aggregator
    return get_aggregator()


@router.get("/interfaces", response_model=InterfacesResponse)
async def list_interfaces(
    aggregator: SnapshotAggregator = Depends(_get_aggregator),
) -> InterfacesResponse:
    return InterfacesResponse(interfaces=aggregator.available_interfaces())


@router.get("/processes", response_model=ProcessesResponse)
async def list_processes(
    aggregator: SnapshotAggregator = Depends(_get_aggregator),
) -> ProcessesResponse:
    """Processes owning at least one socket, most connections first."""
    return ProcessesResponse.model_validate(
        {"processes": [p.to_dict() for p in aggregator.processes()]}
    )


@router.get("/bandwidth", response_model=BandwidthResponse)
async def get_bandwidth(
    aggregator: SnapshotAggregator = Depends(_get_aggregator),
) -> BandwidthResponse:
    enabled, records = aggregator.bandwidth()
    return BandwidthResponse.model_validate(
        {"enabled": enabled, "data": [r.to_dict() for r in records]}
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_details(
    aggregator: SnapshotAggregator = Depends(_get_aggregator),
) -> RefreshResponse:
    aggregator.refresh_details()
    return RefreshResponse(success=True, message="Cache refreshed")
