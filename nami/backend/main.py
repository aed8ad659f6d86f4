from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import signal
import sys
from pathlib import Path
from typing import NoReturn

import uvicorn

from .aggregator import SnapshotAggregator
from .api.broadcast import BroadcastHub
from .api.main import VERSION, create_app, set_aggregator, set_hub
from .bandwidth import BandwidthSupervisor
from .collectors import (
    InterfaceDetailsCache,
    ProcessCorrelator,
    RateSampler,
    SocketTable,
    fetch_interface_details,
)
from .config import Settings, settings
from .metrics import METRICS

logger = logging.getLogger("nami.main")


# ---------------------------------------------------------------------------
# Periodic tasks
# ---------------------------------------------------------------------------

async def maintenance_loop(
    supervisor: BandwidthSupervisor,
    shutdown_event: asyncio.Event,
    interval: float = 300.0,
    max_cache_size: int = 500,
) -> None:
    """Prune dead pids from the bandwidth records and the name cache."""
    while not shutdown_event.is_set():
        await asyncio.sleep(interval)
        result = supervisor.cleanup_stale_data(max_cache_size)
        if result.processes_removed or result.cache_entries_removed:
            logger.info(
                "Maintenance cleaned %d processes, %d cache entries",
                result.processes_removed,
                result.cache_entries_removed,
            )


async def stats_logger(
    hub: BroadcastHub,
    shutdown_event: asyncio.Event,
    interval: float = 30.0,
) -> None:
    while not shutdown_event.is_set():
        await asyncio.sleep(interval)
        logger.info(
            "STATS clients=%d total=%d metrics=%s",
            hub.connection_count,
            hub.total_connections,
            METRICS.as_dict(),
        )


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def build_components(cfg: Settings) -> tuple[SnapshotAggregator, BandwidthSupervisor]:
    """Construct every stateful component once and wire them together."""
    proc_root = Path(cfg.PROC_ROOT)

    rates = RateSampler(proc_root=proc_root, max_idle_ticks=cfg.RATE_MAX_IDLE_TICKS)
    details = InterfaceDetailsCache(
        list_names=rates.available_interfaces,
        fetch=functools.partial(fetch_interface_details, sys_class_net=Path(cfg.SYS_CLASS_NET)),
        ttl=cfg.DETAILS_CACHE_TTL_SECONDS,
    )
    correlator = ProcessCorrelator(SocketTable(proc_root), proc_root=proc_root)
    supervisor = BandwidthSupervisor(
        binary=cfg.SAMPLER_BINARY,
        refresh_seconds=cfg.SAMPLER_REFRESH_SECONDS,
        devices=cfg.SAMPLER_DEVICES,
        proc_root=proc_root,
        name_cache_max=cfg.NAME_CACHE_MAX,
    )
    aggregator = SnapshotAggregator(
        rates=rates,
        details=details,
        processes=correlator,
        bandwidth=supervisor,
        top_n=cfg.TOP_PROCESSES,
    )
    return aggregator, supervisor


async def run(cfg: Settings) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler(_signum, _frame) -> None:
        logger.info("Shutdown signal received")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    aggregator, supervisor = build_components(cfg)
    hub = BroadcastHub(
        aggregator.build,
        interval=cfg.BROADCAST_INTERVAL_SECONDS,
        prepare=aggregator.prepare,
    )

    set_aggregator(aggregator)
    set_hub(hub)

    bandwidth_on = False
    if cfg.BANDWIDTH_ENABLED:
        bandwidth_on = await supervisor.start()

    app = create_app()
    uv_config = uvicorn.Config(
        app,
        host=cfg.API_HOST,
        port=cfg.API_PORT,
        log_level="warning",
        loop="none",
    )
    uv_server = uvicorn.Server(uv_config)

    tasks = [
        asyncio.create_task(hub.run(shutdown_event), name="broadcast"),
        asyncio.create_task(
            maintenance_loop(
                supervisor,
                shutdown_event,
                interval=cfg.MAINTENANCE_INTERVAL_SECONDS,
                max_cache_size=cfg.NAME_CACHE_MAX,
            ),
            name="maintenance",
        ),
        asyncio.create_task(
            stats_logger(hub, shutdown_event, interval=cfg.STATS_LOG_INTERVAL_SECONDS),
            name="stats_log",
        ),
        asyncio.create_task(uv_server.serve(), name="api"),
    ]

    logger.info(
        "Nami v%s — web=http://%s:%d ws=ws://%s:%d/ws bandwidth=%s",
        VERSION, cfg.API_HOST, cfg.API_PORT, cfg.API_HOST, cfg.API_PORT,
        "enabled (nethogs)" if bandwidth_on else "disabled",
    )

    await shutdown_event.wait()

    uv_server.should_exit = True
    for t in tasks[:-1]:
        t.cancel()
    await supervisor.shutdown(timeout=cfg.SHUTDOWN_TIMEOUT_SECONDS)
    await hub.close()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Final stats — %s", METRICS.as_dict())
    logger.info("Nami stopped cleanly")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Nami network monitor server")
    parser.add_argument("--host", default=settings.API_HOST)
    parser.add_argument("--port", type=int, default=settings.API_PORT)
    parser.add_argument(
        "--no-bandwidth", action="store_true",
        help="do not start nethogs even when running as root",
    )
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def main() -> NoReturn:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    cfg = settings.model_copy(update={
        "API_HOST": args.host,
        "API_PORT": args.port,
        "BANDWIDTH_ENABLED": settings.BANDWIDTH_ENABLED and not args.no_bandwidth,
    })
    if cfg.BROADCAST_INTERVAL_SECONDS <= 0:
        print("ERROR: BROADCAST_INTERVAL_SECONDS must be positive", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run(cfg))
    sys.exit(0)


if __name__ == "__main__":
    main()
