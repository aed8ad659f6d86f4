"""
backend/metrics.py

Lightweight thread-safe counters for the telemetry pipeline.
No external dependencies — uses Python's threading.Lock.

Usage:
    from nami.backend.metrics import METRICS
    METRICS.snapshots_built.inc()
    print(METRICS.as_dict())
"""

import threading


class Counter:
    """A thread-safe integer counter."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self._value})"


class Metrics:
    """Singleton holding all pipeline counters."""

    def __init__(self) -> None:
        # --- Aggregation / broadcast ---
        self.snapshots_built: Counter = Counter()
        """Snapshots assembled by the aggregator."""

        self.messages_delivered: Counter = Counter()
        """Serialized snapshots successfully pushed to a subscriber."""

        self.deliveries_skipped: Counter = Counter()
        """Ticks skipped for a subscriber whose previous push was still in flight."""

        self.subscribers_dropped: Counter = Counter()
        """Subscribers removed after a failed push."""

        # --- Collectors ---
        self.table_rows_skipped: Counter = Counter()
        """Malformed /proc/net/{tcp,udp} rows."""

        # --- Bandwidth sampler ---
        self.sampler_lines_parsed: Counter = Counter()
        """Sampler output lines that produced a SamplerLine."""

        self.sampler_lines_skipped: Counter = Counter()
        """Sampler output lines dropped as malformed or unresolved."""

    def as_dict(self) -> dict:
        """Return all counters as a plain dict (safe for JSON serialisation)."""
        return {
            "snapshots_built": self.snapshots_built.value,
            "messages_delivered": self.messages_delivered.value,
            "deliveries_skipped": self.deliveries_skipped.value,
            "subscribers_dropped": self.subscribers_dropped.value,
            "table_rows_skipped": self.table_rows_skipped.value,
            "sampler_lines_parsed": self.sampler_lines_parsed.value,
            "sampler_lines_skipped": self.sampler_lines_skipped.value,
        }

    def reset_all(self) -> None:
        """Reset every counter to zero (useful in tests)."""
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                attr.reset()


# Module-level singleton — import from here everywhere
METRICS = Metrics()
