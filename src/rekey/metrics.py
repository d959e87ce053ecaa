"""Prometheus metrics definitions for rekey.

All rekey metrics use the ``rekey_`` prefix. The audit log remains the
durable record of a run; these counters exist so a long run can be watched
while it is in progress.

Collectors are created by :func:`init_metrics`. Until then the module-level
references stay ``None`` and the ``record_*`` helpers are no-ops, so library
code can call them unconditionally.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Per-object outcome counter  (labels: outcome)
# ---------------------------------------------------------------------------
objects_total: Counter | None = None

# ---------------------------------------------------------------------------
# Task counters and gauges
# ---------------------------------------------------------------------------
tasks_total: Counter | None = None
tasks_in_flight: Gauge | None = None

# ---------------------------------------------------------------------------
# Byte counters
# ---------------------------------------------------------------------------
bytes_copied_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors
    in the global registry.
    """
    global _initialized
    global objects_total, tasks_total, tasks_in_flight, bytes_copied_total

    if _initialized:
        return

    objects_total = Counter(
        "rekey_objects_total",
        "Objects remediated, by outcome",
        ["outcome"],
    )

    tasks_total = Counter(
        "rekey_tasks_total",
        "Remediation tasks finished, by status",
        ["status"],
    )

    tasks_in_flight = Gauge(
        "rekey_tasks_in_flight",
        "Remediation tasks currently running",
    )

    bytes_copied_total = Counter(
        "rekey_bytes_copied_total",
        "Total bytes of objects successfully renamed",
    )

    _initialized = True


def serve_metrics(port: int) -> None:
    """Initialise metrics and expose them over HTTP on the given port."""
    init_metrics()
    start_http_server(port)


def record_outcome(outcome: str, size: int = 0, copied: bool = False) -> None:
    """Count one object outcome, adding its size to the byte counter if copied."""
    if objects_total is not None:
        objects_total.labels(outcome=outcome).inc()
    if copied and bytes_copied_total is not None:
        bytes_copied_total.inc(size)


def record_task(status: str) -> None:
    """Count one finished task."""
    if tasks_total is not None:
        tasks_total.labels(status=status).inc()


def set_in_flight(count: int) -> None:
    """Publish the current number of running tasks."""
    if tasks_in_flight is not None:
        tasks_in_flight.set(count)
