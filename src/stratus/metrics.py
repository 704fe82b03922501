"""Prometheus metrics definitions for stratus.

All metrics use the ``stratus_`` prefix for namespace isolation. They are
client-side counters: requests sent by the transport, compose operations and
their parts, and event-stream messages decoded by select calls.

Nothing is registered until ``init_metrics()`` runs, so importing the
library never touches the global ``prometheus_client`` registry. The
``record_*`` helpers are no-ops while metrics are disabled.
"""

from __future__ import annotations

from prometheus_client import Counter

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Transport counter  (labels: method, status)
# ---------------------------------------------------------------------------
requests_total: Counter | None = None

# ---------------------------------------------------------------------------
# Compose counters
# ---------------------------------------------------------------------------
compose_operations_total: Counter | None = None
compose_parts_total: Counter | None = None

# ---------------------------------------------------------------------------
# Select counter  (labels: event_type)
# ---------------------------------------------------------------------------
select_messages_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors.
    """
    global _initialized
    global requests_total, compose_operations_total, compose_parts_total
    global select_messages_total

    if _initialized:
        return

    requests_total = Counter(
        "stratus_requests_total",
        "Total S3 requests sent by method and HTTP status",
        ["method", "status"],
    )

    compose_operations_total = Counter(
        "stratus_compose_operations_total",
        "Total compose operations by execution path and outcome",
        ["path", "outcome"],
    )

    compose_parts_total = Counter(
        "stratus_compose_parts_total",
        "Total upload-part-copy requests issued by compose, by outcome",
        ["outcome"],
    )

    select_messages_total = Counter(
        "stratus_select_messages_total",
        "Total event-stream messages decoded by event type",
        ["event_type"],
    )

    _initialized = True


def record_request(method: str, status: int | str) -> None:
    if requests_total is not None:
        requests_total.labels(method=method, status=str(status)).inc()


def record_compose(path: str, outcome: str) -> None:
    if compose_operations_total is not None:
        compose_operations_total.labels(path=path, outcome=outcome).inc()


def record_parts(outcome: str, count: int = 1) -> None:
    if compose_parts_total is not None and count:
        compose_parts_total.labels(outcome=outcome).inc(count)


def record_select_message(event_type: str) -> None:
    if select_messages_total is not None:
        select_messages_total.labels(event_type=event_type).inc()
