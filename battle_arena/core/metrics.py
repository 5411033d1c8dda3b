import os
import time
import logging

from prometheus_client import Counter, Histogram, Gauge


# ----------
# Battle lifecycle
# ----------

BATTLES_CREATED_TOTAL = Counter(
    "battles_created_total",
    "Total battles created",
    labelnames=("opponent_type",),
)

SUBMISSIONS_RECEIVED_TOTAL = Counter(
    "battle_submissions_received_total",
    "Total solution submissions received",
    labelnames=("mode",),  # manual | auto
)

SUBMISSIONS_VALIDATION_FAILURES_TOTAL = Counter(
    "battle_submissions_validation_failures_total",
    "Submission validation failures",
    labelnames=("reason",),
)

BATTLES_COMPLETED_TOTAL = Counter(
    "battles_completed_total",
    "Total battles evaluated and completed",
    labelnames=("winner", "path"),  # path: judged | forfeit | resumed
)

SUBMISSION_DURATION_SECONDS = Histogram(
    "battle_submission_duration_seconds",
    "Time spent completing a submission (opponent + evaluation + persistence)",
    buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 180.0),
)


# ----------
# Judge
# ----------

JUDGE_CALLS_TOTAL = Counter(
    "judge_calls_total",
    "Calls made to a backing judge",
    labelnames=("backend", "operation", "outcome"),  # outcome: ok | error
)

JUDGE_FALLBACK_TOTAL = Counter(
    "judge_fallback_total",
    "Judge operations answered by the synthetic fallback",
    labelnames=("operation", "reason"),
)

JUDGE_CALL_DURATION_SECONDS = Histogram(
    "judge_call_duration_seconds",
    "Duration of backing judge calls including retries",
    labelnames=("backend", "operation"),
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 180.0),
)


# ----------
# Storage / leaderboard
# ----------

STORAGE_FALLBACK_TOTAL = Counter(
    "storage_fallback_total",
    "Storage calls served by the in-memory fallback",
    labelnames=("operation",),
)

STORAGE_DEGRADED = Gauge(
    "storage_degraded",
    "1 when the last durable storage call failed and memory fallback is in use",
)

LEADERBOARD_QUERIES_TOTAL = Counter(
    "leaderboard_queries_total",
    "Total leaderboard queries",
    labelnames=("period", "source"),  # source: cache | store
)

LEADERBOARD_QUERY_DURATION_SECONDS = Histogram(
    "leaderboard_query_duration_seconds",
    "Duration of leaderboard retrieval (including Redis/store)",
)

STORAGE_DEGRADED.set(0)


def init_fastapi_instrumentation(app) -> None:
    """Attach Prometheus HTTP instrumentation to the app.

    /metrics itself is served by our own route.
    """
    try:
        from prometheus_fastapi_instrumentator import Instrumentator  # type: ignore
        from prometheus_client import CollectorRegistry, multiprocess, REGISTRY
    except Exception as e:
        logging.getLogger(__name__).warning("fastapi_instrumentator_unavailable", extra={"error": str(e)})
        return

    mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
    if mp_dir:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        instrumentator = Instrumentator(registry=registry)
    else:
        instrumentator = Instrumentator(registry=REGISTRY)

    instrumentator.instrument(app)


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False
