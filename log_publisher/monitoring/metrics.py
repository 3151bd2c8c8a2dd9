"""
Prometheus metrics for the log publisher.

Tracks:
- Events dispatched per level
- Isolated sink failures per sink
- Whether remote delivery has been disabled
- Instrumented request durations
"""
from prometheus_client import Counter, Gauge, Histogram

# Dispatch metrics
events_total = Counter(
    "log_publisher_events_total",
    "Total log events dispatched",
    ["level"],  # info, log, error, critical
)

sink_failures_total = Counter(
    "log_publisher_sink_failures_total",
    "Sink failures caught by the dispatcher",
    ["sink"],  # terminal, archive, remote
)

remote_disabled = Gauge(
    "log_publisher_remote_disabled",
    "1 when the remote collector was configured but unreachable at startup",
)

# Request metrics
request_duration_seconds = Histogram(
    "request_duration_seconds",
    "Instrumented HTTP request duration in seconds",
    ["method", "status"],  # status: SUCCESS, FAILED
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
