from prometheus_client import CollectorRegistry, Histogram, Gauge, Counter
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response

registry = CollectorRegistry()

request_duration = Histogram(
    "myydh_request_duration_seconds",
    "Request duration in seconds",
    ["method", "status"],
    registry=registry,
)

rate_limited_total = Counter(
    "myydh_rate_limited_total",
    "Requests rejected by the rate limiter",
    registry=registry,
)

load_shed_total = Counter(
    "myydh_load_shed_total",
    "Requests rejected while the process was under pressure",
    registry=registry,
)

event_loop_delay = Gauge(
    "myydh_event_loop_delay_milliseconds",
    "Most recent sampled event loop delay",
    registry=registry,
)

event_loop_utilization = Gauge(
    "myydh_event_loop_utilization_ratio",
    "Most recent sampled event loop utilization",
    registry=registry,
)

heap_used_bytes = Gauge(
    "myydh_heap_used_bytes",
    "Most recent sampled heap usage",
    registry=registry,
)

rss_bytes = Gauge(
    "myydh_rss_bytes",
    "Most recent sampled resident set size",
    registry=registry,
)

under_pressure = Gauge(
    "myydh_under_pressure",
    "1 while requests are being shed",
    registry=registry,
)


def metrics_response() -> Response:
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
