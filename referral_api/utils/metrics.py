"""
Metrics tracking utilities
"""
from prometheus_client import Counter, Histogram
import structlog

logger = structlog.get_logger()

# Define metrics
stream_events_counter = Counter(
    'referral_stream_events_total',
    'Events written to client streams',
    ['stream', 'type']
)

resources_emitted_counter = Counter(
    'referral_resources_emitted_total',
    'Resources emitted, by extraction phase',
    ['phase']  # "incremental" or "catch_up"
)

completion_errors_counter = Counter(
    'referral_completion_errors_total',
    'Upstream completion failures',
    ['endpoint']
)

extraction_errors_counter = Counter(
    'referral_extraction_errors_total',
    'Completions that never became valid JSON'
)

client_disconnects_counter = Counter(
    'referral_client_disconnects_total',
    'Streams aborted because the client went away',
    ['endpoint']
)

first_token_latency = Histogram(
    'referral_first_token_latency_seconds',
    'Time to first token',
    ['endpoint'],
    buckets=[0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 20.0, 30.0]
)

stream_duration = Histogram(
    'referral_stream_duration_seconds',
    'Total time spent streaming one response',
    ['endpoint'],
    buckets=[1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 180.0]
)


def track_first_token(endpoint: str, latency: float):
    """Track time to first token"""
    first_token_latency.labels(endpoint=endpoint).observe(latency)
    logger.info(
        "First token received",
        endpoint=endpoint,
        time_to_first_token=latency
    )


def track_resources(incremental: int, catch_up: int):
    """Track how many resources each extraction phase surfaced"""
    if incremental:
        resources_emitted_counter.labels(phase="incremental").inc(incremental)
    if catch_up:
        resources_emitted_counter.labels(phase="catch_up").inc(catch_up)
