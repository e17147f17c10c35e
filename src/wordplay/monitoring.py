"""Monitoring configuration for WordPlay."""
from prometheus_client import Counter, Histogram, start_http_server

# Learning metrics
reviews_recorded = Counter(
    "wordplay_reviews_total",
    "Total number of reviews recorded",
    ["outcome"],
)

# Sync metrics
sync_operations = Counter(
    "wordplay_sync_operations_total",
    "Total number of sync operations",
    ["strategy", "outcome"],
)

sync_duration = Histogram(
    "wordplay_sync_duration_seconds",
    "Duration of sync operations in seconds",
    ["strategy"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)

sync_conflicts = Counter(
    "wordplay_sync_conflicts_total",
    "Total number of sync conflicts detected",
)

# Storage metrics
corrupt_collections = Counter(
    "wordplay_corrupt_collections_total",
    "Total number of local collections reset after failing to parse",
    ["collection"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
