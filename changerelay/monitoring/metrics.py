"""
Prometheus metrics for the relay.

All metrics are registered on the default registry at import time and can be
exposed with ``start_metrics_server``.
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)


apply_total = Counter(
    'changerelay_apply_total',
    'Documents handed to the destination writer, by outcome',
    ['sync_marker', 'outcome']
)

checkpoint_saves_total = Counter(
    'changerelay_checkpoint_saves_total',
    'Total checkpoint saves',
    ['backend', 'status']
)

checkpoint_loads_total = Counter(
    'changerelay_checkpoint_loads_total',
    'Total checkpoint loads',
    ['backend', 'status']
)

relay_errors_total = Counter(
    'changerelay_errors_total',
    'Total relay errors',
    ['sync_marker', 'error_type']
)

relay_lag_seconds = Gauge(
    'changerelay_lag_seconds',
    'Lag between the source cluster time and processing',
    ['sync_marker']
)

loop_state = Gauge(
    'changerelay_loop_state',
    'Current capture loop state (1 for the active state)',
    ['sync_marker', 'state']
)


def start_metrics_server(port: Optional[int]) -> bool:
    """Expose metrics over HTTP. Returns False when no port is configured."""
    if not port:
        return False
    start_http_server(port)
    logger.info(f"Metrics exporter listening on port {port}", extra={"port": port})
    return True
