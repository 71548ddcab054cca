from .setup import setup_observability
from .metrics import (
    dispatch_accept_total,
    order_status_transitions_total,
    broker_events_published_total,
    broker_events_consumed_total,
    realtime_connections
)
