from prometheus_client import Counter, Gauge

# Business Metrics
dispatch_accept_total = Counter(
    "dispatch_accept_total",
    "Order accept attempts",
    ["outcome"] # Labels: 'assigned', 'already_assigned', 'partner_busy', 'not_found'
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Order status changes applied",
    ["service", "status"]
)

# Broker Metrics
broker_events_published_total = Counter(
    "broker_events_published_total",
    "Events published to the broker",
    ["routing_key"]
)

broker_events_consumed_total = Counter(
    "broker_events_consumed_total",
    "Events consumed from the broker",
    ["routing_key", "outcome"] # Labels: outcome='ack', 'retry', 'drop'
)

# Real-time Metrics
realtime_connections = Gauge(
    "realtime_connections",
    "Open real-time channels"
)
