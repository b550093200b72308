"""
Prometheus metrics for message sync operations.

Complements the HTTP metrics provided by prometheus-fastapi-instrumentator
with store, subscription, typing and WebSocket metrics.
"""

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# WebSocket Metrics
# ============================================================================

websocket_connections_active = Gauge(
    'choptso_websocket_connections_active',
    'Number of active WebSocket connections',
    ['conversation_id']
)

websocket_connections_total = Counter(
    'choptso_websocket_connections_total',
    'Total number of WebSocket connections established',
    ['conversation_id']
)

websocket_disconnections_total = Counter(
    'choptso_websocket_disconnections_total',
    'Total number of WebSocket disconnections',
    ['conversation_id', 'reason']
)

# ============================================================================
# Message Operation Metrics
# ============================================================================

messages_sent_total = Counter(
    'choptso_messages_sent_total',
    'Total number of messages sent',
    ['kind']
)

messages_deleted_total = Counter(
    'choptso_messages_deleted_total',
    'Total number of messages tombstoned'
)

reactions_total = Counter(
    'choptso_reactions_total',
    'Total number of reaction changes',
    ['action']
)

receipts_total = Counter(
    'choptso_receipts_total',
    'Total number of messages acknowledged per receipt kind',
    ['kind']
)

message_operation_duration_seconds = Histogram(
    'choptso_message_operation_duration_seconds',
    'Duration of message operations in seconds',
    ['operation'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

message_operation_errors_total = Counter(
    'choptso_message_operation_errors_total',
    'Total number of message operation errors',
    ['operation', 'error_type']
)

write_retries_total = Counter(
    'choptso_write_retries_total',
    'Total number of retried remote writes',
    ['operation']
)

# ============================================================================
# Store Metrics
# ============================================================================

store_operations_total = Counter(
    'choptso_store_operations_total',
    'Total number of document store operations',
    ['operation', 'collection', 'status']
)

cache_requests_total = Counter(
    'choptso_cache_requests_total',
    'Redis cache requests by outcome',
    ['operation', 'result']
)

# ============================================================================
# Subscription Metrics
# ============================================================================

subscriptions_active = Gauge(
    'choptso_subscriptions_active',
    'Number of live change-feed subscriptions',
    ['kind']
)

subscription_batches_total = Counter(
    'choptso_subscription_batches_total',
    'Total number of change batches applied',
    ['kind']
)

subscription_reconnects_total = Counter(
    'choptso_subscription_reconnects_total',
    'Total number of change feed reconnect attempts',
    ['kind']
)

store_connection_online = Gauge(
    'choptso_store_connection_online',
    '1 while no change feed is in an outage, 0 otherwise'
)

subscription_terminal_errors_total = Counter(
    'choptso_subscription_terminal_errors_total',
    'Total number of subscriptions stopped by a terminal error',
    ['kind', 'error_type']
)

# ============================================================================
# Presence Metrics
# ============================================================================

typing_writes_total = Counter(
    'choptso_typing_writes_total',
    'Total number of remote typing map writes',
    ['state']
)

typing_writes_debounced_total = Counter(
    'choptso_typing_writes_debounced_total',
    'Typing writes skipped by the local debounce'
)

presence_updates_total = Counter(
    'choptso_presence_updates_total',
    'Total number of presence status writes',
    ['status']
)
