from prometheus_client import Counter, Histogram

# Histogram for API call latency (seconds)
dexcom_api_call_latency_seconds = Histogram(
    'dexcom_api_call_latency_seconds',
    'Latency of Dexcom API calls in seconds',
    ['method', 'endpoint']
)

# status: success, error
dexcom_api_call_total = Counter(
    'dexcom_api_call_total',
    'Total Dexcom API calls',
    ['method', 'endpoint', 'status']
)

# outcome: success, invalid, unavailable, conflict
token_refresh_total = Counter(
    'token_refresh_total',
    'Dexcom token refresh attempts',
    ['outcome']
)

# outcome: success, exchange_failed, unavailable
oauth_exchange_total = Counter(
    'oauth_exchange_total',
    'Dexcom authorization code exchanges',
    ['outcome']
)

# outcome: success, skipped_error, stopped
poll_cycles_total = Counter(
    'poll_cycles_total',
    'Completed glucose poll cycles',
    ['outcome']
)

poll_ticks_skipped_total = Counter(
    'poll_ticks_skipped_total',
    'Poll ticks skipped because the previous cycle was still running'
)

readings_ingested_total = Counter(
    'readings_ingested_total',
    'Glucose readings appended to session history',
    ['source']
)

alerts_raised_total = Counter(
    'alerts_raised_total',
    'Glucose alerts raised',
    ['kind']
)

__all__ = [
    'dexcom_api_call_latency_seconds',
    'dexcom_api_call_total',
    'token_refresh_total',
    'oauth_exchange_total',
    'poll_cycles_total',
    'poll_ticks_skipped_total',
    'readings_ingested_total',
    'alerts_raised_total',
]
