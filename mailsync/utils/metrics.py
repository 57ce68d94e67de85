from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

registry = CollectorRegistry()

sync_runs = Counter(
    'mailsync_sync_runs_total',
    'Sync runs by provider and outcome',
    ['provider', 'outcome'],
    registry=registry
)

sync_duration = Histogram(
    'mailsync_sync_duration_seconds',
    'Wall time of completed sync runs',
    ['provider'],
    registry=registry
)

active_syncs = Gauge(
    'mailsync_active_syncs',
    'Sync runs currently holding a lease in this process',
    ['provider'],
    registry=registry
)

messages_ingested = Counter(
    'mailsync_messages_ingested_total',
    'Change records applied, by action',
    ['provider', 'action'],
    registry=registry
)

attachment_failures = Counter(
    'mailsync_attachment_failures_total',
    'Attachments that could not be stored',
    ['provider'],
    registry=registry
)

provider_retries = Counter(
    'mailsync_provider_retries_total',
    'Provider calls retried after a transient error',
    ['provider', 'error'],
    registry=registry
)

webhook_notifications = Counter(
    'mailsync_webhook_notifications_total',
    'Inbound push notifications by result',
    ['provider', 'result'],
    registry=registry
)

api_requests = Counter(
    'api_requests_total',
    'Total API requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)


class MetricsCollector:
    """Helper class for collecting sync engine metrics."""

    @staticmethod
    def increment_sync_runs(provider: str, outcome: str):
        sync_runs.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_sync_duration(duration: float, provider: str):
        sync_duration.labels(provider=provider).observe(duration)

    @staticmethod
    def increment_active_syncs(provider: str, delta: int = 1):
        active_syncs.labels(provider=provider).inc(delta)

    @staticmethod
    def increment_messages_ingested(provider: str, action: str):
        messages_ingested.labels(provider=provider, action=action).inc()

    @staticmethod
    def increment_attachment_failures(provider: str, count: int = 1):
        attachment_failures.labels(provider=provider).inc(count)

    @staticmethod
    def increment_provider_retries(provider: str, error: str):
        provider_retries.labels(provider=provider, error=error).inc()

    @staticmethod
    def increment_webhook_notifications(provider: str, result: str):
        webhook_notifications.labels(provider=provider, result=result).inc()

    @staticmethod
    def increment_api_requests(method: str, endpoint: str, status_code: int):
        """Increment API request counter."""
        api_requests.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
