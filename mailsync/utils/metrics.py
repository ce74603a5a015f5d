from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create a custom registry for better control
registry = CollectorRegistry()

# Define metrics
sync_passes = Counter(
    'email_sync_passes_total',
    'Completed account sync passes by outcome',
    ['provider', 'outcome'],
    registry=registry
)

sync_duration = Histogram(
    'email_sync_duration_seconds',
    'Time spent on one account sync pass',
    ['provider'],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
    registry=registry
)

sync_messages = Counter(
    'email_sync_messages_total',
    'Messages seen during sync passes by result',
    ['provider', 'result'],
    registry=registry
)

syncs_in_progress = Gauge(
    'email_sync_in_progress',
    'Number of account sync passes currently running',
    registry=registry
)

token_refreshes = Counter(
    'email_token_refresh_total',
    'OAuth2 token refresh calls by result',
    ['provider', 'result'],
    registry=registry
)

cursor_resets = Counter(
    'email_sync_cursor_resets_total',
    'Incremental cursors discarded in favour of a bounded historical resync',
    ['provider'],
    registry=registry
)


class SyncMonitor:
    """
    Monitoring collaborator handed to the sync executor and token manager.

    The base class records nothing; ``PrometheusSyncMonitor`` feeds the
    module registry. Tests pass their own subclass to capture calls.
    """

    def pass_started(self, provider: str) -> None:
        pass

    def pass_finished(self, provider: str, outcome: str, duration_seconds: float) -> None:
        pass

    def message_processed(self, provider: str, result: str) -> None:
        pass

    def token_refreshed(self, provider: str, result: str) -> None:
        pass

    def cursor_reset(self, provider: str) -> None:
        pass


class PrometheusSyncMonitor(SyncMonitor):
    """Records sync activity in the Prometheus registry."""

    def pass_started(self, provider: str) -> None:
        syncs_in_progress.inc()

    def pass_finished(self, provider: str, outcome: str, duration_seconds: float) -> None:
        syncs_in_progress.dec()
        sync_passes.labels(provider=provider, outcome=outcome).inc()
        sync_duration.labels(provider=provider).observe(duration_seconds)

    def message_processed(self, provider: str, result: str) -> None:
        sync_messages.labels(provider=provider, result=result).inc()

    def token_refreshed(self, provider: str, result: str) -> None:
        token_refreshes.labels(provider=provider, result=result).inc()

    def cursor_reset(self, provider: str) -> None:
        cursor_resets.labels(provider=provider).inc()
