"""Prometheus metrics collected by the bot."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

IMMEDIATE = "immediate"
SCHEDULED = "scheduled"


class MailMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("mw_sent_total", "Total delivered emails", ["path"], registry=self.registry)
        self.errors = Counter("mw_errors_total", "Total failed deliveries", ["path"], registry=self.registry)
        self.pending = Gauge("mw_pending_scheduled", "Scheduled emails still pending", registry=self.registry)

    def inc_sent(self, path: str, amount: int = 1):
        """Increase the ``sent`` counter for the given delivery path."""
        if amount:
            self.sent.labels(path=path).inc(amount)

    def inc_error(self, path: str, amount: int = 1):
        """Increase the ``errors`` counter for the given delivery path."""
        if amount:
            self.errors.labels(path=path).inc(amount)

    def set_pending(self, value: int):
        """Update the gauge tracking pending scheduled emails."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
