import logging

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)

PLAIN_TEXT = "text/plain; version=0.0.4"
SWEEP_OUTCOMES = ("processed", "skipped", "failed")

COUNTERS = {
    "webhook_events": ("webhook_events_total", "Processor webhook events by result.", ["result"]),
    "bookings": ("bookings_total", "Booking lifecycle events.", ["action"]),
    "escrow": ("escrow_events_total", "Escrow ledger transitions.", ["action"]),
    "sweep_records": ("sweep_records_total", "Records handled by periodic sweeps per outcome.", ["job", "outcome"]),
    "http_5xx": ("http_5xx_total", "HTTP responses with status >= 500.", ["method", "path"]),
}


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        self._counters: dict[str, Counter] = {}
        if not enabled:
            return
        for key, (name, documentation, labels) in COUNTERS.items():
            self._counters[key] = Counter(name, documentation, labels, registry=self.registry)

    def _inc(self, key: str, amount: int = 1, **labels: str) -> None:
        counter = self._counters.get(key)
        if counter is None or amount <= 0:
            return
        counter.labels(**labels).inc(amount)

    def record_webhook(self, result: str) -> None:
        self._inc("webhook_events", result=result)

    def record_booking(self, action: str, count: int = 1) -> None:
        self._inc("bookings", count, action=action)

    def record_escrow(self, action: str) -> None:
        self._inc("escrow", action=action)

    def record_sweep(self, job: str, result: dict[str, int]) -> None:
        for outcome in SWEEP_OUTCOMES:
            self._inc("sweep_records", result.get(outcome, 0), job=job, outcome=outcome)

    def record_http_5xx(self, method: str, path: str) -> None:
        self._inc("http_5xx", method=method, path=path)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", PLAIN_TEXT
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", PLAIN_TEXT


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
