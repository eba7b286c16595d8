# =============================================================================
# Purpose:
#   Prometheus instrumentation for the bot service.
#
# Responsibilities:
#   - Own a private CollectorRegistry (no process-wide default registry).
#   - Offer small record_* helpers so call sites stay one-liners.
#   - Render the exposition format for GET /metrics.
# =============================================================================

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST


class Metrics:
    """
    Explicitly constructed at startup and injected into the components that
    record into it. Tests build their own instance.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "campusbot") -> None:
        self.registry = registry or CollectorRegistry()
        ns = namespace

        self.webhook_events = Counter(
            "webhook_events_total", "Webhook events by type and outcome",
            ["type", "outcome"], namespace=ns, registry=self.registry,
        )
        self.errors = Counter(
            "errors_total", "Classified errors by kind",
            ["kind"], namespace=ns, registry=self.registry,
        )
        self.scraper_requests = Counter(
            "scraper_requests_total", "Upstream requests by endpoint and result",
            ["endpoint", "result"], namespace=ns, registry=self.registry,
        )
        self.scraper_duration = Histogram(
            "scraper_request_seconds", "Upstream request latency",
            ["endpoint"], namespace=ns, registry=self.registry,
            buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
        )
        self.cache_lookups = Counter(
            "cache_lookups_total", "Store lookups by module and result (hit/miss)",
            ["module", "result"], namespace=ns, registry=self.registry,
        )
        self.rate_limited = Counter(
            "rate_limited_total", "Requests denied by a limiter",
            ["limiter", "reason"], namespace=ns, registry=self.registry,
        )
        self.limiter_active = Gauge(
            "rate_limiter_active_keys", "Keys tracked by each keyed limiter",
            ["limiter"], namespace=ns, registry=self.registry,
        )
        self.nlu_requests = Counter(
            "nlu_requests_total", "NLU calls by provider and result",
            ["provider", "result"], namespace=ns, registry=self.registry,
        )
        self.handler_duration = Histogram(
            "handler_seconds", "Time spent producing a reply",
            ["module"], namespace=ns, registry=self.registry,
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
        )
        self.warmup_records = Counter(
            "warmup_records_total", "Records ingested by warm-up module",
            ["module"], namespace=ns, registry=self.registry,
        )

    # ---------------------------------------------------------------------
    # Recording helpers
    # ---------------------------------------------------------------------
    def record_webhook(self, event_type: str, outcome: str = "ok") -> None:
        self.webhook_events.labels(event_type, outcome).inc()

    def record_error(self, kind: str) -> None:
        self.errors.labels(kind).inc()

    def record_scraper(self, endpoint: str, result: str, seconds: float) -> None:
        self.scraper_requests.labels(endpoint, result).inc()
        self.scraper_duration.labels(endpoint).observe(seconds)

    def record_cache(self, module: str, hit: bool) -> None:
        self.cache_lookups.labels(module, "hit" if hit else "miss").inc()

    def record_rate_limited(self, limiter: str, reason: str) -> None:
        self.rate_limited.labels(limiter, reason).inc()

    def set_limiter_active(self, limiter: str, count: int) -> None:
        self.limiter_active.labels(limiter).set(count)

    def record_nlu(self, provider: str, result: str) -> None:
        self.nlu_requests.labels(provider, result).inc()

    def observe_handler(self, module: str, seconds: float) -> None:
        self.handler_duration.labels(module).observe(seconds)

    def record_warmup(self, module: str, count: int) -> None:
        if count > 0:
            self.warmup_records.labels(module).inc(count)

    def render(self) -> bytes:
        return generate_latest(self.registry)
