from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram


class PipelineMetrics:
    """
    PipelineMetrics records how an invocation went: pages fetched,
    retries, errors by stage, unpriced dimensions and the line items
    produced per window.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._pages_fetched: "Counter" = Counter(
            "costbridge_pages_fetched_total",
            "Total usage pages fetched from a provider",
            ["provider"],
            registry=registry,
        )
        self._fetch_retries: "Counter" = Counter(
            "costbridge_fetch_retries_total",
            "Total provider requests retried after a transient error",
            ["provider"],
            registry=registry,
        )
        self._rate_limit_holds: "Counter" = Counter(
            "costbridge_rate_limit_holds_total",
            "Total requests held back waiting on rate limiter capacity",
            ["provider"],
            registry=registry,
        )
        self._window_errors: "Counter" = Counter(
            "costbridge_window_errors_total",
            "Total errors recorded on window responses by stage",
            ["provider", "stage"],
            registry=registry,
        )
        self._unpriced: "Counter" = Counter(
            "costbridge_unpriced_dimensions_total",
            "Total usage dimensions emitted without a catalog price",
            ["provider"],
            registry=registry,
        )
        self._line_items: "Counter" = Counter(
            "costbridge_line_items_total",
            "Total cost line items emitted by charge category",
            ["provider", "category"],
            registry=registry,
        )
        self._window_duration: "Histogram" = Histogram(
            "costbridge_window_duration_seconds",
            "Wall-clock time spent processing one window",
            ["provider"],
            registry=registry,
        )

    def inc_pages_fetched(self, provider: "str") -> "None":
        self._pages_fetched.labels(provider=provider).inc()

    def inc_fetch_retry(self, provider: "str") -> "None":
        self._fetch_retries.labels(provider=provider).inc()

    def inc_rate_limit_hold(self, provider: "str") -> "None":
        self._rate_limit_holds.labels(provider=provider).inc()

    def inc_window_error(self, provider: "str", stage: "str") -> "None":
        self._window_errors.labels(provider=provider, stage=stage).inc()

    def inc_unpriced(self, provider: "str") -> "None":
        self._unpriced.labels(provider=provider).inc()

    def add_line_items(self, provider: "str", category: "str", count: "int") -> "None":
        self._line_items.labels(provider=provider, category=category).inc(count)

    def observe_window_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._window_duration.labels(provider=provider).observe(duration_seconds)
