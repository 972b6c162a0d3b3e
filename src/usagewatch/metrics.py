from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from usagewatch.aggregator import highest_utilization, present_limits
from usagewatch.models import UsageSnapshot


class PollMetrics:
    """
    exposes polling health and the latest usage snapshot as
    Prometheus metrics, labelled by account id.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._poll_duration: "Histogram" = Histogram(
            "usagewatch_poll_duration_seconds",
            "Duration of usage polls",
            ["account"],
            registry=registry,
        )
        self._poll_errors: "Counter" = Counter(
            "usagewatch_poll_errors_total",
            "Total number of failed usage polls by account and kind",
            ["account", "kind"],
            registry=registry,
        )
        self._last_poll_success: "Gauge" = Gauge(
            "usagewatch_last_poll_success_timestamp_seconds",
            "Unix timestamp of the last successful poll per account",
            ["account"],
            registry=registry,
        )
        self._utilization: "Gauge" = Gauge(
            "usagewatch_utilization_percent",
            "Utilization of each reported usage limit",
            ["account", "limit"],
            registry=registry,
        )
        self._highest_utilization: "Gauge" = Gauge(
            "usagewatch_highest_utilization_percent",
            "Highest utilization across all reported limits",
            ["account"],
            registry=registry,
        )
        # account -> limit keys currently exported
        self._exported_limits: "dict[str, set[str]]" = {}

    def observe_poll_duration(self, account: "str", duration_seconds: "float") -> "None":
        self._poll_duration.labels(account=account).observe(duration_seconds)

    def inc_poll_error(self, account: "str", kind: "str") -> "None":
        self._poll_errors.labels(account=account, kind=kind).inc()

    def set_last_poll_success(self, account: "str", timestamp: "float") -> "None":
        self._last_poll_success.labels(account=account).set(timestamp)

    def update_snapshot(self, account: "str", snapshot: "UsageSnapshot") -> "None":
        """
        sets one utilization gauge per limit present in the snapshot.
        Limits the server stopped reporting are dropped so they do not
        keep exporting a stale value.
        """
        present = {item.key: item.limit for item in present_limits(snapshot)}
        for key, limit in present.items():
            self._utilization.labels(account=account, limit=key).set(limit.utilization)

        for key in self._exported_limits.get(account, set()) - present.keys():
            self._utilization.remove(account, key)
        self._exported_limits[account] = set(present)

        self._highest_utilization.labels(account=account).set(
            highest_utilization(snapshot)
        )
