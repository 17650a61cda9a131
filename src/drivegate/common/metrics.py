"""Metrics utilities for exposing Prometheus-formatted data."""

from __future__ import annotations

from typing import Callable, Dict


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} counter\n{self.name} {self._value}\n"


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def set(self, value: float) -> None:
        self._value = value

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        self._value -= amount

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} gauge\n{self.name} {self.value}\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {b: 0 for b in self._buckets}
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        # re-registering a name returns the existing metric so module reloads keep counting
        existing = self._metrics.get(getattr(metric, "name"))
        if existing is not None:
            return existing
        self._metrics[getattr(metric, "name")] = metric
        return metric

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("drivegate_requests_total", "Drive requests handled"))
NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(Counter("drivegate_not_found_total", "Requests answered with 404"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("drivegate_bytes_served_total", "Body bytes streamed to clients"))
REQUEST_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("drivegate_request_errors_total", "Requests that failed with an unexpected error")
)
RELEASE_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("drivegate_release_failures_total", "Drive release callbacks that raised")
)
ACTIVE_CONNECTIONS_GAUGE = GLOBAL_REGISTRY.register(Gauge("drivegate_active_connections", "Open client connections"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "drivegate_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
        description="Time from request start to response end",
    )
)
