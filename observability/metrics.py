"""Lightweight in-process metrics for the job subsystem."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Union


@dataclass
class _BaseMetric:
    name: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> float:
        with self._lock:
            return float(self._value)


class Counter(_BaseMetric):
    """Monotonically increasing counter."""

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter increments must be non-negative")
        with self._lock:
            self._value += amount


class Gauge(_BaseMetric):
    """Gauge metric supporting set/add operations."""

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def add(self, amount: float) -> None:
        with self._lock:
            self._value += amount


@dataclass
class Summary:
    """Count/sum/max over observed durations (seconds)."""

    name: str
    _count: int = 0
    _sum: float = 0.0
    _max: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            self._max = max(self._max, value)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {"count": float(self._count), "sum": round(self._sum, 6), "max": round(self._max, 6)}


Metric = Union[Counter, Gauge, Summary]


class MetricsRegistry:
    """Thread-safe registry storing metrics by name."""

    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, kind: type) -> Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if isinstance(metric, kind):
                return metric
            created = kind(name=name)
            self._metrics[name] = created
            return created

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)  # type: ignore[return-value]

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)  # type: ignore[return-value]

    def summary(self, name: str) -> Summary:
        return self._get_or_create(name, Summary)  # type: ignore[return-value]

    def get(self, name: str) -> Optional[Metric]:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            metrics = list(self._metrics.items())
        return {name: metric.snapshot() for name, metric in metrics}


_DEFAULT_REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _DEFAULT_REGISTRY


__all__ = [
    "Counter",
    "Gauge",
    "Summary",
    "MetricsRegistry",
    "get_registry",
]
