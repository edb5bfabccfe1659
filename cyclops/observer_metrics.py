"""Prometheus metrics recorded by the observer controller."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable

METRICS_NAMESPACE = "cyclops_observer"


class MetricKind(str, Enum):
    """The Prometheus type of a metric."""

    COUNTER = "counter"
    GAUGE = "gauge"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    """Format a sample value the way the Prometheus text format writes it."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    number = Decimal(repr(float(value))).normalize()
    sign, digits, _ = number.as_tuple()
    exponent = number.adjusted()
    if exponent < -4 or exponent >= 6:
        mantissa = "".join(map(str, digits))
        if len(mantissa) > 1:
            mantissa = f"{mantissa[0]}.{mantissa[1:]}"
        exp_sign = "-" if exponent < 0 else "+"
        return f"{'-' if sign else ''}{mantissa}e{exp_sign}{abs(exponent):02d}"
    return format(number, "f")


class _Child:
    """One labelled series of a metric."""

    def __init__(self, metric: LabelledMetric, key: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        self._metric._add(self._key, amount)

    def set(self, value: float) -> None:
        self._metric._set(self._key, value)

    @property
    def value(self) -> float:
        return self._metric._get(self._key)


class LabelledMetric:
    """A counter or gauge with one series per combination of label values."""

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Iterable[str],
        kind: MetricKind | str = MetricKind.COUNTER,
        namespace: str = "",
    ) -> None:
        self.name = f"{namespace}_{name}" if namespace else name
        self.help = help
        self.label_names = tuple(label_names)
        self.kind = MetricKind(kind)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, args: tuple) -> tuple[str, ...]:
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        return tuple(str(arg) for arg in args)

    def _add(self, key: tuple[str, ...], amount: float) -> None:
        if self.kind is MetricKind.COUNTER and amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def _set(self, key: tuple[str, ...], value: float) -> None:
        if self.kind is not MetricKind.GAUGE:
            raise TypeError(f"{self.name} is a {self.kind.value} and cannot be set")
        with self._lock:
            self._values[key] = float(value)

    def _get(self, key: tuple[str, ...]) -> float:
        with self._lock:
            return self._values.get(key, 0.0)

    def labels(self, *args) -> _Child:
        """The series for these label values, created at zero if new."""
        key = self._key(args)
        with self._lock:
            self._values.setdefault(key, 0.0)
        return _Child(self, key)

    def inc(self, *args) -> None:
        """Add one to the series for these label values."""
        self.labels(*args).inc()

    def set(self, value: float, *args) -> None:
        """Set the series for these label values; gauges only."""
        self.labels(*args).set(value)

    def value(self, *args) -> float:
        """The current value of a series, zero if it was never recorded."""
        return self._get(self._key(args))

    def expose(self) -> str:
        """The metric in the Prometheus text format; empty when it has no series."""
        with self._lock:
            samples = sorted(self._values.items())
        if not samples:
            return ""
        lines = [
            f"# HELP {self.name} {_escape_help(self.help)}",
            f"# TYPE {self.name} {self.kind.value}",
        ]
        for key, value in samples:
            labels = ",".join(
                f'{name}="{_escape_label(label)}"' for name, label in zip(self.label_names, key)
            )
            series = f"{self.name}{{{labels}}}" if labels else self.name
            lines.append(f"{series} {_format_value(value)}")
        return "\n".join(lines) + "\n"


def _metric(name: str, help: str, label: str, kind: MetricKind):
    return field(
        default_factory=lambda: LabelledMetric(name, help, [label], kind, METRICS_NAMESPACE)
    )


@dataclass
class ObserverMetrics:
    """The metrics of the observer controller."""

    node_groups_out_of_date: LabelledMetric = _metric(
        "node_groups_out_of_date",
        "counter of nodegroups found out of date changed",
        "observer",
        MetricKind.COUNTER,
    )
    cnrs_created: LabelledMetric = _metric(
        "cnrs_created", "counter of cnrs created by observer", "nodegroup", MetricKind.COUNTER
    )
    nodegroups_locked: LabelledMetric = _metric(
        "nodegroups_locked",
        "counter of nodegroups locked when checking changes",
        "nodegroup",
        MetricKind.COUNTER,
    )
    observer_run_times: LabelledMetric = _metric(
        "run_times", "gauge of observer runtimes in seconds", "observer", MetricKind.GAUGE
    )

    def collectors(self) -> list[LabelledMetric]:
        """Every metric held, in declaration order."""
        return [
            self.node_groups_out_of_date,
            self.cnrs_created,
            self.nodegroups_locked,
            self.observer_run_times,
        ]

    def expose(self) -> str:
        """All metrics in the Prometheus text format."""
        return "".join(metric.expose() for metric in self.collectors())