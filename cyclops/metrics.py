"""Gauges of cycle node requests and statuses in the cluster, by phase."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta

from cyclops.objects import ApiError, CycleNodeRequest

NAMESPACE = "cyclops"
CYCLE_NODE_STATUS_KIND = "CycleNodeStatus"
DEFAULT_FETCH_INTERVAL = timedelta(seconds=10)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricDesc:
    """Name, help text and label names of a metric."""

    name: str
    help: str
    label_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class Sample:
    """One gauge value of a metric, with its label values."""

    desc: MetricDesc
    value: float
    label_values: tuple[str, ...] = ()


CYCLE_NODE_REQUESTS = MetricDesc(
    f"{NAMESPACE}_cycle_node_requests", "Number of CycleNodeRequests in the cluster"
)
CYCLE_NODE_REQUESTS_BY_PHASE = MetricDesc(
    f"{NAMESPACE}_cycle_node_requests_by_phase",
    "Number of CycleNodeRequests in the cluster by phase",
    ("phase",),
)
CYCLE_NODE_STATUSES = MetricDesc(
    f"{NAMESPACE}_cycle_node_status", "Number of CycleNodeStatuses in the cluster"
)
CYCLE_NODE_STATUSES_BY_PHASE = MetricDesc(
    f"{NAMESPACE}_cycle_node_status_by_phase",
    "Number of CycleNodeStatuses in the cluster by phase",
    ("phase",),
)


def _phase_samples(items, by_phase: MetricDesc, total: MetricDesc) -> list[Sample]:
    counts = Counter(item.status.phase for item in items)
    samples = [Sample(by_phase, float(count), (phase,)) for phase, count in counts.items()]
    samples.append(Sample(total, float(len(items))))
    return samples


class CyclopsCollector:
    """Keeps the latest listing of requests and statuses and reports them as gauges."""

    def __init__(self, client, namespace: str = "", status_kind=CYCLE_NODE_STATUS_KIND) -> None:
        self.client = client
        self.namespace = namespace
        self.status_kind = status_kind
        self.cycle_node_requests: list = []
        self.cycle_node_statuses: list = []
        self._lock = threading.Lock()

    def fetch(self) -> None:
        """Refresh the listings; a failed listing is logged and the old one kept."""
        namespace = self.namespace or None
        try:
            requests = list(self.client.list(CycleNodeRequest, namespace=namespace))
        except ApiError as err:
            log.error("unable to list CycleNodeRequests for metrics: %s", err)
            return
        with self._lock:
            self.cycle_node_requests = requests
        try:
            statuses = list(self.client.list(self.status_kind, namespace=namespace))
        except ApiError as err:
            log.error("unable to list CycleNodeStatuses for metrics: %s", err)
            return
        with self._lock:
            self.cycle_node_statuses = statuses

    def describe(self) -> list[MetricDesc]:
        """Every metric this collector reports."""
        return [
            CYCLE_NODE_REQUESTS,
            CYCLE_NODE_REQUESTS_BY_PHASE,
            CYCLE_NODE_STATUSES,
            CYCLE_NODE_STATUSES_BY_PHASE,
        ]

    def collect(self) -> list[Sample]:
        """Counts by phase and totals, requests first, from the latest listing."""
        with self._lock:
            requests = list(self.cycle_node_requests)
            statuses = list(self.cycle_node_statuses)
        return _phase_samples(
            requests, CYCLE_NODE_REQUESTS_BY_PHASE, CYCLE_NODE_REQUESTS
        ) + _phase_samples(statuses, CYCLE_NODE_STATUSES_BY_PHASE, CYCLE_NODE_STATUSES)

    def start(self, interval: timedelta | float = DEFAULT_FETCH_INTERVAL) -> threading.Event:
        """Fetch now and then every interval in a background thread; set the returned event to stop."""
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        stop = threading.Event()

        def loop() -> None:
            while True:
                self.fetch()
                if stop.wait(seconds):
                    return

        threading.Thread(target=loop, daemon=True).start()
        return stop