"""The observer controller: finds out-of-date node groups and creates cycle node requests."""

from __future__ import annotations

import logging
import operator
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Mapping

import backoff
import requests

from cyclops.generation import (
    apply_cnr,
    generate_cnr,
    give_reason,
    list_cnrs,
    list_node_groups,
    set_api_version,
    use_generate_name_cnr,
    validate_node_group,
)
from cyclops.objects import (
    PHASE_SUCCESSFUL,
    ApiError,
    CycleNodeRequest,
    ListedNodeGroups,
    Node,
    NodeGroup,
    Options,
)
from cyclops.observer_metrics import ObserverMetrics
from cyclops.validation import get_name

API_VERSION = "undefined"
SCALE_DOWN_QUERY = "cluster_autoscaler_last_activity{activity='scaleDown'}"
PROMETHEUS_TIMEOUT_SECONDS = 10.0
SAFE_TO_START_MAX_TIME = timedelta(seconds=120)

log = logging.getLogger(__name__)

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


@dataclass
class _TimedKey:
    duration: float
    key: str


def union_nodes(aa: Iterable[Node], bb: Iterable[Node]) -> list[Node]:
    """The nodes of both lists without duplicate names; later entries win."""
    union: dict[str, Node] = {}
    for node in [*aa, *bb]:
        union[node.name] = node
    return list(union.values())


def same_node_groups(group_a: list[str], group_b: list[str]) -> bool:
    """Whether both lists name the same groups, in any order."""
    if len(group_a) != len(group_b):
        return False
    names = set(group_a)
    return all(group in names for group in group_b)


def string_to_time(s: str) -> datetime:
    """Parse a decimal count of Unix seconds; raises ValueError if it is not one."""
    if not _INTEGER_RE.fullmatch(s):
        raise ValueError(f"invalid integer {s!r}")
    try:
        return datetime.fromtimestamp(int(s), timezone.utc)
    except (OverflowError, OSError) as err:
        raise ValueError(f"time out of range {s!r}") from err


def _sample_text(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        if self.path.split("?", 1)[0] != "/metrics":
            self.send_error(404)
            return
        body = self.server.metrics.expose().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args) -> None:  # noqa: A002
        log.debug(format, *args)


def _start_metrics_server(addr: str, metrics: ObserverMetrics) -> ThreadingHTTPServer:
    host, _, port = addr.rpartition(":")
    server = ThreadingHTTPServer((host, int(port or 0)), _MetricsHandler)
    server.metrics = metrics
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


class Controller:
    """Runs observers over valid node groups and creates requests for the changed ones."""

    def __init__(
        self,
        client,
        options: Options,
        node_lister,
        observers: Mapping[str, object],
        metrics: ObserverMetrics | None = None,
        metrics_addr: str | None = None,
        session=None,
        api_version: str = API_VERSION,
    ) -> None:
        self.client = client
        self.options = options
        self.node_lister = node_lister
        self.observers = dict(observers)
        self.metrics = metrics if metrics is not None else ObserverMetrics()
        self.api_version = api_version
        self.retry_max_time = SAFE_TO_START_MAX_TIME
        # the initial order doesn't matter, the first run sorts it
        self.optimised_order = [_TimedKey(0.0, key) for key in self.observers]
        self._session = session if session is not None else requests.Session()
        self._stop = threading.Event()
        self._server = (
            _start_metrics_server(metrics_addr, self.metrics) if metrics_addr is not None else None
        )

    @property
    def metrics_server_address(self) -> tuple[str, int] | None:
        """Host and port the metrics server listens on, if it runs."""
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return host, port

    def stop(self) -> None:
        """Stop the run loop and the metrics server."""
        self._stop.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None

    def observe_changes(self, valid_node_groups: list[NodeGroup]) -> list[ListedNodeGroups]:
        """Run every observer, fastest first, skipping groups already found changed."""
        if not valid_node_groups:
            log.debug("no valid node groups to check for changes")

        run_times: list[_TimedKey] = []
        changed: dict[str, ListedNodeGroups] = {}
        log.debug("running in optimised order: %s", [t.key for t in self.optimised_order])
        for timed in self.optimised_order:
            name = timed.key
            if name not in self.observers:
                raise RuntimeError(
                    "failed to get observer from optimised ordering list. "
                    "Make sure to construct the Controller with its observers"
                )
            observer = self.observers[name]
            log.debug("about to run observer %r", name)

            clean = []
            for node_group in valid_node_groups:
                if node_group.name in changed:
                    log.debug("nodegroup %r already known out of date: skipping", node_group.name)
                    continue
                clean.append(node_group)

            start = time.perf_counter()
            changed_groups = observer.changed(clean) or []
            duration = time.perf_counter() - start

            log.debug("%s: %d nodegroups out of date", name, len(changed_groups))
            run_times.append(_TimedKey(duration, name))
            log.debug("observer %r time taken: %ss", name, duration)
            self.metrics.observer_run_times.set(duration, name)

            for listed in changed_groups:
                self.metrics.node_groups_out_of_date.inc(name)
                existing = changed.get(listed.node_group.name)
                if existing is not None:
                    existing.nodes = union_nodes(existing.nodes, listed.nodes)
                    continue
                changed[listed.node_group.name] = listed

        self.optimised_order = sorted(run_times, key=lambda t: t.duration)
        return list(changed.values())

    def valid_node_groups(self) -> list[NodeGroup]:
        """Every node group in the cluster that passes validation."""
        valid = []
        for node_group in list_node_groups(self.client):
            ok, reason = validate_node_group(self.node_lister, node_group)
            if not ok:
                log.warning("skipping nodegroup %s because %s", node_group.name, reason)
                continue
            valid.append(node_group)
        return valid

    def in_progress_cnrs(self) -> list[CycleNodeRequest]:
        """Requests in the namespace that have not yet succeeded; failed ones count."""
        return [
            cnr
            for cnr in list_cnrs(self.client, self.options.namespace)
            if cnr.status.phase != PHASE_SUCCESSFUL
        ]

    def drop_in_progress_node_groups(
        self, node_groups: list[NodeGroup], cnrs: list[CycleNodeRequest]
    ) -> list[NodeGroup]:
        """The node groups that no in-progress request is cycling."""
        resting = []
        for node_group in node_groups:
            names = node_group.node_group_names()
            if any(same_node_groups(cnr.node_group_names(), names) for cnr in cnrs):
                log.warning(
                    "nodegroup %r has an in progress CNR.. skipping this nodegroup",
                    node_group.name,
                )
                self.metrics.nodegroups_locked.inc(node_group.name)
                continue
            resting.append(node_group)
        return resting

    def safe_to_start_cycle(self) -> bool:
        """Whether the cluster autoscaler metrics show no scale-up in progress.

        Missing Prometheus or autoscaler metrics count as safe.
        """
        address = self.options.prometheus_address.rstrip("/")
        try:
            response = self._session.get(
                f"{address}/api/v1/query",
                params={"query": SCALE_DOWN_QUERY, "time": f"{time.time():.3f}"},
                timeout=PROMETHEUS_TIMEOUT_SECONDS,
            )
            payload = response.json()
        except (requests.RequestException, ValueError) as err:
            log.error("Error querying Prometheus: %s", err)
            return True

        if not isinstance(payload, dict) or payload.get("status") != "success":
            error = payload.get("error") if isinstance(payload, dict) else payload
            log.error("Error querying Prometheus: %s", error)
            return True
        if payload.get("warnings"):
            log.error("Warnings: %s", payload["warnings"])

        data = payload.get("data") or {}
        if data.get("resultType") != "vector":
            log.error("Error querying Prometheus: unexpected result type %r", data.get("resultType"))
            return True
        result = data.get("result") or []
        if not result:
            log.error("Empty response from prometheus")
            return True

        try:
            value = float(result[-1]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError) as err:
            log.error("Error querying Prometheus: %s", err)
            return True

        try:
            last_activity = string_to_time(_sample_text(value))
        except ValueError as err:
            log.error("Error converting the time: %s", err)
            return False

        # the scaleDown activity only stops updating while the cluster scales up
        if datetime.now(timezone.utc) - last_activity > self.options.prometheus_scrape_interval:
            log.info("Scale up event recently happened")
            return False
        log.debug("No scale up event")
        return True

    def check_if_safe_to_start_cycle(self) -> bool:
        """Retry the safety check with exponential backoff for a bounded time."""

        def attempt() -> bool:
            if not self.safe_to_start_cycle():
                log.error("Cluster autoscaler scaleUp event in progress. Retry...")
                return False
            return True

        retrying = backoff.on_predicate(
            backoff.expo,
            operator.not_,
            max_time=self.retry_max_time.total_seconds(),
            logger=None,
            base=1.5,
            factor=0.5,
            max_value=60,
        )(attempt)
        if not retrying():
            log.error("there are still cluster-autoscaler scaleUp events")
            return False
        return True

    def create_cnrs(self, changed_node_groups: list[ListedNodeGroups]) -> None:
        """Generate and apply a request for every changed node group."""
        for listed in changed_node_groups:
            node_names = [node.name for node in listed.nodes]
            cnr = generate_cnr(
                listed.node_group, node_names, self.options.cnr_prefix, self.options.namespace
            )
            use_generate_name_cnr(cnr)
            give_reason(cnr, listed.reason)
            set_api_version(cnr, self.api_version)
            name = get_name(cnr.metadata)
            group_name = listed.node_group.name
            try:
                apply_cnr(self.client, self.options.dry_mode, cnr)
            except ApiError as err:
                log.error("failed to apply cnr %r for nodegroup %r: %s", name, group_name, err)
                continue
            prefix = "[drymode] " if self.options.dry_mode else ""
            log.info("%ssuccessfully applied cnr %r for nodegroup %r", prefix, name, group_name)
            self.metrics.cnrs_created.inc(group_name)

    def next_run_time(self) -> datetime:
        """When the loop next runs, in UTC."""
        return datetime.now(timezone.utc) + self.options.check_interval

    def run(self) -> None:
        """Run the check once: find changes and apply requests for them."""
        node_groups = self.valid_node_groups()
        in_progress = self.in_progress_cnrs()
        if not in_progress:
            log.debug("no active CNRs to wait for")
        else:
            node_groups = self.drop_in_progress_node_groups(node_groups, in_progress)

        changed = self.observe_changes(node_groups)
        if not changed:
            log.info("all nodegroups up to date. next check in %s", self.options.check_interval)
            return

        for listed in changed:
            log.info("nodegroup %r out of date", listed.node_group.name)
            for node in listed.nodes:
                log.info("for node %r", node.name)

        if not self.check_if_safe_to_start_cycle():
            return

        log.debug("waiting for %s to allow changes to settle", self.options.wait_interval)
        if self._stop.wait(self.options.wait_interval.total_seconds()):
            return
        self.create_cnrs(changed)
        if self.options.run_once:
            log.debug("done creating CNRs after runOnce. exiting")
        else:
            log.debug("done creating CNRs.. next check in %s", self.options.check_interval)

    def run_forever(self) -> None:
        """Run the check every check interval until stopped."""
        interval = self.options.check_interval.total_seconds()
        if interval <= 0:
            raise ValueError("check interval must be positive")
        if self.options.run_immediately:
            log.debug("running immediately as specified in cli config")
            self.run()
        log.debug("will run at %s", self.next_run_time())
        while not self._stop.wait(interval):
            log.debug("running check loop")
            self.run()
            log.debug("will run again at %s", self.next_run_time())