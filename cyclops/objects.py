"""Resource types and interfaces shared across the package."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Mapping, Protocol

PHASE_SUCCESSFUL = "Successful"
PHASE_FAILED = "Failed"

ON_DELETE_STRATEGY = "OnDelete"
ROLLING_UPDATE_STRATEGY = "RollingUpdate"

POD_RUNNING = "Running"
CONDITION_READY = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

OPERATOR_IN = "In"
OPERATOR_NOT_IN = "NotIn"
OPERATOR_EXISTS = "Exists"
OPERATOR_DOES_NOT_EXIST = "DoesNotExist"


class ApiError(Exception):
    """An error reported by the cluster API."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class TooManyRequestsError(ApiError):
    """The API refused the request for now (HTTP 429)."""


_NAME_PATTERN = r"[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?"
_KEY_RE = re.compile(rf"(?:[a-z0-9]([-a-z0-9.]*[a-z0-9])?/)?{_NAME_PATTERN}")
_VALUE_RE = re.compile(_NAME_PATTERN)
_SET_TERM_RE = re.compile(r"(\S+)\s+(in|notin)\s*\((.*)\)")


def _check_key(key: str) -> None:
    prefix, _, name = key.rpartition("/")
    if not _KEY_RE.fullmatch(key) or len(name) > 63 or len(prefix) > 253:
        raise ValueError(f"invalid label key {key!r}")


def _check_value(value: str) -> None:
    if len(value) > 63 or (value and not _VALUE_RE.fullmatch(value)):
        raise ValueError(f"invalid label value {value!r}")


def _split_terms(text: str) -> Iterator[str]:
    if not text.strip():
        return
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced parentheses in selector {text!r}")
        if char == "," and depth == 0:
            yield _non_empty_term("".join(current), text)
            current = []
        else:
            current.append(char)
    if depth:
        raise ValueError(f"unbalanced parentheses in selector {text!r}")
    yield _non_empty_term("".join(current), text)


def _non_empty_term(term: str, text: str) -> str:
    term = term.strip()
    if not term:
        raise ValueError(f"empty term in selector {text!r}")
    return term


@dataclass
class LabelSelector:
    """A label selector: exact label matches plus set-based requirements."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[tuple[str, str, tuple[str, ...]]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.match_labels = dict(self.match_labels)
        for key, value in self.match_labels.items():
            _check_key(key)
            _check_value(value)
        normalized = []
        for key, operator, values in self.match_expressions:
            values = tuple(values)
            _check_key(key)
            if operator in (OPERATOR_IN, OPERATOR_NOT_IN):
                if not values:
                    raise ValueError("for 'in', 'notin' operators, values set can't be empty")
            elif operator in (OPERATOR_EXISTS, OPERATOR_DOES_NOT_EXIST):
                if values:
                    raise ValueError("values set must be empty for exists and does not exist")
            else:
                raise ValueError(f"{operator!r} is not a valid label selector operator")
            for value in values:
                _check_value(value)
            normalized.append((key, operator, values))
        self.match_expressions = normalized

    @classmethod
    def parse(cls, text: str) -> LabelSelector:
        """Parse a selector such as ``a=b,c in (x,y),!d``."""
        match_labels: dict[str, str] = {}
        expressions: list[tuple[str, str, tuple[str, ...]]] = []
        for term in _split_terms(text):
            set_term = _SET_TERM_RE.fullmatch(term)
            if set_term:
                key, op, body = set_term.groups()
                values = tuple(v.strip() for v in body.split(",") if v.strip())
                expressions.append((key, OPERATOR_IN if op == "in" else OPERATOR_NOT_IN, values))
            elif term.startswith("!"):
                expressions.append((term[1:].strip(), OPERATOR_DOES_NOT_EXIST, ()))
            elif "!=" in term:
                key, value = (part.strip() for part in term.split("!=", 1))
                expressions.append((key, OPERATOR_NOT_IN, (value,)))
            elif "=" in term:
                separator = "==" if "==" in term else "="
                key, value = (part.strip() for part in term.split(separator, 1))
                if key in match_labels:
                    expressions.append((key, OPERATOR_IN, (value,)))
                else:
                    match_labels[key] = value
            else:
                expressions.append((term, OPERATOR_EXISTS, ()))
        return cls(match_labels, expressions)

    @classmethod
    def everything(cls) -> LabelSelector:
        """A selector that matches every set of labels."""
        return cls()

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        """Whether the given labels satisfy every requirement."""
        labels = labels or {}
        if any(labels.get(key) != value for key, value in self.match_labels.items()):
            return False
        for key, operator, values in self.match_expressions:
            present = key in labels
            if operator == OPERATOR_IN and not (present and labels[key] in values):
                return False
            if operator == OPERATOR_NOT_IN and present and labels[key] in values:
                return False
            if operator == OPERATOR_EXISTS and not present:
                return False
            if operator == OPERATOR_DOES_NOT_EXIST and present:
                return False
        return True

    def __str__(self) -> str:
        terms = [f"{key}={value}" for key, value in self.match_labels.items()]
        for key, operator, values in self.match_expressions:
            if operator == OPERATOR_IN:
                terms.append(f"{key} in ({','.join(values)})")
            elif operator == OPERATOR_NOT_IN:
                terms.append(f"{key} notin ({','.join(values)})")
            elif operator == OPERATOR_EXISTS:
                terms.append(key)
            else:
                terms.append(f"!{key}")
        return ",".join(terms)


@dataclass
class OwnerReference:
    """A reference from an object to the object that owns it."""

    kind: str = ""
    name: str = ""
    api_version: str = ""


@dataclass
class ObjectMeta:
    """Metadata common to every cluster object."""

    name: str = ""
    generate_name: str = ""
    namespace: str = ""
    cluster_name: str = ""
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)


@dataclass
class _Resource:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class PodCondition:
    """One condition in a pod's status."""

    type: str = CONDITION_READY
    status: str = CONDITION_TRUE
    last_transition_time: datetime = field(
        default_factory=lambda: datetime.fromtimestamp(0, timezone.utc)
    )


@dataclass
class Node(_Resource):
    """A cluster node."""

    provider_id: str = ""
    unschedulable: bool = False


@dataclass
class Pod(_Resource):
    """A pod scheduled on a node."""

    node_name: str = ""
    phase: str = ""
    conditions: list[PodCondition] = field(default_factory=list)


@dataclass
class DaemonSet(_Resource):
    """A daemonset and the parts of its spec the observers use."""

    selector: LabelSelector = field(default_factory=LabelSelector)
    update_strategy: str = ROLLING_UPDATE_STRATEGY


@dataclass
class ControllerRevision(_Resource):
    """A numbered revision of a daemonset template."""

    revision: int = 0


@dataclass
class CycleSettings:
    """How the nodes of a group are cycled."""

    method: str = "Drain"
    concurrency: int = 0
    cycling_timeout: timedelta | None = None


def _group_names(name: str, names: Iterable[str]) -> list[str]:
    combined = [name] if name else []
    combined.extend(names)
    return list(dict.fromkeys(combined))


@dataclass
class NodeGroup(_Resource):
    """A group of nodes that are cycled together."""

    node_group_name: str = ""
    node_groups_list: list[str] = field(default_factory=list)
    node_selector: LabelSelector = field(default_factory=LabelSelector)
    cycle_settings: CycleSettings = field(default_factory=CycleSettings)
    health_checks: list = field(default_factory=list)
    pre_termination_checks: list = field(default_factory=list)
    skip_initial_health_checks: bool = False
    skip_pre_termination_checks: bool = False

    def node_group_names(self) -> list[str]:
        """The cloud provider group names, the single name first."""
        return _group_names(self.node_group_name, self.node_groups_list)


@dataclass
class CycleNodeRequestStatus:
    """Progress of a cycle node request."""

    phase: str = ""
    message: str = ""
    current_nodes: list[str] = field(default_factory=list)
    selected_nodes: dict[str, bool] = field(default_factory=dict)
    nodes_to_terminate: list[str] = field(default_factory=list)
    num_nodes_cycled: int = 0
    thread_timestamp: str = ""


@dataclass
class CycleNodeRequest(_Resource):
    """A request to cycle the nodes of one or more node groups."""

    node_group_name: str = ""
    node_groups_list: list[str] = field(default_factory=list)
    selector: LabelSelector = field(default_factory=LabelSelector)
    node_names: list[str] = field(default_factory=list)
    cycle_settings: CycleSettings = field(default_factory=CycleSettings)
    health_checks: list = field(default_factory=list)
    pre_termination_checks: list = field(default_factory=list)
    skip_initial_health_checks: bool = False
    skip_pre_termination_checks: bool = False
    status: CycleNodeRequestStatus = field(default_factory=CycleNodeRequestStatus)

    def node_group_names(self) -> list[str]:
        """The cloud provider group names, the single name first."""
        return _group_names(self.node_group_name, self.node_groups_list)

    def node_label_selector(self) -> LabelSelector:
        """A validated copy of the node selector; raises ValueError if invalid."""
        return LabelSelector(
            dict(self.selector.match_labels), copy.deepcopy(self.selector.match_expressions)
        )


@dataclass
class ListedNodeGroups:
    """A node group, the nodes of it that need cycling and why."""

    node_group: NodeGroup
    nodes: list[Node] = field(default_factory=list)
    reason: str = ""


@dataclass
class Options:
    """Configuration of the observer controller."""

    cnr_prefix: str = ""
    namespace: str = ""
    check_schedule: str = ""
    prometheus_address: str = ""
    dry_mode: bool = False
    run_immediately: bool = False
    run_once: bool = False
    check_interval: timedelta = timedelta(0)
    wait_interval: timedelta = timedelta(0)
    node_startup_time: timedelta = timedelta(0)
    prometheus_scrape_interval: timedelta = timedelta(0)


class NodeLister:
    """Lists nodes held in memory that match a label selector."""

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._nodes = list(nodes)

    def list(self, selector: LabelSelector) -> list[Node]:
        return [node for node in self._nodes if selector.matches(node.metadata.labels)]


class Observer(Protocol):
    """Detects node groups whose nodes have fallen out of date."""

    def changed(self, node_groups: list[NodeGroup]) -> list[ListedNodeGroups]:
        """Return the node groups with out-of-date nodes."""


class Notifier(Protocol):
    """Sends cycling progress to a messaging provider."""

    def cycling_started(self, cnr: CycleNodeRequest) -> None:
        """Announce that cycling has started."""

    def phase_transitioned(self, cnr: CycleNodeRequest) -> None:
        """Announce that the request moved to a new phase."""

    def nodes_selected(self, cnr: CycleNodeRequest) -> None:
        """Announce newly selected nodes."""