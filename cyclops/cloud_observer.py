"""Detects nodes whose cloud instances no longer match their group's template."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from cyclops.objects import LabelSelector, ListedNodeGroups, Node, NodeGroup

log = logging.getLogger(__name__)


class _Instance(Protocol):
    id: str

    def matches_provider_id(self, provider_id: str) -> bool: ...

    def out_of_date(self) -> bool: ...


class _CloudNodeGroups(Protocol):
    def ready_instances(self) -> Iterable[_Instance]: ...


class _CloudProvider(Protocol):
    def get_node_groups(self, names: list[str]) -> _CloudNodeGroups: ...


class CloudObserver:
    """Finds node groups whose ready instances are out of date with their cloud configuration.

    The cloud provider's ``get_node_groups(names)`` returns an object whose
    ``ready_instances()`` yields instances with an ``id``, ``matches_provider_id``
    and ``out_of_date``.
    """

    def __init__(self, cloud_provider: _CloudProvider, node_lister) -> None:
        self.cloud_provider = cloud_provider
        self.node_lister = node_lister

    def changed(self, node_groups: list[NodeGroup]) -> list[ListedNodeGroups]:
        """The node groups with nodes on out-of-date instances."""
        changed: list[ListedNodeGroups] = []
        for node_group in node_groups:
            log.debug("cloud observer: checking nodegroup %s", node_group.name)
            names = node_group.node_group_names()
            try:
                cloud_groups = self.cloud_provider.get_node_groups(names)
            except Exception:  # an unknown group only skips this node group
                log.error("could not find cloud provider nodegroups named %s", names)
                continue

            try:
                selector = LabelSelector(
                    dict(node_group.node_selector.match_labels),
                    list(node_group.node_selector.match_expressions),
                )
            except ValueError as err:
                log.error(
                    "failed to parse selector %r for nodegroup %r: %s",
                    str(node_group.node_selector), node_group.name, err,
                )
                continue
            try:
                nodes = list(self.node_lister.list(selector))
            except Exception as err:  # skip only this node group
                log.error("failed to list nodes for nodegroup %r: %s", node_group.name, err)
                continue

            out_of_date: list[Node] = []
            reasons: list[str] = []
            for instance in cloud_groups.ready_instances():
                node = next(
                    (n for n in nodes if instance.matches_provider_id(n.provider_id)), None
                )
                if node is None:
                    continue
                if instance.out_of_date():
                    reason = (
                        f'instance "{instance.id}" / node "{node.name}" not up to date with '
                        "current cloud provider node group configuration/template"
                    )
                    log.debug("[OUT OF DATE] %s", reason)
                    reasons.append(reason)
                    out_of_date.append(node)
                else:
                    log.debug("[OK] instance %s is up to date", instance.id)

            if out_of_date:
                changed.append(
                    ListedNodeGroups(
                        node_group=node_group, nodes=out_of_date, reason="\n".join(reasons)
                    )
                )
        return changed