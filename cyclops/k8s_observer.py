"""Detects nodes running pods that lag behind their OnDelete daemonset."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from cyclops.objects import (
    ON_DELETE_STRATEGY,
    POD_RUNNING,
    ControllerRevision,
    DaemonSet,
    LabelSelector,
    ListedNodeGroups,
    Node,
    NodeGroup,
    Pod,
)

CONTROLLER_REVISION_LABEL = "controller-revision-hash"

log = logging.getLogger(__name__)


def _as_selector(selector: LabelSelector) -> LabelSelector:
    """A validated copy of a selector; raises ValueError if it is invalid."""
    return LabelSelector(dict(selector.match_labels), list(selector.match_expressions))


def collect_revisions(
    cr_lister, daemonsets: Mapping[str, DaemonSet]
) -> dict[str, list[ControllerRevision]]:
    """Map daemonset names to the controller revisions their selector finds.

    Listing by selector picks up new revisions when a daemonset's labels change.
    """
    collected: dict[str, list[ControllerRevision]] = {}
    for name, daemonset in daemonsets.items():
        try:
            selector = _as_selector(daemonset.selector)
        except ValueError as err:
            log.error("failed to parse selector %r for ds %r: %s", str(daemonset.selector), name, err)
            continue
        try:
            revisions = cr_lister.list(selector)
        except Exception as err:  # a failing lister only skips this daemonset
            log.warning(
                "failed to list controller revisions %r for ds %r: %s", str(selector), name, err
            )
            continue
        collected[name] = list(revisions)
        log.debug("collected revisions %s %d", name, len(collected[name]))
    return collected


def collect_pods(pods: Iterable[Pod], daemonsets: Mapping[str, DaemonSet]) -> dict[str, list[Pod]]:
    """Map daemonset names to the pods they own, by owner reference rather than labels."""
    collected: dict[str, list[Pod]] = {}
    for pod in pods:
        owner = next(
            (ref.name for ref in pod.metadata.owner_references if ref.kind == "DaemonSet"), ""
        )
        if not owner or owner not in daemonsets:
            continue
        collected.setdefault(owner, []).append(pod)
    return collected


def max_revision(revisions: list[ControllerRevision]) -> ControllerRevision:
    """The revision with the highest number; the first one if none is positive."""
    if not revisions:
        raise ValueError("no controller revisions given")
    best = revisions[0]
    highest = 0
    for revision in revisions:
        if revision.revision > highest:
            highest = revision.revision
            best = revision
    return best


class K8sObserver:
    """Finds node groups whose nodes run out-of-date pods of OnDelete daemonsets."""

    def __init__(self, node_lister, pod_lister, daemonset_lister, cr_lister) -> None:
        self.node_lister = node_lister
        self.pod_lister = pod_lister
        self.daemonset_lister = daemonset_lister
        self.cr_lister = cr_lister

    def pod_out_of_date(self, pod: Pod, revisions: list[ControllerRevision]) -> tuple[bool, str]:
        """Whether the pod's hash differs from the newest revision, and why."""
        pod_hash = (pod.metadata.labels or {}).get(CONTROLLER_REVISION_LABEL)
        if pod_hash is None:
            reason = f'no controller revision label "{CONTROLLER_REVISION_LABEL}" for pod "{pod.name}"'
            log.warning(reason)
            return False, reason

        latest = max_revision(revisions)
        latest_hash = (latest.metadata.labels or {}).get(CONTROLLER_REVISION_LABEL)
        if latest_hash is None:
            reason = (
                f'no controller revision label "{CONTROLLER_REVISION_LABEL}" '
                f'for controller revision "{latest.name}"'
            )
            log.warning(reason)
            return False, reason

        if pod_hash == latest_hash:
            return False, (
                f'pod "{pod.name}" hash "{pod_hash}" is up to date with latest daemonset '
                f'controller revision "{latest.name}" rev {latest.revision}'
            )
        return True, (
            f'pod "{pod.name}" hash "{pod_hash}" is not up to date with latest daemonset '
            f'controller revision "{latest.name}" hash "{latest_hash}" rev {latest.revision}'
        )

    def changed(self, node_groups: list[NodeGroup]) -> list[ListedNodeGroups]:
        """The node groups with nodes running an out-of-date daemonset pod."""
        if not node_groups:
            log.debug("no nodegroups to check")
            return []

        everything = LabelSelector.everything()
        try:
            daemonsets = self.daemonset_lister.list(everything)
        except Exception as err:  # nothing can be checked without daemonsets
            log.error("failed to list daemonsets: %s", err)
            return []
        indexed_daemonsets: dict[str, DaemonSet] = {}
        for daemonset in daemonsets:
            if daemonset.update_strategy != ON_DELETE_STRATEGY:
                log.debug("daemonset %r is not OnDelete: skipping", daemonset.name)
                continue
            indexed_daemonsets[daemonset.name] = daemonset

        try:
            pods = list(self.pod_lister.list(everything))
        except Exception as err:  # nothing can be checked without pods
            log.error("failed to list pods: %s", err)
            return []

        result: list[ListedNodeGroups] = []
        for node_group in node_groups:
            log.debug("k8s observer: checking nodegroup %s", node_group.name)
            try:
                selector = _as_selector(node_group.node_selector)
            except ValueError as err:
                log.error(
                    "failed to parse selector %r for nodegroup %r: %s",
                    str(node_group.node_selector), node_group.name, err,
                )
                continue
            try:
                nodes = self.node_lister.list(selector)
            except Exception as err:  # skip only this node group
                log.error("failed to list nodes for nodegroup %r: %s", node_group.name, err)
                continue
            indexed_nodes = {node.name: node for node in nodes}

            group_pods = [pod for pod in pods if pod.node_name in indexed_nodes]
            collected_pods = collect_pods(group_pods, indexed_daemonsets)
            collected_revisions = collect_revisions(self.cr_lister, indexed_daemonsets)

            changed_nodes: dict[str, Node] = {}
            reasons: list[str] = []
            for ds_name, ds_pods in collected_pods.items():
                for pod in ds_pods:
                    if pod.node_name in changed_nodes:
                        log.debug(
                            "node %r already out of date: skipping pod %r", pod.node_name, pod.name
                        )
                        continue
                    # a bad config may keep pods from running; don't cycle for those
                    if pod.phase != POD_RUNNING:
                        log.debug("pod %r not Running (current status %s): skipping", pod.name, pod.phase)
                        continue
                    revisions = collected_revisions.get(ds_name)
                    if not revisions:
                        log.warning("no revisions found for daemonset %s", ds_name)
                        continue
                    out_of_date, reason = self.pod_out_of_date(pod, revisions)
                    if not out_of_date:
                        log.debug("[OK] %s: %s", ds_name, reason)
                        continue
                    log.debug("[OUT OF DATE] %s: %s", ds_name, reason)
                    changed_nodes[pod.node_name] = indexed_nodes[pod.node_name]
                    reasons.append(reason)

            if changed_nodes:
                result.append(
                    ListedNodeGroups(
                        node_group=node_group,
                        nodes=list(changed_nodes.values()),
                        reason="\n".join(reasons),
                    )
                )
        return result