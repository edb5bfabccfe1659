"""Evicting, deleting and classifying pods."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta
from typing import Iterable

from cyclops.objects import (
    CONDITION_FALSE,
    CONDITION_READY,
    ApiError,
    NotFoundError,
    Pod,
    PodCondition,
    TooManyRequestsError,
)

EVICTION_KIND = "Eviction"
STATIC_POD_ANNOTATION = "kubernetes.io/config.source"
POD_CONDITION_TYPE_FOR_UNHEALTHY = CONDITION_READY

log = logging.getLogger(__name__)


def forcibly_delete_pod(pod_name: str, pod_namespace: str, node_name: str, client) -> None:
    """Delete a pod immediately, without a grace period or waiting for removal.

    Only for workloads that tolerate this, and only as a last resort.
    """
    log.info(
        "Forcibly deleting pod podName=%s podNamespace=%s nodeName=%s",
        pod_name, pod_namespace, node_name,
    )
    client.delete(Pod, pod_name, namespace=pod_namespace, grace_period_seconds=0)


def evict_pod(pod: Pod, api_version: str, client) -> None:
    """Ask the API to evict a single pod from its node."""
    log.info(
        "Evicting pod podName=%s podNamespace=%s nodeName=%s apiVersion=%s",
        pod.name, pod.metadata.namespace, pod.node_name, api_version,
    )
    eviction = {
        "apiVersion": api_version,
        "kind": EVICTION_KIND,
        "metadata": copy.deepcopy(pod.metadata),
        "deleteOptions": {},
    }
    client.evict(pod.metadata.namespace, eviction)


def evict_or_forcibly_delete_pod(
    pod: Pod, api_version: str, client, unhealthy_after: timedelta, now: datetime
) -> None:
    """Evict a pod; if eviction is refused and the pod is long unhealthy, delete it instead."""
    try:
        evict_pod(pod, api_version, client)
    except TooManyRequestsError:
        if pod_is_longterm_unhealthy(pod.conditions, unhealthy_after, now):
            log.info(
                "Pod is un-evictable and is unhealthy for longer than the unhealthy threshold "
                "podName=%s podNamespace=%s nodeName=%s unhealthyThreshold=%s",
                pod.name, pod.metadata.namespace, pod.node_name, unhealthy_after,
            )
            forcibly_delete_pod(pod.name, pod.metadata.namespace, pod.node_name, client)


def evict_pods(
    pods: Iterable[Pod], api_version: str, client, unhealthy_after: timedelta, now: datetime
) -> list[ApiError]:
    """Evict every pod, returning the errors met other than pods already gone."""
    errors: list[ApiError] = []
    for pod in pods:
        try:
            evict_or_forcibly_delete_pod(pod, api_version, client, unhealthy_after, now)
        except NotFoundError:
            continue
        except ApiError as err:
            errors.append(err)
    return errors


def pod_is_daemon_set(pod: Pod) -> bool:
    """Whether a daemonset owns the pod."""
    return any(owner.kind == "DaemonSet" for owner in pod.metadata.owner_references)


def pod_is_longterm_unhealthy(
    pod_status: Iterable[PodCondition], unhealthy_after: timedelta, now: datetime
) -> bool:
    """Whether the pod's conditions show it not ready for longer than unhealthy_after."""
    threshold = now - unhealthy_after
    return any(
        cond.type == POD_CONDITION_TYPE_FOR_UNHEALTHY
        and cond.status == CONDITION_FALSE
        and cond.last_transition_time < threshold
        for cond in pod_status
    )


def pod_is_static(pod: Pod) -> bool:
    """Whether the pod is a static pod defined from a file on the node."""
    annotations = pod.metadata.annotations or {}
    return annotations.get(STATIC_POD_ANNOTATION) == "file"