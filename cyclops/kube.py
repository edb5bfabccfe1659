"""Node patching, cached listers and drain support against the cluster API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from cyclops.objects import (
    ApiError,
    ControllerRevision,
    DaemonSet,
    LabelSelector,
    Node,
    NotFoundError,
    Pod,
)
from cyclops.pods import EVICTION_KIND, evict_pods

EVICTION_SUBRESOURCE = "pods/eviction"
POLICY_GROUP = "policy"

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


@dataclass
class Patch:
    """One JSON Patch operation."""

    op: str
    path: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "path": self.path, "value": self.value}


def encode_patches(patches: Iterable[Patch]) -> bytes:
    """Encode patch operations as a compact JSON document, HTML characters escaped."""
    text = json.dumps(
        [patch.to_dict() for patch in patches], separators=(",", ":"), ensure_ascii=False
    )
    for char, escaped in _JSON_ESCAPES.items():
        text = text.replace(char, escaped)
    return text.encode("utf-8")


def patch_pod(name: str, namespace: str, patches: Iterable[Patch], client) -> None:
    """Apply a JSON patch to a pod."""
    client.patch(Pod, name, encode_patches(patches), namespace=namespace)


def patch_node(name: str, patches: Iterable[Patch], client) -> None:
    """Apply a JSON patch to a node."""
    client.patch(Node, name, encode_patches(patches))


def cordon_node(name: str, client) -> None:
    """Mark a node unschedulable."""
    patch_node(name, [Patch("add", "/spec/unschedulable", True)], client)


def uncordon_node(name: str, client) -> None:
    """Mark a node schedulable."""
    patch_node(name, [Patch("add", "/spec/unschedulable", False)], client)


def is_cordoned(name: str, client) -> bool:
    """Whether the node is marked unschedulable."""
    return client.get(Node, name).unschedulable


def add_label_to_node(node_name: str, label_name: str, label_value: str, client) -> None:
    """Add or replace a label on a node."""
    # JSON Pointer writes "/" inside a key as "~1".
    path = "/metadata/labels/" + label_name.replace("/", "~1")
    patch_node(node_name, [Patch("add", path, label_value)], client)


def add_finalizer_to_node(node: Node, finalizer_name: str, client) -> None:
    """Add a finalizer to the node and store it."""
    if finalizer_name not in node.metadata.finalizers:
        node.metadata.finalizers.append(finalizer_name)
    client.update(node)


def remove_finalizer_from_node(node: Node, finalizer_name: str, client) -> None:
    """Remove a finalizer from the node and store it."""
    node.metadata.finalizers = [f for f in node.metadata.finalizers if f != finalizer_name]
    client.update(node)


def node_exists(name: str, client) -> bool:
    """Whether the node exists; other API errors propagate."""
    try:
        client.get(Node, name)
    except NotFoundError:
        return False
    return True


def _cache_items(cache) -> Iterable[Any]:
    if isinstance(cache, Mapping):
        return cache.values()
    return cache


class CachedLister:
    """Lists objects of one kind from in-memory caches by label selector."""

    def __init__(self, kind: type, *caches) -> None:
        self._kind = kind
        self._caches = caches

    def list(self, selector: LabelSelector) -> list:
        return [
            obj
            for cache in self._caches
            for obj in _cache_items(cache)
            if isinstance(obj, self._kind) and selector.matches(obj.metadata.labels)
        ]


def cached_node_list(cache) -> CachedLister:
    """A node lister over one cache."""
    return CachedLister(Node, cache)


def cached_daemon_set_list(*args) -> CachedLister:
    """A daemonset lister over several caches."""
    return CachedLister(DaemonSet, *args)


def cached_controller_revision_list(*args) -> CachedLister:
    """A controller revision lister over several caches."""
    return CachedLister(ControllerRevision, *args)


def cached_pod_list(*args) -> CachedLister:
    """A pod lister over several caches."""
    return CachedLister(Pod, *args)


def support_eviction(client) -> str:
    """The policy group version if the API server supports eviction, else ""."""
    policy = next((g for g in client.server_groups() if g.name == POLICY_GROUP), None)
    if policy is None:
        return ""
    for resource in client.server_resources_for_group_version("v1"):
        if resource.name == EVICTION_SUBRESOURCE and resource.kind == EVICTION_KIND:
            return policy.preferred_version
    return ""


def drain_pods(pods: Iterable[Pod], client, unhealthy_after: timedelta) -> list[ApiError]:
    """Evict pods so the node can be terminated, returning the eviction errors.

    Pods unhealthy for longer than unhealthy_after are forcibly removed if eviction
    is refused. Raises ApiError if the server does not support eviction.
    """
    api_version = support_eviction(client)
    if not api_version:
        raise ApiError("apiVersion does not support pod eviction API")
    return evict_pods(pods, api_version, client, unhealthy_after, datetime.now(timezone.utc))