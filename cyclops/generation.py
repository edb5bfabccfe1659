"""Building, validating and submitting cycle node requests."""

from __future__ import annotations

import copy
from typing import Iterable

from cyclops.objects import CycleNodeRequest, NodeGroup, ObjectMeta
from cyclops.validation import (
    CNR_NAME_LABEL_KEY,
    CNR_REASON_ANNOTATION_KEY,
    get_name_example,
    is_dns1035_label,
    validate_cycle_settings,
    validate_metadata,
    validate_selector_with_nodes,
)

CLIENT_API_VERSION_ANNOTATION = "cyclops.atlassian.com/client-api-version"


def list_cnrs(client, namespace: str) -> list[CycleNodeRequest]:
    """List cycle node requests in a namespace, or everywhere when it is empty."""
    return list(client.list(CycleNodeRequest, namespace=namespace or None))


def apply_cnr(client, dry_mode: bool, cnr: CycleNodeRequest) -> None:
    """Create the request, as a dry run when asked."""
    client.create(cnr, dry_run=["All"] if dry_mode else [])


def validate_cnr(node_lister, cnr: CycleNodeRequest) -> tuple[bool, str]:
    """Whether the request may be applied to the cluster, and the reason if not."""
    ok, reason = validate_metadata(cnr.metadata)
    if not ok:
        return ok, reason

    ok, reason = validate_cycle_settings(cnr.cycle_settings)
    if not ok:
        return ok, reason

    # The request name is used as a label value when looking up its node statuses.
    name, suffix = get_name_example(cnr.metadata)
    errors = is_dns1035_label(name + suffix)
    if errors:
        return False, ",".join(errors)

    try:
        selector = cnr.node_label_selector()
    except ValueError as err:
        return False, f"failed to parse node label selectors: {err}"

    return validate_selector_with_nodes(node_lister, selector, cnr.node_names)


def give_reason(cnr: CycleNodeRequest, reason: str) -> None:
    """Record why the request was made."""
    if cnr.metadata.annotations is None:
        cnr.metadata.annotations = {}
    cnr.metadata.annotations[CNR_REASON_ANNOTATION_KEY] = reason


def set_api_version(cnr: CycleNodeRequest, client_version: str) -> None:
    """Record the API version of the client that made the request."""
    if cnr.metadata.annotations is None:
        cnr.metadata.annotations = {}
    cnr.metadata.annotations[CLIENT_API_VERSION_ANNOTATION] = client_version


def generate_cnr(
    node_group: NodeGroup, nodes: Iterable[str] | None, name: str, namespace: str
) -> CycleNodeRequest:
    """Build a request that cycles the given nodes of a node group."""
    final_name = f"{name}-{node_group.name}" if name else node_group.name
    labels = {CNR_NAME_LABEL_KEY: name} if name else None
    return CycleNodeRequest(
        metadata=ObjectMeta(name=final_name, namespace=namespace, labels=labels),
        node_groups_list=node_group.node_group_names(),
        selector=copy.deepcopy(node_group.node_selector),
        node_names=list(nodes or []),
        cycle_settings=copy.deepcopy(node_group.cycle_settings),
        health_checks=copy.deepcopy(node_group.health_checks),
        pre_termination_checks=copy.deepcopy(node_group.pre_termination_checks),
        skip_initial_health_checks=node_group.skip_initial_health_checks,
        skip_pre_termination_checks=node_group.skip_pre_termination_checks,
    )


def use_generate_name_cnr(cnr: CycleNodeRequest) -> None:
    """Turn the name into a generate-name prefix and clear the name."""
    cnr.metadata.generate_name = f"{cnr.metadata.name}-"
    cnr.metadata.name = ""


def list_node_groups(client) -> list[NodeGroup]:
    """List every node group in the cluster."""
    return list(client.list(NodeGroup))


def get_node_groups(client, *args: str) -> list[NodeGroup]:
    """Fetch the named node groups; the client's error propagates for a missing one."""
    return [client.get(NodeGroup, name) for name in args]


def validate_node_group(node_lister, node_group: NodeGroup) -> tuple[bool, str]:
    """Whether the node group may be considered for cycling, and the reason if not."""
    ok, reason = validate_metadata(node_group.metadata)
    if not ok:
        return ok, reason

    ok, reason = validate_cycle_settings(node_group.cycle_settings)
    if not ok:
        return ok, reason

    return validate_selector_with_nodes(node_lister, node_group.node_selector, None)