import pytest

from cyclops.k8s_observer import (
    CONTROLLER_REVISION_LABEL,
    K8sObserver,
    collect_pods,
    collect_revisions,
    max_revision,
)
from cyclops.kube import cached_controller_revision_list, cached_daemon_set_list, cached_pod_list
from cyclops.objects import (
    ON_DELETE_STRATEGY,
    POD_RUNNING,
    ROLLING_UPDATE_STRATEGY,
    ControllerRevision,
    CycleSettings,
    DaemonSet,
    LabelSelector,
    ListedNodeGroups,
    Node,
    NodeGroup,
    NodeLister,
    ObjectMeta,
    OwnerReference,
    Pod,
)


def build_scenario(up_to_date, node_count, pod_count):
    scenario = {"nodegroups": {}, "nodes": {}, "pods": {}, "daemonsets": {}, "revisions": {}}
    for key, current in up_to_date.items():
        app = {"app": f"ds-{key}"}
        scenario["nodegroups"][key] = NodeGroup(
            metadata=ObjectMeta(name=f"nodegroup-{key}"),
            node_group_name=f"nodegroup-{key}",
            node_selector=LabelSelector({"nodegroup": key}),
            cycle_settings=CycleSettings(concurrency=1),
        )
        nodes = [
            Node(metadata=ObjectMeta(name=f"node-{key}-{i}", labels={"nodegroup": key}))
            for i in range(node_count)
        ]
        scenario["nodes"][key] = nodes
        scenario["daemonsets"][key] = DaemonSet(
            metadata=ObjectMeta(name=f"ds-{key}", namespace="kube-system"),
            selector=LabelSelector(dict(app)),
            update_strategy=ON_DELETE_STRATEGY,
        )
        scenario["revisions"][key] = [
            ControllerRevision(
                metadata=ObjectMeta(
                    name=f"cr-old-{key}", labels={**app, CONTROLLER_REVISION_LABEL: "oldhash"}
                ),
                revision=1,
            ),
            ControllerRevision(
                metadata=ObjectMeta(
                    name=f"cr-latest-{key}",
                    labels={**app, CONTROLLER_REVISION_LABEL: "latesthash"},
                ),
                revision=2,
            ),
        ]
        pod_hash = "latesthash" if current else "oldhash"
        scenario["pods"][key] = [
            Pod(
                metadata=ObjectMeta(
                    name=f"pod-{key}-{i}",
                    namespace="kube-system",
                    labels={**app, CONTROLLER_REVISION_LABEL: pod_hash},
                    owner_references=[OwnerReference("DaemonSet", f"ds-{key}", "apps/v1")],
                ),
                node_name=nodes[i].name,
                phase=POD_RUNNING,
            )
            for i in range(pod_count)
        ]
    return scenario


def flatten(scenario, *keys):
    keys = keys or tuple(scenario["nodegroups"])
    return {
        "nodegroups": [scenario["nodegroups"][k] for k in keys],
        "nodes": [n for k in keys for n in scenario["nodes"][k]],
        "pods": [p for k in keys for p in scenario["pods"][k]],
        "daemonsets": [scenario["daemonsets"][k] for k in keys],
        "revisions": [r for k in keys for r in scenario["revisions"][k]],
    }


def make_observer(flat):
    return K8sObserver(
        NodeLister(flat["nodes"]),
        cached_pod_list(flat["pods"]),
        cached_daemon_set_list({d.name: d for d in flat["daemonsets"]}),
        cached_controller_revision_list(flat["revisions"]),
    )


REASON_A = (
    'pod "pod-a-0" hash "oldhash" is not up to date with latest daemonset controller '
    'revision "cr-latest-a" hash "latesthash" rev 2'
)


def test_up_to_date_one():
    scenario = build_scenario({"a": True, "b": True}, 2, 1)
    flat = flatten(scenario, "a")
    assert make_observer(flat).changed(flat["nodegroups"]) == []


def test_up_to_date_all():
    scenario = build_scenario({"a": True, "b": True}, 2, 1)
    flat = flatten(scenario)
    assert make_observer(flat).changed(flat["nodegroups"]) == []


def test_one_node_group_out_of_date():
    scenario = build_scenario({"a": False, "b": True}, 2, 1)
    flat = flatten(scenario, "a")
    expected = [
        ListedNodeGroups(
            node_group=scenario["nodegroups"]["a"],
            nodes=scenario["nodes"]["a"][:1],
            reason=REASON_A,
        )
    ]
    assert make_observer(flat).changed(flat["nodegroups"]) == expected


def test_two_node_groups_only_a_out_of_date():
    scenario = build_scenario({"a": False, "b": True}, 2, 1)
    flat = flatten(scenario, "a", "b")
    expected = [
        ListedNodeGroups(
            node_group=scenario["nodegroups"]["a"],
            nodes=scenario["nodes"]["a"][:1],
            reason=REASON_A,
        )
    ]
    assert make_observer(flat).changed(flat["nodegroups"]) == expected


def test_many_node_groups_all_out_of_date():
    scenario = build_scenario({"a": False, "b": False, "c": False, "d": False}, 2, 2)
    flat = flatten(scenario, "a", "b", "c", "d")
    listed = make_observer(flat).changed(flat["nodegroups"])
    assert len(listed) == 4
    for entry in listed:
        assert len(entry.nodes) == 2
        assert len(entry.reason.split("\n")) == 2


def test_empty_node_groups():
    scenario = build_scenario({"a": False}, 1, 1)
    assert make_observer(flatten(scenario)).changed([]) == []


def test_pods_not_running_are_ignored():
    scenario = build_scenario({"a": False}, 1, 1)
    flat = flatten(scenario)
    flat["pods"][0].phase = "Pending"
    assert make_observer(flat).changed(flat["nodegroups"]) == []


def test_rolling_update_daemonsets_are_ignored():
    scenario = build_scenario({"a": False}, 1, 1)
    flat = flatten(scenario)
    flat["daemonsets"][0].update_strategy = ROLLING_UPDATE_STRATEGY
    assert make_observer(flat).changed(flat["nodegroups"]) == []


class FailingLister:
    def list(self, selector):
        raise RuntimeError("boom")


def test_daemonset_lister_failure_returns_nothing():
    flat = flatten(build_scenario({"a": False}, 1, 1))
    observer = K8sObserver(
        NodeLister(flat["nodes"]),
        cached_pod_list(flat["pods"]),
        FailingLister(),
        cached_controller_revision_list(flat["revisions"]),
    )
    assert observer.changed(flat["nodegroups"]) == []


def test_node_lister_failure_skips_group():
    flat = flatten(build_scenario({"a": False}, 1, 1))
    observer = K8sObserver(
        FailingLister(),
        cached_pod_list(flat["pods"]),
        cached_daemon_set_list(flat["daemonsets"]),
        cached_controller_revision_list(flat["revisions"]),
    )
    assert observer.changed(flat["nodegroups"]) == []


def test_max_revision_picks_highest():
    revisions = [
        ControllerRevision(metadata=ObjectMeta(name="one"), revision=1),
        ControllerRevision(metadata=ObjectMeta(name="three"), revision=3),
        ControllerRevision(metadata=ObjectMeta(name="two"), revision=2),
    ]
    assert max_revision(revisions).name == "three"


def test_max_revision_without_positive_returns_first():
    revisions = [
        ControllerRevision(metadata=ObjectMeta(name="first"), revision=0),
        ControllerRevision(metadata=ObjectMeta(name="second"), revision=0),
    ]
    assert max_revision(revisions).name == "first"


def test_max_revision_empty_raises():
    with pytest.raises(ValueError):
        max_revision([])


def test_pod_out_of_date_without_label():
    observer = make_observer(flatten(build_scenario({"a": True}, 1, 1)))
    pod = Pod(metadata=ObjectMeta(name="bare"))
    revisions = build_scenario({"a": True}, 1, 1)["revisions"]["a"]
    out_of_date, reason = observer.pod_out_of_date(pod, revisions)
    assert out_of_date is False
    assert reason == f'no controller revision label "{CONTROLLER_REVISION_LABEL}" for pod "bare"'


def test_pod_out_of_date_up_to_date_message():
    scenario = build_scenario({"a": True}, 1, 1)
    observer = make_observer(flatten(scenario))
    out_of_date, reason = observer.pod_out_of_date(
        scenario["pods"]["a"][0], scenario["revisions"]["a"]
    )
    assert out_of_date is False
    assert "is up to date" in reason
    assert '"cr-latest-a" rev 2' in reason


def test_pod_out_of_date_revision_without_label():
    scenario = build_scenario({"a": False}, 1, 1)
    observer = make_observer(flatten(scenario))
    revision = ControllerRevision(metadata=ObjectMeta(name="plain"), revision=5)
    out_of_date, reason = observer.pod_out_of_date(scenario["pods"]["a"][0], [revision])
    assert out_of_date is False
    assert reason.endswith('for controller revision "plain"')


def test_collect_pods_groups_by_owner():
    scenario = build_scenario({"a": False, "b": False}, 1, 1)
    flat = flatten(scenario)
    orphan = Pod(metadata=ObjectMeta(name="orphan"), node_name="node-a-0")
    foreign = Pod(
        metadata=ObjectMeta(name="foreign", owner_references=[OwnerReference("DaemonSet", "other")])
    )
    collected = collect_pods(
        flat["pods"] + [orphan, foreign], {"ds-a": scenario["daemonsets"]["a"]}
    )
    assert collected == {"ds-a": scenario["pods"]["a"]}


def test_collect_revisions_by_selector():
    scenario = build_scenario({"a": False, "b": False}, 1, 1)
    flat = flatten(scenario)
    lister = cached_controller_revision_list(flat["revisions"])
    collected = collect_revisions(
        lister, {"ds-a": scenario["daemonsets"]["a"], "ds-b": scenario["daemonsets"]["b"]}
    )
    assert collected == {"ds-a": scenario["revisions"]["a"], "ds-b": scenario["revisions"]["b"]}


def test_collect_revisions_skips_bad_selector_and_failures():
    scenario = build_scenario({"a": False}, 1, 1)
    daemonset = scenario["daemonsets"]["a"]
    daemonset.selector.match_labels["bad key!"] = "x"
    lister = cached_controller_revision_list(scenario["revisions"]["a"])
    assert collect_revisions(lister, {"ds-a": daemonset}) == {}
    good = build_scenario({"b": False}, 1, 1)["daemonsets"]["b"]
    assert collect_revisions(FailingLister(), {"ds-b": good}) == {}