from datetime import timedelta

import pytest

from cyclops.objects import (
    ApiError,
    CycleSettings,
    LabelSelector,
    Node,
    NodeLister,
    ObjectMeta,
)
from cyclops.validation import (
    CNR_NAME_LABEL_KEY,
    CONCURRENCY_EQUALS_ZERO_MESSAGE,
    CONCURRENCY_LESS_THAN_ZERO_MESSAGE,
    CYCLING_TIMEOUT_LESS_THAN_ZERO_MESSAGE,
    GENERATE_EXAMPLE,
    OneShotNodeLister,
    get_name,
    get_name_example,
    is_dns1035_label,
    is_dns1123_label,
    is_dns1123_subdomain,
    validate_cycle_settings,
    validate_metadata,
    validate_selector_with_nodes,
)

SUBDOMAIN_ERROR = (
    "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric characters, "
    "'-' or '.', and must start and end with an alphanumeric character (e.g. 'example.com', "
    "regex used for validation is '[a-z0-9]([-a-z0-9]*[a-z0-9])?(\\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*')"
)
LABEL_ERROR = (
    "a lowercase RFC 1123 label must consist of lower case alphanumeric characters or '-', "
    "and must start and end with an alphanumeric character (e.g. 'my-name',  or '123-abc', "
    "regex used for validation is '[a-z0-9]([-a-z0-9]*[a-z0-9])?')"
)


def build_node(name, key=None, value=None):
    labels = {key: value} if key else None
    return Node(metadata=ObjectMeta(name=name, labels=labels))


def build_nodes(count, key=None, value=None, prefix="node"):
    return [build_node(f"{prefix}-{i}", key, value) for i in range(count)]


@pytest.mark.parametrize(
    "name, generate_name, expect",
    [
        ("name", "", "name"),
        ("name", "generateName", "name"),
        ("", "generateName", "generateName"),
        ("", "", ""),
    ],
)
def test_get_name(name, generate_name, expect):
    assert get_name(ObjectMeta(name=name, generate_name=generate_name)) == expect


@pytest.mark.parametrize(
    "name, generate_name, expect_a, expect_b",
    [
        ("name", "", "name", ""),
        ("name", "generateName", "name", ""),
        ("", "generateName", "generateName", GENERATE_EXAMPLE),
        ("", "", "", GENERATE_EXAMPLE),
    ],
)
def test_get_name_example(name, generate_name, expect_a, expect_b):
    assert get_name_example(ObjectMeta(name=name, generate_name=generate_name)) == (
        expect_a,
        expect_b,
    )


@pytest.mark.parametrize(
    "settings, ok, reason",
    [
        (CycleSettings(concurrency=1), True, ""),
        (CycleSettings(concurrency=20), True, ""),
        (CycleSettings(concurrency=0), False, CONCURRENCY_EQUALS_ZERO_MESSAGE),
        (CycleSettings(concurrency=-1), False, CONCURRENCY_LESS_THAN_ZERO_MESSAGE),
        (CycleSettings(concurrency=-20), False, CONCURRENCY_LESS_THAN_ZERO_MESSAGE),
        (CycleSettings(cycling_timeout=timedelta(hours=1), concurrency=1), True, ""),
        (CycleSettings(cycling_timeout=timedelta(hours=99), concurrency=1), True, ""),
        (
            CycleSettings(cycling_timeout=timedelta(seconds=-1), concurrency=1),
            False,
            CYCLING_TIMEOUT_LESS_THAN_ZERO_MESSAGE,
        ),
        (
            CycleSettings(cycling_timeout=timedelta(hours=-99), concurrency=1),
            False,
            CYCLING_TIMEOUT_LESS_THAN_ZERO_MESSAGE,
        ),
    ],
)
def test_validate_cycle_settings(settings, ok, reason):
    assert validate_cycle_settings(settings) == (ok, reason)


@pytest.mark.parametrize(
    "meta, ok, reason",
    [
        (ObjectMeta(name="test-a", labels={CNR_NAME_LABEL_KEY: "test"}), True, ""),
        (ObjectMeta(name="test-a"), True, ""),
        (ObjectMeta(generate_name="test-a-", labels={CNR_NAME_LABEL_KEY: "test"}), True, ""),
        (ObjectMeta(generate_name="test-a-"), True, ""),
        (ObjectMeta(name="test-a-3ABC3"), False, "name is not valid: " + SUBDOMAIN_ERROR),
        (
            ObjectMeta(name="a" * 255),
            False,
            "name is not valid: must be no more than 253 characters",
        ),
        (
            ObjectMeta(name="test", labels={CNR_NAME_LABEL_KEY: "DEADBEEF-3735928559"}),
            False,
            "label value is not valid: " + LABEL_ERROR,
        ),
        (
            ObjectMeta(name="test", labels={CNR_NAME_LABEL_KEY: "a" * 64}),
            False,
            "label value is not valid: must be no more than 63 characters",
        ),
    ],
)
def test_validate_metadata(meta, ok, reason):
    assert validate_metadata(meta) == (ok, reason)


def _selector_cases():
    nodes = build_nodes(10, "select", "me")
    names = [node.name for node in nodes]
    nodes.append(build_node("other", "select", "other"))
    names.append("other")
    selector = LabelSelector.parse("select=other")
    everything = LabelSelector.everything()
    return [
        ("basic-test", build_nodes(10), everything, None, True, ""),
        ("no nodes", [], everything, None, False, "node group is scaled to 0"),
        ("matches nodes", nodes, everything, names, True, ""),
        ("select nodes", nodes, selector, None, True, ""),
        ("select nodes and match", nodes, selector, ["other"], True, ""),
        (
            "select nodes and match not exist",
            nodes,
            selector,
            ["other-missing"],
            False,
            'the node "other-missing" does not exist in the nodegroup but it is specified to cycle',
        ),
    ]


@pytest.mark.parametrize("name, nodes, selector, match, ok, reason", _selector_cases())
def test_validate_selector_with_nodes(name, nodes, selector, match, ok, reason):
    assert validate_selector_with_nodes(NodeLister(nodes), selector, match) == (ok, reason)


class FailingLister:
    def list(self, selector):
        raise ApiError("boom")


def test_validate_selector_with_nodes_list_failure():
    result = validate_selector_with_nodes(FailingLister(), LabelSelector.everything(), None)
    assert result == (False, "failed to list nodes: boom")


def test_dns1123_label_valid_and_too_long():
    assert is_dns1123_label("my-name") == []
    assert is_dns1123_label("a" * 64) == ["must be no more than 63 characters"]


def test_dns1123_subdomain_collects_both_errors():
    errors = is_dns1123_subdomain("A" * 254)
    assert errors == ["must be no more than 253 characters", SUBDOMAIN_ERROR]


def test_dns1035_label():
    assert is_dns1035_label("abc-1") == []
    errors = is_dns1035_label("1abc")
    assert len(errors) == 1
    assert "DNS-1035" in errors[0]
    assert is_dns1035_label("a" * 64) == ["must be no more than 63 characters"]


class FakeClient:
    def __init__(self, objects):
        self.objects = list(objects)
        self.calls = []

    def list(self, kind, namespace=None, selector=None):
        self.calls.append((kind, namespace, selector))
        return [
            obj
            for obj in self.objects
            if isinstance(obj, kind) and (selector is None or selector.matches(obj.metadata.labels))
        ]


def test_one_shot_node_lister_queries_client():
    nodes = build_nodes(3, "select", "me") + [build_node("other", "select", "other")]
    client = FakeClient(nodes)
    selector = LabelSelector.parse("select=me")
    listed = OneShotNodeLister(client).list(selector)
    assert [node.name for node in listed] == ["node-0", "node-1", "node-2"]
    assert client.calls == [(Node, None, selector)]