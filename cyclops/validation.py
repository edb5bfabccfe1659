"""Validation of node groups, cycle node requests and their names."""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Iterable

from cyclops.objects import CycleSettings, LabelSelector, Node, ObjectMeta

GENERATE_EXAMPLE = "xxxxx"
CONCURRENCY_LESS_THAN_ZERO_MESSAGE = "concurrency cannot be less than 0"
CONCURRENCY_EQUALS_ZERO_MESSAGE = "concurrency set to 0"
NODE_GROUP_SCALED_TO_ZERO_MESSAGE = "node group is scaled to 0"
CNR_NAME_LABEL_KEY = "name"
CNR_REASON_ANNOTATION_KEY = "reason"
CYCLING_TIMEOUT_LESS_THAN_ZERO_MESSAGE = "cyclingTimeout cannot be less than 0 seconds"

DNS1123_LABEL_FMT = "[a-z0-9]([-a-z0-9]*[a-z0-9])?"
DNS1123_LABEL_ERROR_MSG = (
    "a lowercase RFC 1123 label must consist of lower case alphanumeric characters or '-', "
    "and must start and end with an alphanumeric character"
)
DNS1123_LABEL_MAX_LENGTH = 63

DNS1123_SUBDOMAIN_FMT = DNS1123_LABEL_FMT + "(\\." + DNS1123_LABEL_FMT + ")*"
DNS1123_SUBDOMAIN_ERROR_MSG = (
    "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric characters, "
    "'-' or '.', and must start and end with an alphanumeric character"
)
DNS1123_SUBDOMAIN_MAX_LENGTH = 253

DNS1035_LABEL_FMT = "[a-z]([-a-z0-9]*[a-z0-9])?"
DNS1035_LABEL_ERROR_MSG = (
    "a DNS-1035 label must consist of lower case alphanumeric characters or '-', "
    "start with an alphabetic character, and end with an alphanumeric character"
)
DNS1035_LABEL_MAX_LENGTH = 63

_DNS1123_LABEL_RE = re.compile(DNS1123_LABEL_FMT)
_DNS1123_SUBDOMAIN_RE = re.compile(DNS1123_SUBDOMAIN_FMT)
_DNS1035_LABEL_RE = re.compile(DNS1035_LABEL_FMT)


def _max_len_error(length: int) -> str:
    return f"must be no more than {length} characters"


def _regex_error(message: str, pattern: str, *examples: str) -> str:
    if not examples:
        return f"{message} (regex used for validation is '{pattern}')"
    shown = " or ".join(f"'{example}', " for example in examples)
    return f"{message} (e.g. {shown}regex used for validation is '{pattern}')"


def _check(value, max_length, regex, message, pattern, *examples) -> list[str]:
    errors = []
    if len(value) > max_length:
        errors.append(_max_len_error(max_length))
    if not regex.fullmatch(value):
        errors.append(_regex_error(message, pattern, *examples))
    return errors


def is_dns1123_subdomain(value: str) -> list[str]:
    """Problems with value as an RFC 1123 subdomain; empty when valid."""
    return _check(
        value, DNS1123_SUBDOMAIN_MAX_LENGTH, _DNS1123_SUBDOMAIN_RE,
        DNS1123_SUBDOMAIN_ERROR_MSG, DNS1123_SUBDOMAIN_FMT, "example.com",
    )


def is_dns1123_label(value: str) -> list[str]:
    """Problems with value as an RFC 1123 label; empty when valid."""
    return _check(
        value, DNS1123_LABEL_MAX_LENGTH, _DNS1123_LABEL_RE,
        DNS1123_LABEL_ERROR_MSG, DNS1123_LABEL_FMT, "my-name", "123-abc",
    )


def is_dns1035_label(value: str) -> list[str]:
    """Problems with value as an RFC 1035 label; empty when valid."""
    return _check(
        value, DNS1035_LABEL_MAX_LENGTH, _DNS1035_LABEL_RE,
        DNS1035_LABEL_ERROR_MSG, DNS1035_LABEL_FMT, "my-name", "abc-123",
    )


def validate_cycle_settings(settings: CycleSettings) -> tuple[bool, str]:
    """Whether the settings allow cycling, and the reason if not."""
    if settings.concurrency < 0:
        return False, CONCURRENCY_LESS_THAN_ZERO_MESSAGE
    if settings.concurrency == 0:
        return False, CONCURRENCY_EQUALS_ZERO_MESSAGE
    if settings.cycling_timeout is not None and settings.cycling_timeout < timedelta(0):
        return False, CYCLING_TIMEOUT_LESS_THAN_ZERO_MESSAGE
    return True, ""


def validate_metadata(meta: ObjectMeta) -> tuple[bool, str]:
    """Whether the name and name label are valid; a generated name is checked with a sample suffix."""
    name = meta.name or meta.generate_name + GENERATE_EXAMPLE
    errors = is_dns1123_subdomain(name)
    if errors:
        return False, "name is not valid: " + ", ".join(errors)

    if meta.labels and CNR_NAME_LABEL_KEY in meta.labels:
        errors = is_dns1123_label(meta.labels[CNR_NAME_LABEL_KEY])
        if errors:
            return False, "label value is not valid: " + ", ".join(errors)

    return True, ""


def get_name(meta: ObjectMeta) -> str:
    """The name, or the generate name when no name is set."""
    return meta.name or meta.generate_name


def get_name_example(meta: ObjectMeta) -> tuple[str, str]:
    """The name and an empty suffix, or the generate name and a sample suffix."""
    if not meta.name:
        return meta.generate_name, GENERATE_EXAMPLE
    return meta.name, ""


def validate_selector_with_nodes(
    node_lister, selector: LabelSelector, match_nodes: Iterable[str] | None
) -> tuple[bool, str]:
    """Whether the selector finds nodes and every named node is among them."""
    try:
        nodes = node_lister.list(selector)
    except Exception as err:  # any listing failure is reported as a reason
        return False, f"failed to list nodes: {err}"

    if not nodes:
        return False, NODE_GROUP_SCALED_TO_ZERO_MESSAGE

    names = {node.name for node in nodes}
    for node_to_find in match_nodes or ():
        if node_to_find not in names:
            return False, (
                f'the node "{node_to_find}" does not exist in the nodegroup '
                "but it is specified to cycle"
            )
    return True, ""


class OneShotNodeLister:
    """Lists nodes straight from the API client rather than a cache."""

    def __init__(self, client) -> None:
        self._client = client

    def list(self, selector: LabelSelector) -> list[Node]:
        return list(self._client.list(Node, selector=selector))