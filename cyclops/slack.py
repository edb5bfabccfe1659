"""Cycling progress notifications posted to a Slack channel."""

from __future__ import annotations

import os
import time
from typing import Any, Callable, Mapping

import requests

from cyclops.objects import PHASE_FAILED, PHASE_SUCCESSFUL, CycleNodeRequest, Notifier

PROVIDER_NAME = "slack"

TOKEN_ENV = "SLACK_BOT_USER_OAUTH_ACCESS_TOKEN"
CHANNEL_ENV = "SLACK_CHANNEL_ID"
DEFAULT_API_URL = "https://slack.com/api"
REQUEST_TIMEOUT_SECONDS = 30.0

MARKDOWN_TYPE = "mrkdwn"

BLUE_COLOR = "#3a72f4"
GREEN_COLOR = "#1dd32c"
RED_COLOR = "#e52023"

# Time for the status message to settle before replies are threaded under it.
THREAD_DELAY_SECONDS = 0.5


class SlackApiError(Exception):
    """The Slack Web API answered with an error."""


def _text(text: str) -> dict[str, str]:
    return {"type": MARKDOWN_TYPE, "text": text}


def _fields_section(*texts: str) -> dict[str, Any]:
    return {"type": "section", "fields": [_text(text) for text in texts]}


def _node_name(node: Any) -> str:
    return node if isinstance(node, str) else node.name


def new_selected_node_names(cnr: CycleNodeRequest) -> list[str]:
    """Names of current nodes not announced before; marks every current node announced."""
    status = cnr.status
    fresh = []
    for node in status.current_nodes:
        name = _node_name(node)
        if name not in status.selected_nodes:
            fresh.append(name)
        status.selected_nodes[name] = True
    return fresh


def generate_thread_message(cnr: CycleNodeRequest) -> dict[str, Any]:
    """The status attachment that heads the request's thread."""
    status = cnr.status
    if status.phase == PHASE_SUCCESSFUL:
        color = GREEN_COLOR
    elif status.phase == PHASE_FAILED:
        color = RED_COLOR
    else:
        color = BLUE_COLOR

    # Shown only once every node to terminate has been recorded on the request.
    progress = ""
    total = len(status.nodes_to_terminate)
    if total:
        percent = int(status.num_nodes_cycled / total * 100)
        progress = f"{status.num_nodes_cycled}/{total} ({percent}%)"

    groups = list(cnr.node_groups_list)
    if cnr.node_group_name:
        groups.insert(0, cnr.node_group_name)
    several = (cnr.node_group_name and cnr.node_groups_list) or len(cnr.node_groups_list) > 1
    title = "Nodegroups" if several else "Nodegroup"

    settings = cnr.cycle_settings
    return {
        "color": color,
        "blocks": [
            _fields_section(
                f"*Name:*\n{cnr.name}",
                f"*Progress:*\n{progress}",
                f"*Cluster:*\n{cnr.metadata.cluster_name}",
                f"*Method:*\n{settings.method}",
                f"*{title}:*\n" + "\n".join(groups),
                f"*Concurrency:*\n{settings.concurrency}",
            )
        ],
    }


class SlackClient:
    """A small client for the Slack Web API methods the notifier uses."""

    def __init__(self, token: str, session=None, base_url: str = DEFAULT_API_URL) -> None:
        self._token = token
        self._session = session if session is not None else requests.Session()
        self._base_url = base_url.rstrip("/")

    def _check(self, response) -> dict[str, Any]:
        data = response.json()
        if not data.get("ok"):
            raise SlackApiError(data.get("error", "unknown error"))
        return data

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _post(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._session.post(
            f"{self._base_url}/{method}",
            json=payload,
            headers=self._headers(),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        return self._check(response)

    def post_message(self, channel_id: str, **kwargs) -> str:
        """Post a message; returns its timestamp."""
        return self._post("chat.postMessage", {"channel": channel_id, **kwargs}).get("ts", "")

    def update_message(self, channel_id: str, timestamp: str, **kwargs) -> str:
        """Replace the message at timestamp; returns its timestamp."""
        payload = {"channel": channel_id, "ts": timestamp, **kwargs}
        return self._post("chat.update", payload).get("ts", "")

    def get_conversation_info(self, channel_id: str) -> dict[str, Any]:
        """Information about a channel the app can see."""
        response = self._session.get(
            f"{self._base_url}/conversations.info",
            params={"channel": channel_id, "include_locale": "false"},
            headers=self._headers(),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        return self._check(response).get("channel", {})


class SlackNotifier:
    """Posts a status message per request and threads phase and node updates under it."""

    def __init__(self, client, channel_id: str, thread_delay: float = THREAD_DELAY_SECONDS) -> None:
        self.client = client
        self.channel_id = channel_id
        self.thread_delay = thread_delay

    @staticmethod
    def _thread_timestamp(cnr: CycleNodeRequest) -> str:
        if not cnr.status.thread_timestamp:
            raise ValueError("threadTimestamp not set in CycleNodeRequest")
        return cnr.status.thread_timestamp

    def _update_status(self, cnr: CycleNodeRequest, attachment: dict[str, Any]) -> None:
        self.client.update_message(
            self.channel_id, cnr.status.thread_timestamp, attachments=[attachment]
        )

    def cycling_started(self, cnr: CycleNodeRequest) -> None:
        """Post the status message and remember its timestamp on the request."""
        timestamp = self.client.post_message(
            self.channel_id, attachments=[generate_thread_message(cnr)]
        )
        time.sleep(self.thread_delay)
        cnr.status.thread_timestamp = timestamp

    def phase_transitioned(self, cnr: CycleNodeRequest) -> None:
        """Update the status on success or failure and post the new phase in the thread."""
        thread = self._thread_timestamp(cnr)
        if cnr.status.phase == PHASE_SUCCESSFUL:
            self._update_status(cnr, generate_thread_message(cnr))
        if cnr.status.phase == PHASE_FAILED:
            message = generate_thread_message(cnr)
            if cnr.status.message:
                message["blocks"].append(
                    {"type": "section", "text": _text(f"```{cnr.status.message}```")}
                )
            self._update_status(cnr, message)
        self.client.post_message(
            self.channel_id,
            thread_ts=thread,
            blocks=[_fields_section(f"Entered the *{cnr.status.phase}* phase")],
        )

    def nodes_selected(self, cnr: CycleNodeRequest) -> None:
        """Post newly selected nodes in the thread and refresh the status message."""
        thread = self._thread_timestamp(cnr)
        selected = new_selected_node_names(cnr)
        if not selected:
            raise ValueError("no new nodes selected")
        self.client.post_message(
            self.channel_id,
            thread_ts=thread,
            blocks=[
                _fields_section(
                    "Nodes selected for cycling", "```" + "\n".join(selected) + "```"
                )
            ],
        )
        self._update_status(cnr, generate_thread_message(cnr))


def new_notifier(environ: Mapping[str, str] | None = None) -> SlackNotifier:
    """A notifier configured from the environment; checks the app can see the channel."""
    environ = os.environ if environ is None else environ
    if TOKEN_ENV not in environ:
        raise ValueError("missing slack oauth token")
    if CHANNEL_ENV not in environ:
        raise ValueError("missing slack channel id")
    channel_id = environ[CHANNEL_ENV]
    client = SlackClient(environ[TOKEN_ENV])
    client.get_conversation_info(channel_id)
    return SlackNotifier(client, channel_id)


def build_notifier(name: str) -> Notifier:
    """The notifier registered under this provider name."""
    builders: dict[str, Callable[[], Notifier]] = {PROVIDER_NAME: new_notifier}
    try:
        builder = builders[name]
    except KeyError:
        raise ValueError(f"builder for notifier {name} not found") from None
    return builder()