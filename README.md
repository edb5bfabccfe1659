# cyclops

A library for keeping the nodes of a Kubernetes cluster up to date.

`cyclops` looks at *node groups*, notices when their nodes have drifted from
the desired configuration, and produces *cycle node requests* (CNRs) asking
for those nodes to be replaced. It also holds the pieces needed along the
way: checking requests before they are applied, cordoning and draining nodes,
evicting pods, keeping metrics, and telling a Slack channel how a cycle is
going.

## Modules

| Module | Purpose |
| --- | --- |
| `cyclops.objects` | Plain data types: `ObjectMeta`, `OwnerReference`, `Node`, `Pod`, `PodCondition`, `DaemonSet`, `ControllerRevision`, `NodeGroup`, `CycleNodeRequest`, `CycleNodeRequestStatus`, `CycleSettings`, `LabelSelector`, `Options`, `ListedNodeGroups`; an in-memory `NodeLister`; the `Observer` and `Notifier` interfaces. API failures are the exceptions `ApiError`, `NotFoundError` and `TooManyRequestsError`. |
| `cyclops.validation` | Kubernetes name rules (`is_dns1123_subdomain`, `is_dns1123_label`, `is_dns1035_label`), the checks on cycle settings, metadata and node selectors, and `OneShotNodeLister`, which lists nodes straight from a client. |
| `cyclops.generation` | Build, check, annotate and apply CNRs; list, fetch and check node groups. |
| `cyclops.kube` | JSON patches for nodes and pods (`Patch`, `encode_patches`), cordon and uncordon, labels and finalizers, `node_exists`, cached listers (`CachedLister` and the `cached_*_list` helpers), `support_eviction` and `drain_pods`. |
| `cyclops.pods` | Evicting pods, falling back to forced deletion for pods that have been unready for too long, and `pod_is_static`, `pod_is_daemon_set`, `pod_is_longterm_unhealthy`. |
| `cyclops.k8s_observer` | `K8sObserver`: finds nodes running pods of `OnDelete` daemonsets whose hash differs from the newest controller revision. |
| `cyclops.cloud_observer` | `CloudObserver`: finds nodes whose cloud instances are reported out of date by a cloud provider object you supply. |
| `cyclops.controller` | `Controller`: runs the observers, skips node groups that already have a CNR in progress, checks the cluster autoscaler through Prometheus, and creates CNRs. |
| `cyclops.observer_metrics` | `ObserverMetrics` and `LabelledMetric`: the controller's counters and gauges, rendered in the Prometheus text format. |
| `cyclops.metrics` | `CyclopsCollector`: counts CNRs and cycle node statuses by phase as `Sample` values. |
| `cyclops.slack` | `SlackClient`, `SlackNotifier`, `new_notifier` and `build_notifier`: a status message per cycle, with phase changes and node selections threaded under it. |

## The cluster client

The package does not talk to a Kubernetes API server itself. Functions that
need one take a `client` object and call these methods on it:

- `list(kind, namespace=..., selector=...)`, `get(kind, name)`
- `create(obj, dry_run=[...])`, `update(obj)`
- `patch(kind, name, data, namespace=...)` with `data` a JSON Patch document
- `delete(kind, name, namespace=..., grace_period_seconds=...)`
- `evict(namespace, eviction)`
- `server_groups()` (items with `name` and `preferred_version`) and
  `server_resources_for_group_version(version)` (items with `name` and `kind`)

Errors are expected as `ApiError` or its subclasses.

## Checking a request before applying it

```python
from cyclops.generation import generate_cnr, give_reason, validate_cnr

cnr = generate_cnr(node_group, ["node-1", "node-2"], "nightly", "kube-system")
ok, reason = validate_cnr(node_lister, cnr)
if ok:
    give_reason(cnr, "instances out of date")
else:
    print("not cycling:", reason)
```

`generate_cnr` names the request `<name>-<node group>` (with a `name` label),
or just the node group name when no name is given, and copies the selector,
cycle settings, health checks and pre-termination checks from the node group.
`validate_cnr` returns `(False, reason)` when:

- the name (or generate name plus a sample suffix) is not a valid DNS-1123
  subdomain, or the `name` label is not a valid DNS-1123 label;
- concurrency is zero or negative, or the cycling timeout is negative;
- the name is not a valid DNS-1035 label, which it must be to serve as a
  label value;
- the node selector is invalid;
- no node matches the selector ("node group is scaled to 0");
- a node named in the request is not among the matching nodes.

`validate_node_group` applies the metadata, settings and selector checks to a
node group.

## Label selectors

```python
from cyclops.objects import LabelSelector

selector = LabelSelector.parse("select=me")
selector.matches({"select": "me"})      # True
LabelSelector.everything().matches({})  # True
```

`parse` accepts `a=b`, `a==b`, `a!=b`, `a in (x,y)`, `a notin (x,y)`, `a`
and `!a`, separated by commas; an invalid key, value or operator raises
`ValueError`.

## Draining

`cyclops.kube.drain_pods(pods, client, unhealthy_after)` asks the API server
whether eviction is supported and raises `ApiError` if not. It then evicts
each pod. A pod whose eviction is refused with `TooManyRequestsError` and
which has been unready for longer than `unhealthy_after` is deleted with no
grace period instead. Pods that are already gone are not reported; other
errors are returned as a list.

## The controller

```python
from datetime import timedelta
from cyclops.controller import Controller
from cyclops.objects import Options

controller = Controller(
    client,
    Options(namespace="kube-system", check_interval=timedelta(minutes=5),
            prometheus_address="http://prometheus:9090"),
    node_lister,
    {"k8s": k8s_observer, "cloud": cloud_observer},
    metrics_addr="127.0.0.1:8080",
)
controller.run()          # one check
controller.run_forever()  # every check_interval until controller.stop()
```

Observers run fastest first, and a node group found changed by one is not
passed to the next. When `metrics_addr` is given, the controller serves its
metrics at `/metrics` on that address. Before creating requests it queries
Prometheus for the autoscaler's last scale-down activity and retries with
exponential backoff for up to two minutes while a scale-up seems to be in
progress; if Prometheus cannot be reached, it proceeds.

## Slack notifications

`cyclops.slack.build_notifier("slack")` builds a notifier from two
environment variables:

- `SLACK_BOT_USER_OAUTH_ACCESS_TOKEN` — the bot token;
- `SLACK_CHANNEL_ID` — the channel to post to.

A missing variable raises `ValueError`; a channel the app cannot see raises
`SlackApiError`. Any other provider name raises `ValueError`.

## What the package does not do

- It has no command-line program; it is used as a library.
- It has no Kubernetes API client, watcher or informer of its own: you pass
  in a client and in-memory collections of objects.
- It has no cloud provider implementation: `CloudObserver` needs one supplied.
- It creates cycle node requests but does not carry them out; nothing here
  replaces nodes.

## Running the tests

The test suite uses pytest and is installed with the `test` extra:

```
pip install .[test]
pytest
```