# linstorops

`linstorops` holds reconciliation logic for a LINSTOR storage cluster. It
works out what the cluster should look like and compares that with what the
LINSTOR controller reports. It then sends only the changes that are needed
through a client object that you provide.

## Modules

### `linstorops.nodeconnection`

This module works out the properties and network paths that each pair of
satellites should have.

- A `LinstorNodeConnection` has three parts: a list of `SelectorTerm`s, a
  `properties` mapping, and a list of `ConnectionPath`s.
- A `SelectorTerm` holds `MatchLabelSelector` expressions. Each expression
  uses one `MatchOp`: `EXISTS`, `DOES_NOT_EXIST`, `IN`, `NOT_IN`, `SAME` or
  `NOT_SAME`.
- Every expression in a term must match for the term to match. The
  connection applies if any one of its terms matches. A connection with no
  terms applies to every pair. The check is done by
  `node_connection_applies`.

The other functions:

- `desired_node_connections` takes every pair of satellites in sorted name
  order. For each pair it merges the properties and paths of every
  connection that applies, using `merge_node_connection`. It returns a
  `Connection` for each pair that ends up with any properties. The key is
  `"nodeA|nodeB"`.
- `clusters_by_satellites` groups `SatelliteInfo` entries into
  `ClusterView`s by cluster.
- `node_label_map` builds a name-to-labels mapping from `(name, labels)`
  pairs.
- `properties_modification` computes the overrides and deletions that turn
  the actual properties into the expected ones. It returns `None` when
  nothing needs to change. It records the keys it applied under
  `Aux/piraeus.io/last-applied`. Only keys recorded there are ever deleted.

`NodeConnectionReconciler.reconcile_all` uses a `client_for_cluster`
callable, which returns a client for a cluster. The client must have
`get_node_connections()` and `set_node_connection(node_a, node_b,
modification)`. For each cluster the method does two things:

- It brings the existing connections up to date.
- It creates the missing connections, but only where both satellites are
  online.

If there is no client for a cluster, it raises `ConnectionError`.

### `linstorops.satellite`

- `StoragePoolSpec` describes a storage pool. The provider kind must be one
  of `LVM`, `LVM_THIN`, `FILE`, `FILE_THIN`, `ZFS` or `ZFS_THIN`; any other
  kind raises `ValueError`. For file pools with no source pool, the backing
  directory is `/var/lib/linstor-pools/<name>`.
- `SatelliteSpec` describes a satellite. `bind_mount_paths()` lists the host
  path volumes that its file pools need.
- `network_interfaces(pod_ips, ip_families, tls)` builds `NetInterface`
  entries named `default-ipv4` and `default-ipv6`. They use port 3366
  (`Plain`), or port 3367 (`SSL`) when `tls` is set. If `ip_families` is not
  empty, only those families are kept. An address that cannot be parsed
  raises `ValueError`.
- `kustom_labels(uid, instance)` returns the labels to put on the resources
  generated for a satellite.
- `Conditions` collects status conditions through `add_success`,
  `add_error` and `add_unknown`. `to_conditions(generation)` renders them.
- `SatelliteReconciler` works with the same kind of `client_for_cluster`
  callable, and with an optional `update` callable that saves a changed
  satellite. It has three methods:
  - `reconcile_state` registers the satellite node and records the
    `Available` and `Configured` conditions. When the node is online, it
    then calls `reconcile_storage_pools`.
  - `reconcile_storage_pools` creates, modifies and removes the storage
    pools that the operator manages.
  - `delete_satellite` evacuates and deletes the node, then removes the
    `piraeus.io/satellite-protection` finalizer. It raises `RuntimeError`
    while resources remain on the node.

### `linstorops.ratelimit`

`RateLimiter` sets how long to wait before an item is retried. The wait is
the larger of two values, and it is never more than `max_wait` seconds
(30 by default):

- a per-item exponential backoff, starting at 5 ms and capped at 1000 s;
- a wait from a shared token bucket of 10 per second, with a burst of 100.

`default_rate_limiter()` returns a `RateLimiter` with these settings.

## Example

```python
from linstorops.nodeconnection import (
    MatchLabelSelector,
    MatchOp,
    SelectorTerm,
    node_connection_applies,
)

labels = {
    "n1": {"topology.kubernetes.io/zone": "1"},
    "n2": {"topology.kubernetes.io/zone": "1"},
    "n3": {"topology.kubernetes.io/zone": "2"},
}
same_zone = [
    SelectorTerm(
        match_labels=(MatchLabelSelector(key="topology.kubernetes.io/zone", op=MatchOp.SAME),)
    )
]

node_connection_applies(same_zone, "n1", "n2", labels)  # True
node_connection_applies(same_zone, "n1", "n3", labels)  # False
```

```python
from linstorops.ratelimit import default_rate_limiter

limiter = default_rate_limiter()
delay = limiter.when("node1")   # seconds to wait before the next attempt
limiter.num_requeues("node1")   # 1
limiter.forget("node1")         # reset after a success
```

## What it does not do

This package is a library with no command. It does not connect to
Kubernetes and does not watch resources. It does not render or apply the
manifests for satellite workloads. It has no built-in LINSTOR HTTP client.
Cluster access is supplied by the caller through `client_for_cluster`.

## Installation and tests

```
pip install .
pip install .[test]
pytest
```

The package needs nothing outside the standard library.