"""Desired node connections between LINSTOR satellites and their reconciliation."""

from __future__ import annotations

import enum
import itertools
import json
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Protocol, Sequence

PATHS_NAMESPACE = "Paths"
LAST_APPLIED_PROPERTY = "Aux/piraeus.io/last-applied"

LabelMap = Mapping[str, Mapping[str, str]]


class MatchOp(str, enum.Enum):
    """Operators a label selector expression can use."""

    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"
    IN = "In"
    NOT_IN = "NotIn"
    SAME = "Same"
    NOT_SAME = "NotSame"


@dataclass(frozen=True)
class MatchLabelSelector:
    """A single expression comparing one label on both nodes of a pair."""

    key: str
    op: MatchOp
    values: tuple[str, ...] = ()

    def matches(self, labels_a: Mapping[str, str], labels_b: Mapping[str, str]) -> bool:
        key = self.key
        if self.op is MatchOp.EXISTS:
            return key in labels_a and key in labels_b
        if self.op is MatchOp.DOES_NOT_EXIST:
            return key not in labels_a and key not in labels_b
        val_a = labels_a.get(key, "")
        val_b = labels_b.get(key, "")
        if self.op is MatchOp.IN:
            return val_a in self.values and val_b in self.values
        if self.op is MatchOp.NOT_IN:
            return val_a not in self.values and val_b not in self.values
        if self.op is MatchOp.SAME:
            return val_a == val_b
        if self.op is MatchOp.NOT_SAME:
            return val_a != val_b
        return False


@dataclass(frozen=True)
class SelectorTerm:
    """Expressions that must all hold for a node pair to be selected."""

    match_labels: tuple[MatchLabelSelector, ...] = ()

    def evaluate(self, node_a: str, node_b: str, labels: LabelMap) -> bool:
        labels_a = labels.get(node_a, {})
        labels_b = labels.get(node_b, {})
        return all(expr.matches(labels_a, labels_b) for expr in self.match_labels)


@dataclass(frozen=True)
class ConnectionPath:
    """A named network path using the given interface on both nodes."""

    name: str
    interface: str


@dataclass
class LinstorNodeConnection:
    """Configuration to apply to connections between selected node pairs."""

    name: str
    selector: Sequence[SelectorTerm] = ()
    properties: Mapping[str, str] = field(default_factory=dict)
    paths: Sequence[ConnectionPath] = ()


@dataclass
class SatelliteInfo:
    """What is known about a satellite resource for connection planning."""

    name: str
    cluster_ref: str = ""
    generation: int = 0
    available: bool = False
    observed_generation: int = 0

    @property
    def online(self) -> bool:
        return self.available and self.observed_generation == self.generation


@dataclass
class ClusterView:
    """Satellites of one cluster, mapped to whether they are online."""

    cluster_ref: str
    satellites: dict[str, bool] = field(default_factory=dict)


@dataclass
class Connection:
    """A node connection as known to the LINSTOR controller."""

    node_a: str
    node_b: str
    props: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.node_a}|{self.node_b}"


def node_label_map(*nodes: tuple[str, Mapping[str, str]]) -> dict[str, Mapping[str, str]]:
    """Map node names to their labels, given (name, labels) pairs."""
    return {name: labels for name, labels in nodes}


def clusters_by_satellites(satellites: Iterable[SatelliteInfo]) -> dict[str, ClusterView]:
    """Group satellites by the cluster they belong to."""
    result: dict[str, ClusterView] = {}
    for sat in satellites:
        view = result.setdefault(sat.cluster_ref, ClusterView(cluster_ref=sat.cluster_ref))
        view.satellites[sat.name] = sat.online
    return result


def node_connection_applies(
    selectors: Sequence[SelectorTerm], node_a: str, node_b: str, node_label_map: LabelMap
) -> bool:
    """True if any selector term matches the pair; no selectors match everything."""
    if not selectors:
        return True
    return any(term.evaluate(node_a, node_b, node_label_map) for term in selectors)


def merge_node_connection(
    props: Optional[dict[str, str]], conn: LinstorNodeConnection, node_a: str, node_b: str
) -> dict[str, str]:
    """Merge the properties and paths of a connection resource into props."""
    if props is None:
        props = {}
    props.update(conn.properties)
    for path in conn.paths:
        props[f"{PATHS_NAMESPACE}/{path.name}/{node_a}"] = path.interface
        props[f"{PATHS_NAMESPACE}/{path.name}/{node_b}"] = path.interface
    return props


def desired_node_connections(
    conns: Sequence[LinstorNodeConnection],
    satellites: Mapping[str, bool],
    node_label_map: LabelMap,
) -> dict[str, Connection]:
    """Compute the connection properties wanted for every pair of satellites."""
    if len(satellites) < 2:
        return {}

    result: dict[str, Connection] = {}
    for node_a, node_b in itertools.combinations(sorted(satellites), 2):
        props: dict[str, str] = {}
        for conn in conns:
            if node_connection_applies(conn.selector, node_a, node_b, node_label_map):
                merge_node_connection(props, conn, node_a, node_b)
        if props:
            c = Connection(node_a=node_a, node_b=node_b, props=props)
            result[c.key] = c
    return result


def _applied_keys(props: Mapping[str, str]) -> list[str]:
    raw = props.get(LAST_APPLIED_PROPERTY)
    if not raw:
        return []
    try:
        keys = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(keys, list):
        return []
    return [k for k in keys if isinstance(k, str)]


def _with_last_applied(props: Mapping[str, str]) -> dict[str, str]:
    result = dict(props)
    keys = sorted(k for k in props if k != LAST_APPLIED_PROPERTY)
    result[LAST_APPLIED_PROPERTY] = json.dumps(keys)
    return result


def properties_modification(
    actual: Optional[Mapping[str, str]], expected: Optional[Mapping[str, str]]
) -> Optional[dict]:
    """Changes that bring actual properties to the expected ones, or None.

    Only properties recorded as previously applied are ever deleted.
    """
    actual = dict(actual or {})
    expected = dict(expected or {})
    previous = _applied_keys(actual)

    if not expected and not previous and LAST_APPLIED_PROPERTY not in actual:
        return None

    deletions = sorted(k for k in previous if k not in expected and k in actual)
    target = _with_last_applied(expected)
    overrides = {k: v for k, v in target.items() if actual.get(k) != v}
    if not overrides and not deletions:
        return None
    return {"override_props": overrides, "delete_props": deletions}


class _ConnectionsApi(Protocol):
    def get_node_connections(self) -> list[Connection]: ...

    def set_node_connection(self, node_a: str, node_b: str, modification: dict) -> None: ...


class NodeConnectionReconciler:
    """Applies the desired node connections to every LINSTOR cluster."""

    def __init__(self, client_for_cluster: Callable[[str], Optional[_ConnectionsApi]]):
        self.client_for_cluster = client_for_cluster

    def reconcile_all(
        self,
        conns: Sequence[LinstorNodeConnection],
        satellites: Iterable[SatelliteInfo],
        nodes: Iterable[tuple[str, Mapping[str, str]]],
    ) -> None:
        ordered = sorted(satellites, key=lambda s: s.name)
        labels = node_label_map(*nodes)

        for view in clusters_by_satellites(ordered).values():
            desired = desired_node_connections(conns, view.satellites, labels)

            client = self.client_for_cluster(view.cluster_ref)
            if client is None:
                raise ConnectionError("controller unreachable")

            for current in client.get_node_connections():
                wanted = desired.pop(current.key, None)
                mod = properties_modification(current.props, wanted.props if wanted else {})
                if mod is not None:
                    client.set_node_connection(current.node_a, current.node_b, mod)

            for wanted in desired.values():
                if not view.satellites.get(wanted.node_a) or not view.satellites.get(wanted.node_b):
                    continue
                client.set_node_connection(
                    wanted.node_a,
                    wanted.node_b,
                    {"override_props": _with_last_applied(wanted.props), "delete_props": []},
                )