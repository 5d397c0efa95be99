import json

import pytest

from linstorops.nodeconnection import (
    LAST_APPLIED_PROPERTY,
    ClusterView,
    Connection,
    ConnectionPath,
    LinstorNodeConnection,
    MatchLabelSelector,
    MatchOp,
    NodeConnectionReconciler,
    SatelliteInfo,
    SelectorTerm,
    clusters_by_satellites,
    desired_node_connections,
    merge_node_connection,
    node_connection_applies,
    node_label_map,
    properties_modification,
)

LABELS = {
    "z1n1": {
        "topology.kubernetes.io/zone": "1",
        "topology.kubernetes.io/rack": "1",
        "kubernetes.io/hostname": "z1n1",
        "extra": "1",
    },
    "z1n2": {
        "topology.kubernetes.io/zone": "1",
        "topology.kubernetes.io/rack": "2",
        "kubernetes.io/hostname": "z1n2",
    },
    "z2n1": {
        "topology.kubernetes.io/zone": "2",
        "topology.kubernetes.io/rack": "1",
        "kubernetes.io/hostname": "z2n1",
    },
    "z2n2": {
        "topology.kubernetes.io/zone": "2",
        "topology.kubernetes.io/rack": "2",
        "kubernetes.io/hostname": "z2n2",
        "extra": "2",
    },
}

PAIRS = ["z1n1:z1n2", "z1n1:z2n1", "z1n1:z2n2", "z1n2:z2n1", "z1n2:z2n2", "z2n1:z2n2"]


def _term(*exprs):
    return SelectorTerm(match_labels=tuple(exprs))


ZONE = "topology.kubernetes.io/zone"

CASES = [
    ("empty-selector-allow-all", [], [True, True, True, True, True, True]),
    (
        "exists-works",
        [_term(MatchLabelSelector("extra", MatchOp.EXISTS))],
        [False, False, True, False, False, False],
    ),
    (
        "does-not-exists-works",
        [_term(MatchLabelSelector("extra", MatchOp.DOES_NOT_EXIST))],
        [False, False, False, True, False, False],
    ),
    (
        "selector-terms-are-joined-by-or",
        [
            _term(MatchLabelSelector("extra", MatchOp.EXISTS)),
            _term(MatchLabelSelector("extra", MatchOp.DOES_NOT_EXIST)),
        ],
        [False, False, True, True, False, False],
    ),
    (
        "in-operator-works",
        [_term(MatchLabelSelector(ZONE, MatchOp.IN, ("5", "1")))],
        [True, False, False, False, False, False],
    ),
    (
        "not-in-operator-works",
        [_term(MatchLabelSelector(ZONE, MatchOp.NOT_IN, ("5", "1")))],
        [False, False, False, False, False, True],
    ),
    (
        "same-operator-works",
        [_term(MatchLabelSelector(ZONE, MatchOp.SAME))],
        [True, False, False, False, False, True],
    ),
    (
        "not-same-operator-works",
        [_term(MatchLabelSelector(ZONE, MatchOp.NOT_SAME))],
        [False, True, True, True, True, False],
    ),
]


@pytest.mark.parametrize("name,selectors,expected", CASES, ids=[c[0] for c in CASES])
def test_node_connection_applies(name, selectors, expected):
    actual = {
        pair: node_connection_applies(selectors, *pair.split(":"), LABELS) for pair in PAIRS
    }
    assert actual == dict(zip(PAIRS, expected))


def test_node_label_map():
    result = node_label_map(("a", {"x": "1"}), ("b", {}))
    assert result == {"a": {"x": "1"}, "b": {}}


def test_clusters_by_satellites_groups_and_online():
    sats = [
        SatelliteInfo("n1", "c1", generation=2, available=True, observed_generation=2),
        SatelliteInfo("n2", "c1", generation=3, available=True, observed_generation=2),
        SatelliteInfo("n3", "c2", generation=1, available=False, observed_generation=1),
    ]
    result = clusters_by_satellites(sats)
    assert result == {
        "c1": ClusterView("c1", {"n1": True, "n2": False}),
        "c2": ClusterView("c2", {"n3": False}),
    }


def test_merge_node_connection_adds_paths():
    conn = LinstorNodeConnection(
        "c", properties={"a": "1"}, paths=[ConnectionPath("p1", "eth1")]
    )
    props = merge_node_connection({"b": "2"}, conn, "n1", "n2")
    assert props == {"b": "2", "a": "1", "Paths/p1/n1": "eth1", "Paths/p1/n2": "eth1"}


def test_merge_node_connection_none_props():
    conn = LinstorNodeConnection("c", properties={"a": "1"})
    assert merge_node_connection(None, conn, "n1", "n2") == {"a": "1"}


def test_desired_needs_two_satellites():
    conn = LinstorNodeConnection("c", properties={"a": "1"})
    assert desired_node_connections([conn], {"n1": True}, {}) == {}


def test_desired_all_pairs_sorted():
    conn = LinstorNodeConnection("c", properties={"a": "1"})
    result = desired_node_connections([conn], {"c": True, "a": True, "b": False}, {})
    assert set(result) == {"a|b", "a|c", "b|c"}
    assert result["a|c"] == Connection("a", "c", {"a": "1"})


def test_desired_skips_pairs_without_props():
    conn = LinstorNodeConnection(
        "c",
        selector=[_term(MatchLabelSelector("extra", MatchOp.EXISTS))],
        properties={"k": "v"},
    )
    result = desired_node_connections([conn], {n: True for n in LABELS}, LABELS)
    assert list(result) == ["z1n1|z2n2"]


def test_properties_modification_none_when_nothing_to_do():
    assert properties_modification({"x": "1"}, {}) is None
    assert properties_modification({}, None) is None


def test_properties_modification_round_trip():
    mod = properties_modification({}, {"a": "1"})
    assert mod["override_props"]["a"] == "1"
    applied = dict(mod["override_props"])
    assert properties_modification(applied, {"a": "1"}) is None


def test_properties_modification_deletes_only_applied_keys():
    mod = properties_modification({}, {"a": "1", "b": "2"})
    actual = dict(mod["override_props"], foreign="x")
    change = properties_modification(actual, {"a": "1"})
    assert change["delete_props"] == ["b"]
    assert json.loads(change["override_props"][LAST_APPLIED_PROPERTY]) == ["a"]


class FakeClient:
    def __init__(self, existing=()):
        self.existing = list(existing)
        self.calls = []

    def get_node_connections(self):
        return self.existing

    def set_node_connection(self, node_a, node_b, modification):
        self.calls.append((node_a, node_b, modification))


def _online(name, cluster="c"):
    return SatelliteInfo(name, cluster, generation=1, available=True, observed_generation=1)


def test_reconcile_all_creates_connection():
    client = FakeClient()
    conn = LinstorNodeConnection("c", properties={"DrbdOptions/Net/protocol": "C"})
    NodeConnectionReconciler(lambda ref: client).reconcile_all(
        [conn], [_online("s2"), _online("s1")], [("s1", {}), ("s2", {})]
    )
    assert len(client.calls) == 1
    node_a, node_b, mod = client.calls[0]
    assert (node_a, node_b) == ("s1", "s2")
    assert mod["override_props"]["DrbdOptions/Net/protocol"] == "C"
    assert json.loads(mod["override_props"][LAST_APPLIED_PROPERTY]) == [
        "DrbdOptions/Net/protocol"
    ]


def test_reconcile_all_skips_offline():
    client = FakeClient()
    conn = LinstorNodeConnection("c", properties={"k": "v"})
    offline = SatelliteInfo("s2", "c", generation=1, available=False)
    NodeConnectionReconciler(lambda ref: client).reconcile_all(
        [conn], [_online("s1"), offline], []
    )
    assert client.calls == []


def test_reconcile_all_removes_stale_props():
    existing = Connection("s1", "s2", {"k": "v", LAST_APPLIED_PROPERTY: json.dumps(["k"])})
    client = FakeClient([existing])
    NodeConnectionReconciler(lambda ref: client).reconcile_all(
        [], [_online("s1"), _online("s2")], []
    )
    assert len(client.calls) == 1
    assert client.calls[0][2]["delete_props"] == ["k"]


def test_reconcile_all_unreachable():
    conn = LinstorNodeConnection("c", properties={"k": "v"})
    reconciler = NodeConnectionReconciler(lambda ref: None)
    with pytest.raises(ConnectionError):
        reconciler.reconcile_all([conn], [_online("s1"), _online("s2")], [])