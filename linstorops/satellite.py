"""Registration of LINSTOR satellites and reconciliation of their storage pools."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Protocol, Sequence

from linstorops.nodeconnection import _with_last_applied, properties_modification

log = logging.getLogger(__name__)

PROJECT_NAME = "piraeus-datastore"
OPERATOR_NAME = "piraeus-operator"
SATELLITE_NODE_LABEL = "piraeus.io/linstor-satellite"
SATELLITE_FINALIZER = "piraeus.io/satellite-protection"
MANAGED_BY_PROPERTY = "Aux/piraeus.io/managed-by"
STORAGE_POOL_NAME_PROPERTY = "StorDriver/StorPoolName"
FILE_POOL_BASE = "/var/lib/linstor-pools"
EXTRA_LABELS: Mapping[str, str] = {}

NODE_TYPE_SATELLITE = "SATELLITE"
ENCRYPTION_PLAIN = "Plain"
ENCRYPTION_SSL = "SSL"
PORT_PLAIN = 3366
PORT_SSL = 3367

IPV4 = "IPv4"
IPV6 = "IPv6"

APPLIED = "Applied"
AVAILABLE = "Available"
CONFIGURED = "Configured"

PROVIDER_KINDS = frozenset({"LVM", "LVM_THIN", "FILE", "FILE_THIN", "ZFS", "ZFS_THIN"})


@dataclass(frozen=True)
class StoragePoolSpec:
    """A storage pool that should exist on a satellite."""

    name: str
    provider_kind: str
    source_pool: str = ""
    host_devices: tuple[str, ...] = ()
    properties: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.provider_kind not in PROVIDER_KINDS:
            raise ValueError(f"unknown provider kind: {self.provider_kind}")

    @property
    def is_file(self) -> bool:
        return self.provider_kind in ("FILE", "FILE_THIN")

    @property
    def pool_name(self) -> str:
        """Backing pool: volume group, zpool or directory."""
        if self.source_pool:
            return self.source_pool
        if self.is_file:
            return f"{FILE_POOL_BASE}/{self.name}"
        return self.name


@dataclass
class SatelliteSpec:
    """A LINSTOR satellite resource, bound to the node of the same name."""

    name: str
    cluster_ref: str = ""
    uid: str = ""
    properties: Mapping[str, str] = field(default_factory=dict)
    storage_pools: Sequence[StoragePoolSpec] = ()
    ip_families: Sequence[str] = ()
    internal_tls: bool = False
    finalizers: list[str] = field(default_factory=list)

    def bind_mount_paths(self) -> list[tuple[str, str]]:
        """Host path volumes (name, path) needed by file-backed pools."""
        return [
            (f"file-pool-{index}", pool.pool_name)
            for index, pool in enumerate(self.storage_pools)
            if pool.is_file
        ]


@dataclass(frozen=True)
class NetInterface:
    """A network interface registered for a satellite node."""

    name: str
    address: str
    satellite_port: int
    encryption_type: str


@dataclass
class _Entry:
    status: str
    reason: str
    message: str


class Conditions:
    """Collected status conditions, keyed by condition type."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def add_success(self, kind: str, message: str) -> None:
        self._entries[kind] = _Entry("True", "AsExpected", message)

    def add_error(self, kind: str, error: Optional[BaseException]) -> None:
        self._entries[kind] = _Entry("False", "Error", str(error) if error is not None else "")

    def add_unknown(self, kind: str, message: str) -> None:
        self._entries[kind] = _Entry("Unknown", "Unknown", message)

    def __contains__(self, kind: object) -> bool:
        return kind in self._entries

    def to_conditions(self, generation: int) -> list[dict]:
        """Render as status conditions observed at the given generation."""
        return [
            {
                "type": kind,
                "status": entry.status,
                "reason": entry.reason,
                "message": entry.message,
                "observed_generation": generation,
            }
            for kind, entry in sorted(self._entries.items())
        ]


def network_interfaces(
    pod_ips: Iterable[str], ip_families: Sequence[str], tls: bool
) -> list[NetInterface]:
    """Interfaces for the pod addresses, restricted to the given families if any."""
    encryption = ENCRYPTION_SSL if tls else ENCRYPTION_PLAIN
    port = PORT_SSL if tls else PORT_PLAIN
    result = []
    for raw in pod_ips:
        try:
            ip = ipaddress.ip_address(raw)
        except ValueError:
            raise ValueError(f"unrecognized address format: {raw}") from None
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        if ip.version == 4:
            name, family = "default-ipv4", IPV4
        else:
            name, family = "default-ipv6", IPV6
        if ip_families and family not in ip_families:
            continue
        result.append(NetInterface(name, str(ip), port, encryption))
    return result


def kustom_labels(uid: str, instance: str) -> list[dict]:
    """Labels to apply to all resources generated for a satellite."""
    return [
        {
            "pairs": {
                "app.kubernetes.io/name": PROJECT_NAME,
                "app.kubernetes.io/instance": instance,
                SATELLITE_NODE_LABEL: uid,
            },
            "include_selectors": True,
            "include_templates": True,
        },
        {
            "pairs": dict(EXTRA_LABELS),
            "include_selectors": False,
            "include_templates": False,
        },
    ]


class _PoolInfo(Protocol):
    storage_pool_name: str
    node_name: str
    props: Mapping[str, str]


class _LinstorApi(Protocol):
    def get_version(self) -> str: ...

    def create_or_update_node(
        self, name: str, node_type: str, props: dict, net_interfaces: list
    ) -> str: ...

    def get_storage_pools(self, node: str) -> list: ...

    def get_storage_pool(self, node: str, pool: str): ...

    def create_device_pool(
        self, node: str, provider_kind: str, pool_name: str, device_paths: Sequence[str],
        storage_pool: str, props: dict,
    ) -> None: ...

    def create_storage_pool(self, node: str, pool: str, provider_kind: str, props: dict) -> None: ...

    def modify_storage_pool(self, node: str, pool: str, modification: dict) -> None: ...

    def delete_storage_pool(self, node: str, pool: str) -> None: ...

    def evacuate(self, node: str) -> None: ...

    def get_resource_view(self, node: str) -> list[str]: ...

    def delete_node(self, node: str) -> None: ...


class SatelliteReconciler:
    """Keeps LINSTOR's view of a satellite in line with its specification.

    ``client_for_cluster`` returns the LINSTOR client for a cluster, or None if
    the cluster has no controller. ``update`` persists changes to the satellite.
    Lookups that find nothing raise LookupError.
    """

    def __init__(
        self,
        client_for_cluster: Callable[[str], Optional[_LinstorApi]],
        update: Optional[Callable[[SatelliteSpec], None]] = None,
    ):
        self.client_for_cluster = client_for_cluster
        self.update = update or (lambda satellite: None)

    def reconcile_state(
        self,
        satellite: SatelliteSpec,
        node_props: Mapping[str, str],
        pods: Sequence[tuple[str, Sequence[str]]],
        conds: Conditions,
    ) -> None:
        """Register the satellite node and configure its pools, recording conditions.

        ``pods`` are (node name, pod IPs) pairs of the satellite's pods.
        """
        try:
            client = self.client_for_cluster(satellite.cluster_ref)
        except Exception as exc:
            conds.add_error(AVAILABLE, exc)
            conds.add_unknown(CONFIGURED, "Controller unreachable")
            raise
        if client is None:
            conds.add_error(AVAILABLE, None)
            conds.add_unknown(CONFIGURED, "Controller unreachable")
            return

        if len(pods) != 1:
            conds.add_error(AVAILABLE, ValueError(f"expected one Pod, got {len(pods)}"))
            conds.add_unknown(CONFIGURED, "Missing Pod")
            return
        pod_node, pod_ips = pods[0]

        if not pod_ips:
            conds.add_error(AVAILABLE, ValueError("missing IP address on pod"))
            conds.add_unknown(CONFIGURED, "missing IP address on pod")
            return

        try:
            client.get_version()
        except Exception as exc:
            conds.add_error(AVAILABLE, exc)
            conds.add_unknown(CONFIGURED, "Controller unreachable")
            raise

        props = {**node_props, **satellite.properties}

        try:
            interfaces = network_interfaces(pod_ips, satellite.ip_families, satellite.internal_tls)
        except ValueError as exc:
            conds.add_error(AVAILABLE, exc)
            conds.add_unknown(CONFIGURED, "Node registration not up to date")
            return

        try:
            status = client.create_or_update_node(pod_node, NODE_TYPE_SATELLITE, props, interfaces)
        except Exception as exc:
            conds.add_error(AVAILABLE, exc)
            conds.add_unknown(CONFIGURED, "Node registration not up to date")
            raise

        if status != "ONLINE":
            conds.add_error(AVAILABLE, RuntimeError("satellite not online"))
            return

        conds.add_success(AVAILABLE, "satellite online")
        try:
            self.reconcile_storage_pools(satellite, node_props)
        except Exception as exc:
            conds.add_error(CONFIGURED, exc)
        else:
            conds.add_success(CONFIGURED, "Pools configured")

    def reconcile_storage_pools(self, satellite: SatelliteSpec, node_props: Mapping[str, str]) -> None:
        """Create, update and remove operator-managed storage pools on the node."""
        client = self.client_for_cluster(satellite.cluster_ref)
        if client is None:
            raise ConnectionError("controller unreachable")

        node = satellite.name
        current = list(client.get_storage_pools(node))
        expected_names = set()

        for pool in satellite.storage_pools:
            expected_names.add(pool.name)
            expected = {**node_props, **pool.properties}
            expected[MANAGED_BY_PROPERTY] = OPERATOR_NAME
            expected[STORAGE_POOL_NAME_PROPERTY] = pool.pool_name

            existing = None
            for candidate in current:
                if candidate.storage_pool_name == pool.name:
                    existing = candidate

            if existing is None and pool.host_devices:
                try:
                    client.create_device_pool(
                        node, pool.provider_kind, pool.pool_name, list(pool.host_devices),
                        pool.name, _with_last_applied(expected),
                    )
                except Exception:
                    log.exception("failed to create device pool %s", pool.name)
                try:
                    existing = client.get_storage_pool(node, pool.name)
                except Exception:
                    existing = None

            if existing is None:
                client.create_storage_pool(
                    node, pool.name, pool.provider_kind, _with_last_applied(expected)
                )
                existing = client.get_storage_pool(node, pool.name)

            modification = properties_modification(existing.props, expected)
            if modification is not None:
                client.modify_storage_pool(existing.node_name, existing.storage_pool_name, modification)

        for pool_info in current:
            if pool_info.props.get(MANAGED_BY_PROPERTY) != OPERATOR_NAME:
                continue
            if pool_info.storage_pool_name not in expected_names:
                client.delete_storage_pool(node, pool_info.storage_pool_name)

    def delete_satellite(self, satellite: SatelliteSpec) -> None:
        """Evacuate and remove the node, then drop the finalizer.

        Raises RuntimeError while resources remain on the node.
        """
        if SATELLITE_FINALIZER not in satellite.finalizers:
            return

        client = self.client_for_cluster(satellite.cluster_ref)
        if client is None:
            log.info("Removing finalizer from resource without cluster")
            satellite.finalizers.remove(SATELLITE_FINALIZER)
            self.update(satellite)
            return

        try:
            client.evacuate(satellite.name)
        except LookupError:
            pass

        try:
            remaining = list(client.get_resource_view(satellite.name))
        except LookupError:
            remaining = []
        if remaining:
            raise RuntimeError(f"remaining resources: {', '.join(remaining)}")

        try:
            client.delete_node(satellite.name)
        except LookupError:
            pass

        satellite.finalizers.remove(SATELLITE_FINALIZER)
        self.update(satellite)