#!/usr/bin/env python3
"""Cluster node catalog and node selection."""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from clusterops.libs.common import ArgparsableEnum

LOGGER = logging.getLogger(__name__)
# RFC 1123 label, the whole name must also not be a bare number (that would be a node id)
HOSTNAME_LABEL_RE = re.compile(r"^(?!-)[a-zA-Z0-9-]{1,63}(?<!-)$")
MAX_HOSTNAME_LENGTH = 253


class NodeSelectionError(Exception):
    """Parent exception for all the node selection issues."""


class InvalidFilter(NodeSelectionError):
    """Risen when the given node filter can't be parsed."""


class NodeCatalogMalformed(NodeSelectionError):
    """Risen when the node listing from the cluster is not what was expected."""


class NodeKind(ArgparsableEnum):
    """Kinds of cluster nodes, anything else the cluster reports is `unknown` and has no executor."""

    STORAGE = "storage"
    COMPUTE = "compute"
    UNKNOWN = "unknown"

    @classmethod
    def from_reported(cls, kind: str) -> "NodeKind":
        """Get the kind from the cluster node listing value."""
        try:
            return cls(kind)
        except ValueError:
            LOGGER.debug("Unknown node kind %s in the cluster node listing", kind)
            return cls.UNKNOWN


@dataclass(frozen=True)
class Node:
    """A single restartable process of the cluster."""

    node_id: int
    host: str
    kind: NodeKind
    tenant: Optional[str] = None
    port: int = 0

    @classmethod
    def from_json_data(cls, json_data: Dict[str, Any]) -> "Node":
        """Get a node from one of the entries of the cluster node listing."""
        try:
            return cls(
                node_id=int(json_data["node_id"]),
                host=json_data["host"],
                kind=NodeKind.from_reported(json_data["kind"]),
                tenant=json_data.get("tenant") or None,
                port=int(json_data.get("port") or 0),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise NodeCatalogMalformed(f"Unable to parse node entry {json_data}: {error}") from error

    def __str__(self) -> str:
        """Short human readable representation, used in logs."""
        return f"{self.kind.value} node {self.node_id} ({self.host})"


@dataclass(frozen=True)
class NodeCatalog:
    """Read-only snapshot of all the nodes of the cluster, in the order the cluster reported them."""

    nodes: Tuple[Node, ...]

    @classmethod
    def from_json_data(cls, json_data: Dict[str, Any]) -> "NodeCatalog":
        """Get the catalog from the output of the cluster node listing, like `{"nodes": [...]}`."""
        if "nodes" not in json_data or not isinstance(json_data["nodes"], list):
            raise NodeCatalogMalformed(f"Missing 'nodes' list in the cluster node listing: {json_data}")

        return cls(nodes=tuple(Node.from_json_data(entry) for entry in json_data["nodes"]))

    def __iter__(self):
        """Iterate over the nodes in catalog order."""
        return iter(self.nodes)

    def __len__(self) -> int:
        """Number of nodes in the catalog."""
        return len(self.nodes)


def is_host_reference(value: str) -> bool:
    """Return if the value is syntactically a host name or FQDN (and not a bare number)."""
    if not value or len(value) > MAX_HOSTNAME_LENGTH or value.isdigit():
        return False

    return all(HOSTNAME_LABEL_RE.match(label) for label in value.rstrip(".").split("."))


@dataclass(frozen=True)
class NodeFilterSpec:
    """Operator selection of the nodes to restart.

    `hosts` is either a list of host FQDNs or a list of node ids, mixing both is not allowed.
    """

    hosts: Tuple[str, ...] = field(default_factory=tuple)
    tenants: Tuple[str, ...] = field(default_factory=tuple)
    exclude_hosts: Tuple[str, ...] = field(default_factory=tuple)

    def get_node_fqdns(self) -> List[str]:
        """Parse `hosts` as host FQDNs."""
        for host in self.hosts:
            if not is_host_reference(host):
                raise InvalidFilter(f"invalid host fqdn specified: {host}")

        return list(self.hosts)

    def get_node_ids(self) -> List[int]:
        """Parse `hosts` as node ids."""
        node_ids = []
        for raw_node_id in self.hosts:
            try:
                node_id = int(raw_node_id)
            except ValueError as error:
                raise InvalidFilter(f"failed to parse node id: {raw_node_id}") from error

            if node_id < 0:
                raise InvalidFilter(f"invalid node id specified: {node_id}, must be positive")

            node_ids.append(node_id)

        return node_ids

    def validate(self) -> None:
        """Check that `hosts` parses either as node ids or as host FQDNs."""
        try:
            self.get_node_ids()
            return
        except InvalidFilter as ids_error:
            try:
                self.get_node_fqdns()
            except InvalidFilter as fqdns_error:
                raise InvalidFilter(
                    f"cannot parse as host FQDN or node id: {', '.join(self.hosts)} "
                    f"(as node ids: {ids_error}; as host fqdns: {fqdns_error})"
                ) from fqdns_error

    def to_dict(self) -> Dict[str, List[str]]:
        """Selection criteria as stored along with a run."""
        return {
            "hosts": list(self.hosts),
            "tenants": list(self.tenants),
            "exclude_hosts": list(self.exclude_hosts),
        }


def _matches_any(node: Node, references: Iterable[str]) -> bool:
    for reference in references:
        if reference.isdigit() and int(reference) == node.node_id:
            return True
        if reference == node.host:
            return True

    return False


def resolve_nodes(filter_spec: NodeFilterSpec, catalog: NodeCatalog) -> List[Node]:
    """Resolve the operator filter against the catalog.

    The result has no duplicates and keeps the catalog order, so resolving the same filter against the same
    catalog always gives the same list.
    """
    filter_spec.validate()

    if not filter_spec.hosts:
        selected = list(catalog)
    else:
        try:
            node_ids = set(filter_spec.get_node_ids())
            selected = [node for node in catalog if node.node_id in node_ids]
            missing = node_ids - {node.node_id for node in selected}
        except InvalidFilter:
            fqdns = set(filter_spec.get_node_fqdns())
            selected = [node for node in catalog if node.host in fqdns]
            missing = fqdns - {node.host for node in selected}

        if missing:
            LOGGER.warning("No nodes found in the cluster for: %s", ", ".join(sorted(str(item) for item in missing)))

    if filter_spec.tenants:
        tenants = set(filter_spec.tenants)
        selected = [node for node in selected if node.tenant is not None and node.tenant in tenants]

    if filter_spec.exclude_hosts:
        selected = [node for node in selected if not _matches_any(node, filter_spec.exclude_hosts)]

    deduplicated: List[Node] = []
    seen_ids = set()
    for node in selected:
        if node.node_id in seen_ids:
            continue
        seen_ids.add(node.node_id)
        deduplicated.append(node)

    LOGGER.debug("Selected %d nodes out of %d: %s", len(deduplicated), len(catalog), deduplicated)
    return deduplicated
