# kvcluster/metadata.py
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

CONSISTENT_ROUTING = "consistent-routing"
ALL_ROUTING = "all-routing"
ROUTING_STRATEGIES = (CONSISTENT_ROUTING, ALL_ROUTING)

DEFAULT_VNODES_PER_NODE = 20


class MetadataError(ValueError):
    """Cluster or store metadata is malformed or inconsistent."""


@dataclass(frozen=True)
class Node:
    id: int
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "host": self.host, "port": self.port}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Node":
        try:
            node = Node(id=int(d["id"]), host=str(d["host"]), port=int(d["port"]))
        except (KeyError, TypeError, ValueError) as e:
            raise MetadataError(f"invalid node entry {d!r}: {e}") from e
        if node.id < 0:
            raise MetadataError(f"node id must be non-negative, got {node.id}")
        return node


@dataclass(frozen=True)
class ClusterTopology:
    """Immutable snapshot of cluster membership used for replica resolution."""

    nodes: Tuple[Node, ...]
    vnodes_per_node: int = DEFAULT_VNODES_PER_NODE
    _by_id: Dict[int, Node] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        by_id: Dict[int, Node] = {}
        for node in self.nodes:
            if node.id in by_id:
                raise MetadataError(f"duplicate node id {node.id}")
            by_id[node.id] = node
        if self.vnodes_per_node < 1:
            raise MetadataError(f"vnodes_per_node must be positive, got {self.vnodes_per_node}")
        object.__setattr__(self, "_by_id", by_id)

    def node_ids(self) -> List[int]:
        return sorted(self._by_id)

    def get_node(self, node_id: int) -> Node:
        try:
            return self._by_id[node_id]
        except KeyError:
            raise MetadataError(f"unknown node id {node_id}") from None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vnodes_per_node": self.vnodes_per_node,
            "nodes": [n.to_dict() for n in self.nodes],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ClusterTopology":
        if not isinstance(d, dict) or not isinstance(d.get("nodes"), list):
            raise MetadataError("cluster metadata must contain a 'nodes' list")
        try:
            vnodes = int(d.get("vnodes_per_node", DEFAULT_VNODES_PER_NODE))
        except (TypeError, ValueError) as e:
            raise MetadataError(f"invalid vnodes_per_node: {e}") from e
        return ClusterTopology(
            nodes=tuple(Node.from_dict(n) for n in d["nodes"]),
            vnodes_per_node=vnodes,
        )


@dataclass(frozen=True)
class StoreSchema:
    name: str
    replication_factor: int
    routing_strategy: str = CONSISTENT_ROUTING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "replication_factor": self.replication_factor,
            "routing_strategy": self.routing_strategy,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "StoreSchema":
        try:
            schema = StoreSchema(
                name=str(d["name"]),
                replication_factor=int(d["replication_factor"]),
                routing_strategy=str(d.get("routing_strategy", CONSISTENT_ROUTING)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MetadataError(f"invalid store definition {d!r}: {e}") from e
        if not schema.name or "/" in schema.name or schema.name.startswith("."):
            raise MetadataError(f"invalid store name {schema.name!r}")
        if schema.replication_factor < 1:
            raise MetadataError(
                f"store {schema.name}: replication factor must be positive, "
                f"got {schema.replication_factor}"
            )
        return schema


def stores_from_list(entries: List[Dict[str, Any]]) -> List[StoreSchema]:
    if not isinstance(entries, list):
        raise MetadataError("store metadata must be a list")
    stores = [StoreSchema.from_dict(e) for e in entries]
    names = [s.name for s in stores]
    if len(set(names)) != len(names):
        raise MetadataError(f"duplicate store names in {names}")
    return stores


def load_cluster_file(path: str) -> Tuple[ClusterTopology, List[StoreSchema]]:
    """
    Load a cluster file:
      {"vnodes_per_node": 20,
       "nodes": [{"id": 0, "host": "127.0.0.1", "port": 60000}, ...],
       "stores": [{"name": "users", "replication_factor": 2}, ...]}
    """
    with open(path) as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise MetadataError(f"cluster file {path} is not valid JSON: {e}") from e
    topology = ClusterTopology.from_dict(raw)
    stores = stores_from_list(raw.get("stores", []))
    return topology, stores


def dump_cluster_file(path: str, topology: ClusterTopology, stores: List[StoreSchema]):
    payload = topology.to_dict()
    payload["stores"] = [s.to_dict() for s in stores]
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)
