# kvcluster/routing.py
from typing import Dict, List

from kvcluster.hash_ring import HashRing
from kvcluster.metadata import (
    ALL_ROUTING,
    CONSISTENT_ROUTING,
    ClusterTopology,
    ROUTING_STRATEGIES,
    MetadataError,
    StoreSchema,
)


class TopologyError(MetadataError):
    """The topology cannot satisfy a store's replication requirements."""


class TopologyResolver:
    """
    Maps (store, key) to the ordered list of node ids replicating the key.

    The ring is built once from the topology snapshot, so resolution is a
    pure function of (topology, schema, key) for the lifetime of the resolver.
    Position 0 of the result is the master owner.
    """

    def __init__(self, topology: ClusterTopology):
        self.topology = topology
        self._ring = HashRing(topology.node_ids(), vnodes=topology.vnodes_per_node)
        self._checked: Dict[StoreSchema, bool] = {}

    def check_schema(self, schema: StoreSchema):
        """Raise TopologyError if `schema` cannot be routed on this topology."""
        if schema in self._checked:
            return
        if schema.routing_strategy not in ROUTING_STRATEGIES:
            raise TopologyError(
                f"store {schema.name}: unknown routing strategy {schema.routing_strategy!r}"
            )
        node_count = len(self.topology.node_ids())
        if node_count == 0:
            raise TopologyError("cluster has no nodes")
        if schema.routing_strategy == CONSISTENT_ROUTING and schema.replication_factor > node_count:
            raise TopologyError(
                f"store {schema.name}: replication factor {schema.replication_factor} "
                f"exceeds cluster size {node_count}"
            )
        self._checked[schema] = True

    def resolve_replicas(self, schema: StoreSchema, key: bytes) -> List[int]:
        self.check_schema(schema)
        if schema.routing_strategy == ALL_ROUTING:
            return self.topology.node_ids()

        replicas = self._ring.get_replicas(key, N=schema.replication_factor)
        if len(replicas) != schema.replication_factor:
            raise TopologyError(
                f"store {schema.name}: ring yielded {len(replicas)} replicas, "
                f"expected {schema.replication_factor}"
            )
        return replicas

    def master_node(self, schema: StoreSchema, key: bytes) -> int:
        return self.resolve_replicas(schema, key)[0]

    def ring_snapshot(self):
        return self._ring.ring_snapshot()
