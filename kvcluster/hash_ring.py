# kvcluster/hash_ring.py
import hashlib
import bisect
from typing import Dict, Iterable, List, Set, Tuple


def _hash_fn(key: bytes) -> int:
    """Return a stable integer hash for a byte key (sha1 -> int)."""
    h = hashlib.sha1()
    h.update(key)
    return int(h.hexdigest(), 16)


class HashRing:
    """
    Consistent hashing ring with virtual nodes over integer node ids.

    Usage:
      ring = HashRing(node_ids=[0, 1, 2], vnodes=20)
      replicas = ring.get_replicas(b"mykey", N=2)
    """

    def __init__(self, node_ids: Iterable[int], vnodes: int = 100):
        if vnodes < 1:
            raise ValueError(f"vnodes must be positive, got {vnodes}")
        self.vnodes = vnodes
        self._ring: List[int] = []                # sorted list of vnode positions
        self._vnode_map: Dict[int, str] = {}      # position -> vnode_id (e.g. "3#42")
        self._vnode_to_node: Dict[str, int] = {}  # vnode_id -> physical node id
        self._nodes: Set[int] = set()
        for n in node_ids:
            self.add_node(n)

    def add_node(self, node_id: int):
        """Add a physical node with `vnodes` virtual nodes."""
        if node_id in self._nodes:
            return
        self._nodes.add(node_id)
        for i in range(self.vnodes):
            vnode_id = f"{node_id}#{i}"
            pos = _hash_fn(vnode_id.encode("utf-8"))
            while pos in self._vnode_map:
                vnode_id = vnode_id + "_"
                pos = _hash_fn(vnode_id.encode("utf-8"))
            bisect.insort(self._ring, pos)
            self._vnode_map[pos] = vnode_id
            self._vnode_to_node[vnode_id] = node_id

    def get_replicas(self, key: bytes, N: int = 3) -> List[int]:
        """
        Return up to N distinct physical node ids that are the replicas for `key`,
        in preference order (the first one owns the key's master vnode).
        """
        if not self._ring:
            return []

        res: List[int] = []
        seen_nodes: Set[int] = set()
        idx = bisect.bisect(self._ring, _hash_fn(key))
        ring_len = len(self._ring)

        # Walk clockwise collecting distinct physical nodes
        for step in range(ring_len):
            if len(res) >= N:
                break
            pos = self._ring[(idx + step) % ring_len]
            node = self._vnode_to_node[self._vnode_map[pos]]
            if node in seen_nodes:
                continue
            res.append(node)
            seen_nodes.add(node)

        return res

    def ring_snapshot(self) -> List[Tuple[int, str]]:
        """Return a snapshot list of (position, vnode_id) useful for debugging."""
        return [(pos, self._vnode_map[pos]) for pos in self._ring]
