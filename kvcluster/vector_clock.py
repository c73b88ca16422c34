# kvcluster/vector_clock.py
import time
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class VectorClock:
    """
    Vector clock version stamp.
    - Represented as a dict node_id -> counter (int), plus the wall-clock
      timestamp (ms) of the write that produced it.
    - compare(a,b) returns:
        -1 if a < b (a happened-before b)
         0 if a == b
         1 if a > b (a happened-after b)
         2 if concurrent
    - str() gives the textual form written to sample files:
        version(0:1, 3:2) ts:1700000000123
    """

    def __init__(self, clock: Dict[int, int] = None, timestamp: Optional[int] = None):
        self.clock = dict(clock) if clock else {}
        self.timestamp = now_ms() if timestamp is None else timestamp

    def increment(self, node_id: int):
        self.clock[node_id] = self.clock.get(node_id, 0) + 1
        self.timestamp = now_ms()

    def copy(self) -> "VectorClock":
        return VectorClock(dict(self.clock), self.timestamp)

    def to_dict(self) -> Dict[str, int]:
        # JSON object keys are strings
        return {str(node): count for node, count in self.clock.items()}

    @staticmethod
    def from_dict(d: Dict[Any, Any], timestamp: Optional[int] = None) -> "VectorClock":
        """Build a clock from a JSON-decoded mapping; raises ValueError on bad entries."""
        clock = {}
        for node, count in (d or {}).items():
            node_id, counter = int(node), int(count)
            if node_id < 0 or counter < 1:
                raise ValueError(f"invalid vector clock entry {node!r}: {count!r}")
            clock[node_id] = counter
        return VectorClock(clock, timestamp)

    def to_json(self) -> Dict[str, Any]:
        return {"vc": self.to_dict(), "ts": self.timestamp}

    @staticmethod
    def from_json(payload: Dict[str, Any]) -> "VectorClock":
        return VectorClock.from_dict(payload.get("vc", {}), int(payload.get("ts", 0)))

    @staticmethod
    def compare(a: "VectorClock", b: "VectorClock") -> int:
        """
        Compare two vector clocks. Timestamps are ignored.
        Return:
         -1 if a < b (a happens before b)
          0 if a == b
          1 if a > b
          2 if concurrent
        """
        keys = set(a.clock.keys()) | set(b.clock.keys())
        a_less = False
        b_less = False
        for k in keys:
            av = a.clock.get(k, 0)
            bv = b.clock.get(k, 0)
            if av < bv:
                a_less = True
            elif av > bv:
                b_less = True
        if a_less and not b_less:
            return -1
        if b_less and not a_less:
            return 1
        if not a_less and not b_less:
            return 0
        return 2  # concurrent

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VectorClock):
            return NotImplemented
        return self.clock == other.clock and self.timestamp == other.timestamp

    def __hash__(self) -> int:
        return hash((tuple(sorted(self.clock.items())), self.timestamp))

    def __str__(self) -> str:
        entries = ", ".join(f"{node}:{count}" for node, count in sorted(self.clock.items()))
        return f"version({entries}) ts:{self.timestamp}"

    def __repr__(self) -> str:
        return f"VC({self.clock}, ts={self.timestamp})"
