# kvcluster/storage.py
from typing import Dict, Iterable, List, Tuple

from kvcluster.vector_clock import VectorClock


class UnknownStoreError(KeyError):
    pass


class Versioned:
    """A value tagged with the vector clock of the write that produced it."""

    __slots__ = ("value", "version")

    def __init__(self, value: str, version: VectorClock):
        self.value = value
        self.version = version

    def signature(self) -> Tuple:
        """Deterministic signature to dedupe identical versions."""
        return (self.value, tuple(sorted(self.version.clock.items())))

    def __repr__(self) -> str:
        return f"Versioned({self.value!r}, {self.version!r})"


class VersionedStorage:
    """
    In-memory storage for one node: store name -> key -> list of versions.
    Concurrent (non-dominated) versions are all kept as siblings.
    """

    def __init__(self, store_names: Iterable[str]):
        self._stores: Dict[str, Dict[bytes, List[Versioned]]] = {
            name: {} for name in store_names
        }

    def _store(self, store_name: str) -> Dict[bytes, List[Versioned]]:
        try:
            return self._stores[store_name]
        except KeyError:
            raise UnknownStoreError(store_name) from None

    def has_store(self, store_name: str) -> bool:
        return store_name in self._stores

    def put(self, store_name: str, key: bytes, value: str, vc: VectorClock) -> Versioned:
        """
        Store a new version for key: merge into existing versions,
        drop dominated versions and deduplicate identical ones.
        Returns the version kept for the write (the dominating one if the
        write itself was obsolete).
        """
        store = self._store(store_name)
        candidate = Versioned(value, vc.copy())
        all_versions = store.get(key, []) + [candidate]

        keep: List[Versioned] = []
        for v in all_versions:
            dominated = any(
                VectorClock.compare(v.version, w.version) == -1
                for w in all_versions if w is not v
            )
            if not dominated:
                keep.append(v)

        unique: List[Versioned] = []
        seen = set()
        for v in keep:
            sig = v.signature()
            if sig not in seen:
                seen.add(sig)
                unique.append(v)

        store[key] = unique
        cand_sig = candidate.signature()
        for v in unique:
            if v.signature() == cand_sig:
                return v
        return unique[-1]

    def get_versions(self, store_name: str, key: bytes) -> List[VectorClock]:
        """Return the version stamps stored for key (may be empty)."""
        return [v.version.copy() for v in self._store(store_name).get(key, [])]
