# kvcluster/node.py
import argparse
import logging
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from kvcluster.metadata import ClusterTopology, MetadataError, StoreSchema, load_cluster_file
from kvcluster.routing import TopologyResolver
from kvcluster.storage import UnknownStoreError, VersionedStorage
from kvcluster.vector_clock import VectorClock

node_logger = logging.getLogger("node")


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Run one storage node of the cluster.")

    # Required (identity)
    parser.add_argument("--node_id", type=int, required=True,
                        help="Id of this node in the cluster file")
    parser.add_argument("--cluster_file", type=str, required=True,
                        help="JSON file describing nodes and stores")

    # Optional overrides
    parser.add_argument("--host", type=str, default=None,
                        help="Bind host (default: the node's host in the cluster file)")
    parser.add_argument("--port", type=int, default=None,
                        help="Bind port (default: the node's port in the cluster file)")

    parser.add_argument("--debug", action="store_true")

    return parser.parse_args(argv)


class PutRequest(BaseModel):
    value: str
    vc: Dict[str, int] = {}


def _decode_key(hex_key: str) -> bytes:
    try:
        return bytes.fromhex(hex_key)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"key {hex_key!r} is not hex encoded")


def create_app(
    node_id: int,
    topology: ClusterTopology,
    stores: List[StoreSchema],
    storage: Optional[VersionedStorage] = None,
) -> FastAPI:
    """
    Build the node's FastAPI app. Besides liveness it serves the admin
    surface: cluster/store metadata for bootstrapping tools, and per-key
    version reads/writes against this node's local storage only.
    """
    topology.get_node(node_id)
    resolver = TopologyResolver(topology)
    for schema in stores:
        resolver.check_schema(schema)
    if storage is None:
        storage = VersionedStorage(s.name for s in stores)

    app = FastAPI(title=f"kv-node-{node_id}")
    app.state.storage = storage

    # ---------- Health endpoint ----------
    @app.get("/ping")
    async def ping():
        return {"status": "ok", "node": node_id}

    # ---------- Metadata ----------
    @app.get("/admin/cluster")
    async def get_cluster():
        return topology.to_dict()

    @app.get("/admin/stores")
    async def get_stores():
        return {"stores": [s.to_dict() for s in stores]}

    @app.get("/admin/ring")
    async def ring_snapshot():
        """Return the ring snapshot for debugging."""
        return {"node": node_id, "ring": resolver.ring_snapshot()}

    # ---------- Local versions ----------
    @app.get("/admin/stores/{store_name}/keys/{hex_key}/versions")
    async def get_versions(store_name: str, hex_key: str):
        """
        Return this node's version stamps for a key:
        {"versions": [ {"vc": {...}, "ts": ...}, ... ]}
        """
        key = _decode_key(hex_key)
        try:
            versions = storage.get_versions(store_name, key)
        except UnknownStoreError:
            raise HTTPException(status_code=404, detail=f"unknown store {store_name}")
        return {"versions": [v.to_json() for v in versions]}

    @app.put("/admin/stores/{store_name}/keys/{hex_key}")
    async def put_version(store_name: str, hex_key: str, body: PutRequest):
        """
        Store a version locally. An empty vc is a blind write: this node's
        counter is incremented on a fresh clock.
        """
        key = _decode_key(hex_key)
        try:
            if body.vc:
                vc = VectorClock.from_dict(body.vc)
            else:
                vc = VectorClock()
                vc.increment(node_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        try:
            stored = storage.put(store_name, key, body.value, vc)
        except UnknownStoreError:
            raise HTTPException(status_code=404, detail=f"unknown store {store_name}")
        node_logger.debug(f"[{node_id}] put {store_name}/{hex_key} -> {stored.version}")
        return {"status": "ok", "node": node_id, "stored": stored.version.to_json()}

    return app


# ---------- Main run helper ----------
def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        topology, stores = load_cluster_file(args.cluster_file)
        me = topology.get_node(args.node_id)
        app = create_app(args.node_id, topology, stores)
    except (OSError, MetadataError) as e:
        node_logger.error(f"cannot start node {args.node_id}: {e}")
        raise SystemExit(1)

    node_logger.info(f"[{args.node_id}] node starting with stores {[s.name for s in stores]}")
    uvicorn.run(app, host=args.host or me.host, port=args.port or me.port,
                log_level="warning", access_log=False)


if __name__ == "__main__":
    main()
