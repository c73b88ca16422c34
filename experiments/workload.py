# experiments/workload.py
import argparse
import asyncio
import os
import random
from typing import List

import httpx
from numpy.random import zipf

from kvcluster.metadata import ClusterTopology, StoreSchema, load_cluster_file
from kvcluster.routing import TopologyResolver


def pick_key(distribution, keyspace) -> bytes:
    if distribution == "uniform":
        n = random.randint(1, keyspace)
    else:
        while True:
            n = int(zipf(1.3))
            if n <= keyspace:
                break
    return f"key-{n}".encode("utf-8")


async def do_put(client, node, store_name, key, value, vc=None):
    """Write one version directly to one node; returns the stored version json."""
    payload = {"value": value, "vc": vc or {}}
    r = await client.put(
        f"http://{node.address}/admin/stores/{store_name}/keys/{key.hex()}",
        json=payload,
        timeout=5.0,
    )
    r.raise_for_status()
    return r.json()["stored"]


async def write_key(client, topology: ClusterTopology, resolver: TopologyResolver,
                    schema: StoreSchema, key: bytes, divergence: float):
    """
    Coordinate a write at the key's master and copy it to the other replicas.
    With probability `divergence` a replica misses the copy or takes a
    concurrent write of its own instead, leaving siblings to sample.
    """
    replicas = resolver.resolve_replicas(schema, key)
    master = topology.get_node(replicas[0])
    value = str(random.randint(1, 10**9))
    stored = await do_put(client, master, schema.name, key, value)
    for node_id in replicas[1:]:
        node = topology.get_node(node_id)
        roll = random.random()
        if roll < divergence / 2:
            continue
        if roll < divergence:
            await do_put(client, node, schema.name, key, value + "-concurrent")
        else:
            await do_put(client, node, schema.name, key, value, stored["vc"])


async def run(args):
    topology, stores = load_cluster_file(args.cluster_file)
    resolver = TopologyResolver(topology)
    os.makedirs(args.keys_dir, exist_ok=True)

    async with httpx.AsyncClient() as client:
        for schema in stores:
            keys: List[bytes] = []
            seen = set()
            for _ in range(args.writes):
                key = pick_key(args.dist, args.keyspace)
                await write_key(client, topology, resolver, schema, key, args.divergence)
                if key not in seen:
                    seen.add(key)
                    keys.append(key)

            sample = keys if args.sample >= len(keys) else random.sample(keys, args.sample)
            keys_file = os.path.join(args.keys_dir, schema.name + ".keys")
            with open(keys_file, "w") as f:
                for key in sample:
                    f.write(key.hex() + "\n")
            print(f"[workload] {schema.name}: {args.writes} writes, {len(sample)} keys -> {keys_file}")


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("--cluster_file", type=str, default="cluster.json")
    p.add_argument("--keys_dir", type=str, default="keys")
    p.add_argument("--writes", type=int, default=200)
    p.add_argument("--sample", type=int, default=50,
                   help="number of distinct written keys to list per store")
    p.add_argument("--divergence", type=float, default=0.2,
                   help="probability that a replica ends up with a different version")
    p.add_argument("--dist", choices=["uniform", "zipf"], default="uniform")
    p.add_argument("--keyspace", type=int, default=1000)
    args = p.parse_args()
    asyncio.run(run(args))
