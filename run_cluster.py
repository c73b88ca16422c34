# run_cluster.py
import subprocess
import sys
import time
import argparse
import os

from kvcluster.metadata import ALL_ROUTING, ClusterTopology, Node, StoreSchema, dump_cluster_file


def parse_store(text: str) -> StoreSchema:
    """'users:2' -> StoreSchema('users', 2); 'meta:all' -> all-routing store."""
    name, _, rf = text.partition(":")
    if rf == "all":
        return StoreSchema(name=name, replication_factor=1, routing_strategy=ALL_ROUTING)
    return StoreSchema(name=name, replication_factor=int(rf or 3))


def launch_cluster(
    n_nodes,
    stores,
    base_port=60000,
    stagger=0.15,
    vnodes_per_node=20,
    output_dir=None,
):
    topology = ClusterTopology(
        nodes=tuple(Node(id=i, host="127.0.0.1", port=base_port + i) for i in range(n_nodes)),
        vnodes_per_node=vnodes_per_node,
    )

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        cluster_file = os.path.join(output_dir, "cluster.json")
    else:
        cluster_file = "cluster.json"
    dump_cluster_file(cluster_file, topology, stores)

    processes = []
    for node in topology.nodes:
        cmd = [
            sys.executable, "-m", "kvcluster.node",
            "--node_id", str(node.id),
            "--cluster_file", cluster_file,
        ]
        print(f"[launcher] starting node {node.id} on {node.port}")
        processes.append(subprocess.Popen(cmd))
        time.sleep(stagger)

    print(f"[launcher] cluster started with {n_nodes} nodes; metadata written to {cluster_file}")
    return processes, cluster_file


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--nodes", type=int, default=5)
    parser.add_argument("--base_port", type=int, default=60000)
    parser.add_argument("--vnodes_per_node", type=int, default=20)
    parser.add_argument("--store", action="append", default=None,
                        help="store as name:replication_factor (repeatable), e.g. users:2")
    parser.add_argument("--output_dir", type=str, default=None)
    args = parser.parse_args()

    stores = [parse_store(s) for s in (args.store or ["users:3"])]
    procs, cluster_file = launch_cluster(
        args.nodes,
        stores,
        base_port=args.base_port,
        vnodes_per_node=args.vnodes_per_node,
        output_dir=args.output_dir,
    )
    try:
        for p in procs:
            p.wait()
    except KeyboardInterrupt:
        print("[launcher] terminating cluster processes")
        for p in procs:
            p.terminate()
