# kvsampler/admin_client.py
import logging
from typing import Any, List, Optional, Tuple
from urllib.parse import quote

import httpx

from kvcluster.metadata import ClusterTopology, StoreSchema, stores_from_list
from kvcluster.vector_clock import VectorClock

admin_logger = logging.getLogger("admin_client")

# timeouts
RPC_TIMEOUT = 5.0


class AdminResponseError(ValueError):
    """A node answered with a payload the client cannot interpret."""


class AdminClient:
    """
    Client for the admin surface of the cluster's nodes.

    `bootstrap()` reads cluster and store metadata from the bootstrap node;
    `get_node_key()` reads one key's versions from one specific node. Errors
    are never swallowed: transport and HTTP failures surface as
    httpx.HTTPError, bad payloads as AdminResponseError.
    """

    def __init__(
        self,
        bootstrap_url: str,
        timeout: float = RPC_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.bootstrap_url = bootstrap_url.rstrip("/")
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)
        self._topology: Optional[ClusterTopology] = None

    async def __aenter__(self) -> "AdminClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        await self._client.aclose()

    @property
    def topology(self) -> ClusterTopology:
        if self._topology is None:
            raise RuntimeError("AdminClient used before bootstrap()")
        return self._topology

    async def _get_json(self, url: str) -> Any:
        r = await self._client.get(url)
        r.raise_for_status()
        try:
            return r.json()
        except ValueError as e:
            raise AdminResponseError(f"{url} returned invalid JSON: {e}") from e

    # ---------------------------------------------------------
    # Bootstrap metadata
    # ---------------------------------------------------------

    async def get_cluster(self) -> ClusterTopology:
        return ClusterTopology.from_dict(await self._get_json(f"{self.bootstrap_url}/admin/cluster"))

    async def get_store_definitions(self) -> List[StoreSchema]:
        body = await self._get_json(f"{self.bootstrap_url}/admin/stores")
        if not isinstance(body, dict):
            raise AdminResponseError("store metadata must be a JSON object")
        return stores_from_list(body.get("stores"))

    async def bootstrap(self) -> Tuple[ClusterTopology, List[StoreSchema]]:
        admin_logger.info(f"Connecting to bootstrap server: {self.bootstrap_url}")
        self._topology = await self.get_cluster()
        stores = await self.get_store_definitions()
        admin_logger.info(
            f"Cluster has {len(self._topology.nodes)} nodes and {len(stores)} stores"
        )
        return self._topology, stores

    # ---------------------------------------------------------
    # Per-node reads
    # ---------------------------------------------------------

    def node_url(self, node_id: int) -> str:
        try:
            node = self.topology.get_node(node_id)
        except ValueError as e:
            raise AdminResponseError(str(e)) from e
        return f"http://{node.address}"

    async def get_node_key(self, store_name: str, node_id: int, key: bytes) -> List[VectorClock]:
        """
        Fetch the versions node `node_id` holds for `key` in `store_name`.
        An empty list means the key is absent on that node.
        """
        url = f"{self.node_url(node_id)}/admin/stores/{quote(store_name, safe='')}/keys/{key.hex()}/versions"
        body = await self._get_json(url)
        admin_logger.debug(f"GET {url} -> {body}")
        return _parse_versions(body, url)


def _parse_versions(body: Any, url: str) -> List[VectorClock]:
    if not isinstance(body, dict) or not isinstance(body.get("versions"), list):
        raise AdminResponseError(f"{url} returned no 'versions' list")
    versions: List[VectorClock] = []
    for entry in body["versions"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("vc", {}), dict):
            raise AdminResponseError(f"{url} returned a malformed version entry {entry!r}")
        try:
            versions.append(VectorClock.from_json(entry))
        except (TypeError, ValueError) as e:
            raise AdminResponseError(f"{url} returned a malformed version entry {entry!r}: {e}") from e
    return versions
