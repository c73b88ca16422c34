# kvsampler/sampler.py
import asyncio
import logging
import os
import string
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Tuple

from kvcluster.metadata import StoreSchema

sampler_logger = logging.getLogger("sampler")

KEY_PARALLELISM = 4

KEYS_SUFFIX = ".keys"
KVS_SUFFIX = ".kvs"

SAMPLED = "sampled"
SKIPPED = "skipped"
FAILED = "failed"


class KeyDecodeError(ValueError):
    def __init__(self, path: str, line_number: int, line: str):
        super().__init__(f"{path}:{line_number}: cannot decode key {line!r} as hex")
        self.path = path
        self.line_number = line_number


@dataclass
class StoreOutcome:
    store: str
    status: str
    keys: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED


@dataclass
class SamplingReport:
    outcomes: Dict[str, StoreOutcome] = field(default_factory=dict)

    def add(self, outcome: StoreOutcome):
        self.outcomes[outcome.store] = outcome

    @property
    def failed(self) -> List[str]:
        return [name for name, o in self.outcomes.items() if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


def format_sample_lines(key: bytes, replica_versions: List[List[object]]) -> str:
    """
    One line per replica, in replica order:
      <offset> : <hexKey>\t<version>\t<version>\t...\n
    """
    hex_key = key.hex()
    lines = []
    for offset, versions in enumerate(replica_versions):
        line = f"{offset} : {hex_key}\t"
        line += "".join(f"{v}\t" for v in versions)
        lines.append(line + "\n")
    return "".join(lines)


def read_keys(path: str) -> Iterator[Tuple[int, bytes]]:
    """Yield (line_number, key) for each non-blank hex line of a key file."""
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            text = line.strip()
            if not text:
                continue
            # fromhex would silently skip inner whitespace
            if any(c not in string.hexdigits for c in text):
                raise KeyDecodeError(path, line_number, text)
            try:
                yield line_number, bytes.fromhex(text)
            except ValueError:
                raise KeyDecodeError(path, line_number, text) from None


class KeyVersionSampler:
    """
    Samples key versions for every store of a cluster.

    `resolver` maps (schema, key) to the ordered replica node ids and
    `fetcher` reads one node's versions for a key (see
    kvcluster.routing.TopologyResolver and kvsampler.admin_client.AdminClient).
    All stores share one bound of `parallelism` keys in flight.
    """

    def __init__(
        self,
        resolver,
        fetcher,
        in_dir: str,
        out_dir: str,
        parallelism: int = KEY_PARALLELISM,
        key_timeout: Optional[float] = None,
    ):
        if parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {parallelism}")
        self.resolver = resolver
        self.fetcher = fetcher
        self.in_dir = in_dir
        self.out_dir = out_dir
        self.parallelism = parallelism
        self.key_timeout = key_timeout
        self._slots = asyncio.Semaphore(parallelism)

    def keys_path(self, store_name: str) -> str:
        return os.path.join(self.in_dir, store_name + KEYS_SUFFIX)

    def kvs_path(self, store_name: str) -> str:
        return os.path.join(self.out_dir, store_name + KVS_SUFFIX)

    # ---------------------------------------------------------
    # Per-key task
    # ---------------------------------------------------------

    async def sample_key(self, schema: StoreSchema, key: bytes) -> str:
        """Fetch versions of `key` from each replica in order and format them."""
        replicas = self.resolver.resolve_replicas(schema, key)
        replica_versions = []
        for node_id in replicas:
            versions = await self.fetcher.get_node_key(schema.name, node_id, key)
            replica_versions.append(list(versions))
        return format_sample_lines(key, replica_versions)

    async def _bounded_sample_key(self, schema: StoreSchema, key: bytes) -> str:
        async with self._slots:
            if self.key_timeout is None:
                return await self.sample_key(schema, key)
            return await asyncio.wait_for(self.sample_key(schema, key), self.key_timeout)

    # ---------------------------------------------------------
    # Per-store orchestration
    # ---------------------------------------------------------

    async def sample_store(self, schema: StoreSchema) -> StoreOutcome:
        store_name = schema.name
        keys_file = self.keys_path(store_name)
        kvs_file = self.kvs_path(store_name)

        if os.path.exists(kvs_file):
            sampler_logger.info(
                f"Key-version file {kvs_file} exists, so will not sample keys from {keys_file}."
            )
            return StoreOutcome(store_name, SKIPPED)

        if not os.path.exists(keys_file):
            sampler_logger.error(f"Keys file {keys_file} does not exist!")
            return StoreOutcome(store_name, FAILED, error=f"keys file {keys_file} does not exist")

        started = time.monotonic()
        pending: Deque[asyncio.Task] = deque()
        tmp_file = kvs_file + ".tmp"
        sampled = 0
        try:
            for _, key in read_keys(keys_file):
                pending.append(asyncio.create_task(self._bounded_sample_key(schema, key)))

            with open(tmp_file, "w") as kv_writer:
                while pending:
                    # oldest first, regardless of completion order
                    block = await pending.popleft()
                    kv_writer.write(block)
                    sampled += 1
            os.replace(tmp_file, kvs_file)
        except asyncio.CancelledError:
            sampler_logger.error(f"Interrupted while sampling store {store_name}")
            await self._abort(store_name, pending, tmp_file)
            raise
        except Exception as e:
            cause = self._describe(e)
            sampler_logger.error(f"Failed to sample store {store_name}: {cause}")
            sampler_logger.debug("sampling failure", exc_info=True)
            await self._abort(store_name, pending, tmp_file)
            return StoreOutcome(store_name, FAILED, keys=sampled, error=cause)

        sampler_logger.info(
            f"Sampled {sampled} keys of store {store_name} into {kvs_file} "
            f"in {time.monotonic() - started:.2f}s"
        )
        return StoreOutcome(store_name, SAMPLED, keys=sampled)

    async def _abort(self, store_name: str, pending: Deque[asyncio.Task], tmp_file: str):
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        pending.clear()
        try:
            os.remove(tmp_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            sampler_logger.error(
                f"Could not remove partial output {tmp_file} for store {store_name}: {e}"
            )

    def _describe(self, e: BaseException) -> str:
        if self.key_timeout is not None and isinstance(e, asyncio.TimeoutError) and not str(e):
            return f"timed out sampling a key after {self.key_timeout}s"
        return f"{type(e).__name__}: {e}"

    # ---------------------------------------------------------
    # All stores
    # ---------------------------------------------------------

    async def sample_stores(self, schemas: List[StoreSchema], fail_fast: bool = False) -> SamplingReport:
        report = SamplingReport()
        for schema in schemas:
            outcome = await self.sample_store(schema)
            report.add(outcome)
            if not outcome.ok and fail_fast:
                sampler_logger.error(f"Stopping after failed store {schema.name}")
                break
        return report
