# kvsampler/cli.py
import asyncio
import logging
import os
import sys
from typing import List, Optional

import httpx

from kvcluster.metadata import MetadataError
from kvcluster.routing import TopologyResolver
from kvsampler.admin_client import AdminClient, AdminResponseError
from kvsampler.config import SamplerConfig, parse_args
from kvsampler.sampler import KeyVersionSampler, SamplingReport

cli_logger = logging.getLogger("kvsampler")


class BootstrapError(Exception):
    """The cluster could not be reached or described; nothing was sampled."""


async def run(config: SamplerConfig, client: Optional[httpx.AsyncClient] = None) -> SamplingReport:
    """Bootstrap from `config.url` and sample every store of the cluster."""
    async with AdminClient(config.url, timeout=config.request_timeout, client=client) as admin:
        try:
            topology, stores = await admin.bootstrap()
            resolver = TopologyResolver(topology)
            for schema in stores:
                resolver.check_schema(schema)
        except (httpx.HTTPError, AdminResponseError, MetadataError) as e:
            raise BootstrapError(f"{type(e).__name__}: {e}") from e

        sampler = KeyVersionSampler(
            resolver,
            admin,
            in_dir=config.in_dir,
            out_dir=config.out_dir,
            parallelism=config.parallelism,
            key_timeout=config.key_timeout,
        )
        return await sampler.sample_stores(stores, fail_fast=config.fail_fast)


def main(argv: Optional[List[str]] = None) -> int:
    config = SamplerConfig.from_args(parse_args(argv))
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    cli_logger.debug(f"config: {config.dump_config()}")

    os.makedirs(config.in_dir, exist_ok=True)
    os.makedirs(config.out_dir, exist_ok=True)

    try:
        report = asyncio.run(run(config))
    except BootstrapError as e:
        cli_logger.error(f"Exception during key-version sampling: {e}")
        return 1
    except KeyboardInterrupt:
        cli_logger.error("Key-version sampling interrupted")
        return 130

    for name, outcome in report.outcomes.items():
        if outcome.ok:
            cli_logger.info(f"store {name}: {outcome.status} ({outcome.keys} keys)")
        else:
            cli_logger.error(f"store {name}: failed: {outcome.error}")
    if not report.ok:
        cli_logger.error(
            f"Key-versions were not successfully sampled from stores: {', '.join(report.failed)}"
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
