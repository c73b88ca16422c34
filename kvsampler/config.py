# kvsampler/config.py

import argparse
from dataclasses import asdict, dataclass
from typing import List, Optional

from kvsampler.admin_client import RPC_TIMEOUT
from kvsampler.sampler import KEY_PARALLELISM


# -----------------------------------------------------
# Parse CLI arguments
# -----------------------------------------------------

def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvsampler",
        description="Sample the versions of a set of keys on every replica, "
                    "one output file per store.",
    )

    parser.add_argument("--url", type=str, required=True, metavar="bootstrap-url",
                        help="[REQUIRED] bootstrap URL, e.g. http://127.0.0.1:60000")
    parser.add_argument("--in-dir", type=str, required=True, metavar="inputDirectory",
                        help="[REQUIRED] directory holding the key files (named \"{storeName}.keys\")")
    parser.add_argument("--out-dir", type=str, required=True, metavar="outputDirectory",
                        help="[REQUIRED] directory for the key-version files (named \"{storeName}.kvs\")")

    # Optional overrides
    parser.add_argument("--parallelism", type=int, default=KEY_PARALLELISM, metavar="keyParallelism",
                        help=f"number of keys to sample in parallel [default: {KEY_PARALLELISM}]")
    parser.add_argument("--key-timeout", type=float, default=None, metavar="seconds",
                        help="give up on a key (and fail its store) after this many seconds")
    parser.add_argument("--request-timeout", type=float, default=RPC_TIMEOUT, metavar="seconds",
                        help=f"timeout of each remote call [default: {RPC_TIMEOUT}]")
    parser.add_argument("--fail-fast", action="store_true",
                        help="stop at the first store that fails instead of trying all stores")

    parser.add_argument("--debug", action="store_true")

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = get_parser()
    args = parser.parse_args(argv)
    if args.parallelism < 1:
        parser.error(f"--parallelism must be at least 1, got {args.parallelism}")
    if args.key_timeout is not None and args.key_timeout <= 0:
        parser.error("--key-timeout must be positive")
    if args.request_timeout <= 0:
        parser.error("--request-timeout must be positive")
    return args


# -----------------------------------------------------
# Resolved configuration
# -----------------------------------------------------

@dataclass(frozen=True)
class SamplerConfig:

    url: str
    in_dir: str
    out_dir: str
    parallelism: int = KEY_PARALLELISM
    key_timeout: Optional[float] = None
    request_timeout: float = RPC_TIMEOUT
    fail_fast: bool = False
    debug: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "SamplerConfig":
        return cls(
            url=args.url,
            in_dir=args.in_dir,
            out_dir=args.out_dir,
            parallelism=args.parallelism,
            key_timeout=args.key_timeout,
            request_timeout=args.request_timeout,
            fail_fast=args.fail_fast,
            debug=args.debug,
        )

    def dump_config(self) -> dict:
        return asdict(self)
