"""
Tests for the sampling pipeline: per-key formatting, per-store
orchestration and the iteration over stores.
"""

import asyncio

import pytest

from kvcluster.metadata import StoreSchema
from kvsampler.sampler import (
    FAILED,
    SAMPLED,
    SKIPPED,
    KeyDecodeError,
    KeyVersionSampler,
    format_sample_lines,
    read_keys,
)

from fakes import FakeFetcher, FakeResolver, write_keys

USERS = StoreSchema(name="users", replication_factor=2)


@pytest.fixture
def dirs(tmp_path):
    in_dir = tmp_path / "in"
    out_dir = tmp_path / "out"
    in_dir.mkdir()
    out_dir.mkdir()
    return in_dir, out_dir


def run_store(resolver, fetcher, dirs, schema=USERS, **kwargs):
    in_dir, out_dir = dirs

    async def go():
        sampler = KeyVersionSampler(resolver, fetcher, str(in_dir), str(out_dir), **kwargs)
        return await sampler.sample_store(schema)

    return asyncio.run(go())


def run_stores(resolver, fetcher, dirs, schemas, fail_fast=False):
    in_dir, out_dir = dirs

    async def go():
        sampler = KeyVersionSampler(resolver, fetcher, str(in_dir), str(out_dir))
        return await sampler.sample_stores(schemas, fail_fast=fail_fast)

    return asyncio.run(go())


class TestFormatting:

    def test_one_line_per_replica(self):
        block = format_sample_lines(b"\xa1\xb2", [["v1", "v2"], []])
        assert block == "0 : a1b2\tv1\tv2\t\n1 : a1b2\t\n"

    def test_sample_key_is_repeatable(self):
        resolver = FakeResolver({b"\x01": [4, 2, 9]})
        fetcher = FakeFetcher(responses={(2, b"\x01"): ["a", "b"], (9, b"\x01"): []})

        async def go():
            sampler = KeyVersionSampler(resolver, fetcher, "in", "out")
            return [await sampler.sample_key(USERS, b"\x01") for _ in range(2)]

        first, second = asyncio.run(go())
        assert first == second
        assert first == "0 : 01\tv1\t\n1 : 01\ta\tb\t\n2 : 01\t\n"

    def test_replicas_fetched_in_replica_order(self):
        resolver = FakeResolver({b"\x01": [7, 1, 3]})
        fetcher = FakeFetcher()

        async def go():
            sampler = KeyVersionSampler(resolver, fetcher, "in", "out")
            await sampler.sample_key(USERS, b"\x01")

        asyncio.run(go())
        assert [node for _, node, _ in fetcher.calls] == [7, 1, 3]


class TestReadKeys:

    def test_skips_blank_lines_and_strips(self, tmp_path):
        path = tmp_path / "s.keys"
        path.write_text("a1b2\n\n  C3D4 \n")
        assert list(read_keys(str(path))) == [(1, b"\xa1\xb2"), (3, b"\xc3\xd4")]

    def test_bad_hex_reports_line(self, tmp_path):
        path = tmp_path / "s.keys"
        path.write_text("a1b2\nnothex\n")
        with pytest.raises(KeyDecodeError) as exc:
            list(read_keys(str(path)))
        assert exc.value.line_number == 2

    @pytest.mark.parametrize("line", ["a1 b2", "c3\td4", "0x01", "abc"])
    def test_inner_whitespace_and_odd_input_rejected(self, tmp_path, line):
        path = tmp_path / "s.keys"
        path.write_text("00\n" + line + "\n")
        with pytest.raises(KeyDecodeError) as exc:
            list(read_keys(str(path)))
        assert exc.value.line_number == 2


class TestSampleStore:

    def test_users_scenario(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["a1b2", "c3d4"])
        resolver = FakeResolver({b"\xa1\xb2": [3, 7], b"\xc3\xd4": [7, 1]})
        fetcher = FakeFetcher()

        outcome = run_store(resolver, fetcher, dirs)

        assert outcome.ok and outcome.status == SAMPLED and outcome.keys == 2
        assert (out_dir / "users.kvs").read_text() == (
            "0 : a1b2\tv1\t\n"
            "1 : a1b2\tv1\t\n"
            "0 : c3d4\tv1\t\n"
            "1 : c3d4\tv1\t\n"
        )
        assert not (out_dir / "users.kvs.tmp").exists()

    def test_output_follows_input_order_not_completion_order(self, dirs):
        in_dir, out_dir = dirs
        keys = [bytes([i]) for i in range(10)]
        write_keys(in_dir, "users", [k.hex() for k in keys])
        # later keys resolve faster than earlier ones
        delays = {k: (10 - i) * 0.01 for i, k in enumerate(keys)}
        resolver = FakeResolver({}, default=[0])
        fetcher = FakeFetcher(delays=delays)

        outcome = run_store(resolver, fetcher, dirs, parallelism=10)

        assert outcome.ok
        assert fetcher.completed != keys
        lines = (out_dir / "users.kvs").read_text().splitlines()
        assert lines == [f"0 : {k.hex()}\tv1\t" for k in keys]

    def test_every_replica_gets_a_line(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["0a"])
        schema = StoreSchema(name="users", replication_factor=3)
        resolver = FakeResolver({b"\x0a": [5, 6, 7]})
        fetcher = FakeFetcher(responses={(5, b"\x0a"): [], (7, b"\x0a"): []})

        outcome = run_store(resolver, fetcher, dirs, schema=schema)

        assert outcome.ok
        lines = (out_dir / "users.kvs").read_text().splitlines()
        assert [line.split(" : ")[0] for line in lines] == ["0", "1", "2"]
        assert lines[0] == "0 : 0a\t"
        assert lines[1] == "1 : 0a\tv1\t"

    def test_existing_output_is_left_untouched(self, dirs):
        in_dir, out_dir = dirs
        existing = out_dir / "users.kvs"
        existing.write_bytes(b"previous run\n")
        fetcher = FakeFetcher()

        # no keys file either: the resume check comes first
        outcome = run_store(FakeResolver({}), fetcher, dirs)

        assert outcome.ok and outcome.status == SKIPPED
        assert existing.read_bytes() == b"previous run\n"
        assert fetcher.calls == []

    def test_missing_keys_file_fails(self, dirs):
        _, out_dir = dirs
        outcome = run_store(FakeResolver({}), FakeFetcher(), dirs)

        assert not outcome.ok and outcome.status == FAILED
        assert "does not exist" in outcome.error
        assert not (out_dir / "users.kvs").exists()

    def test_undecodable_key_fails_store(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["a1b2", "xyz"])
        outcome = run_store(FakeResolver({}), FakeFetcher(), dirs)

        assert outcome.status == FAILED
        assert "KeyDecodeError" in outcome.error
        assert not (out_dir / "users.kvs").exists()
        assert not (out_dir / "users.kvs.tmp").exists()

    def test_fetch_failure_leaves_no_output(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["01", "02", "03"])
        fetcher = FakeFetcher(fail_on=[("users", b"\x02")])

        outcome = run_store(FakeResolver({}), fetcher, dirs)

        assert outcome.status == FAILED
        assert "ConnectError" in outcome.error
        assert list(out_dir.iterdir()) == []

    def test_key_with_inner_whitespace_fails_store(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["a1 b2", "c3\td4"])
        fetcher = FakeFetcher()

        outcome = run_store(FakeResolver({}), fetcher, dirs)

        assert outcome.status == FAILED
        assert "KeyDecodeError" in outcome.error
        assert fetcher.calls == []
        assert list(out_dir.iterdir()) == []

    def test_interrupted_store_leaves_no_output(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["01", "02", "03"])
        fetcher = FakeFetcher(delays={b"\x02": 5.0})

        async def go():
            sampler = KeyVersionSampler(FakeResolver({}), fetcher, str(in_dir), str(out_dir))
            task = asyncio.create_task(sampler.sample_store(USERS))
            # let the first key finish while the second one is still slow
            while b"\x01" not in fetcher.completed:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(go())
        assert not (out_dir / "users.kvs").exists()
        assert not (out_dir / "users.kvs.tmp").exists()
        assert fetcher.in_flight == 0

    @pytest.mark.parametrize("error,expected", [
        (TimeoutError("socket read timed out"), "TimeoutError: socket read timed out"),
        (TimeoutError(), "TimeoutError: "),
    ])
    def test_fetcher_timeout_without_key_timeout_keeps_its_own_text(self, dirs, error, expected):
        in_dir, _ = dirs
        write_keys(in_dir, "users", ["01"])
        fetcher = FakeFetcher(fail_on=[("users", b"\x01")], fail_with=error)

        outcome = run_store(FakeResolver({}), fetcher, dirs)

        assert outcome.status == FAILED
        assert outcome.error == expected
        assert "timed out sampling" not in outcome.error

    def test_key_timeout_fails_store(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["01", "02"])
        fetcher = FakeFetcher(delays={b"\x02": 5.0})

        outcome = run_store(FakeResolver({}), fetcher, dirs, key_timeout=0.05)

        assert outcome.status == FAILED
        assert "timed out" in outcome.error
        assert list(out_dir.iterdir()) == []

    def test_parallelism_bounds_keys_in_flight(self, dirs):
        in_dir, _ = dirs
        keys = [bytes([i]) for i in range(8)]
        write_keys(in_dir, "users", [k.hex() for k in keys])
        fetcher = FakeFetcher(delays={k: 0.01 for k in keys})

        outcome = run_store(FakeResolver({}, default=[0]), fetcher, dirs, parallelism=2)

        assert outcome.ok
        assert fetcher.max_in_flight == 2

    def test_empty_keys_file_produces_empty_output(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", [])
        outcome = run_store(FakeResolver({}), FakeFetcher(), dirs)

        assert outcome.ok and outcome.keys == 0
        assert (out_dir / "users.kvs").read_text() == ""

    def test_rejects_zero_parallelism(self):
        with pytest.raises(ValueError):
            KeyVersionSampler(FakeResolver({}), FakeFetcher(), "in", "out", parallelism=0)


class TestSampleStores:

    def test_failure_in_one_store_does_not_affect_another(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "broken", ["01", "02"])
        write_keys(in_dir, "healthy", ["01", "02"])
        fetcher = FakeFetcher(fail_on=[("broken", b"\x01")])
        schemas = [StoreSchema("broken", 2), StoreSchema("healthy", 2)]

        report = run_stores(FakeResolver({}), fetcher, dirs, schemas)

        assert not report.ok
        assert report.failed == ["broken"]
        assert report.outcomes["healthy"].status == SAMPLED
        assert not (out_dir / "broken.kvs").exists()
        assert (out_dir / "healthy.kvs").read_text().count("\n") == 4

    def test_fail_fast_stops_at_first_failure(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "healthy", ["01"])
        schemas = [StoreSchema("missing", 2), StoreSchema("healthy", 2)]

        report = run_stores(FakeResolver({}), FakeFetcher(), dirs, schemas, fail_fast=True)

        assert report.failed == ["missing"]
        assert "healthy" not in report.outcomes
        assert not (out_dir / "healthy.kvs").exists()

    def test_rerun_skips_sampled_stores(self, dirs):
        in_dir, out_dir = dirs
        write_keys(in_dir, "users", ["01"])
        run_stores(FakeResolver({}), FakeFetcher(), dirs, [USERS])

        fetcher = FakeFetcher(default=["changed"])
        report = run_stores(FakeResolver({}), fetcher, dirs, [USERS])

        assert report.ok
        assert report.outcomes["users"].status == SKIPPED
        assert fetcher.calls == []
        assert "changed" not in (out_dir / "users.kvs").read_text()
