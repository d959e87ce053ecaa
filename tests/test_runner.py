"""End-to-end remediation runs over an in-memory bucket."""

from datetime import datetime, timedelta, timezone

import pytest

from rekey.config import LookupConfig, RemediationConfig, StoreConfig
from rekey.errors import LookupLoadError, StoreSetupError
from rekey.mapping import ReversedIdMapper
from rekey.mapping.reversed_id import verify_key
from rekey.models import RenameOutcome
from rekey.runner import Remediation, build_lookup_table, run_remediation

KEYS = [
    "101062745/v00001/content/data/400094393.jp2",
    "12887301/v1/content/data/400171130.lfs",
    "12887302/v1/content/data/400171131.lfs",
    "1037/8821/12887301/v1/content/data/400171129.lfs",
    "42/v1/thumb.png",
    "legacy/readme.txt",
]


@pytest.fixture
def seeded(state):
    for key in KEYS:
        state.put(key, size=10)
    return state


class TestRunRemediation:
    """Tests for a full run with the reversed-id strategy."""

    async def test_remediates_bucket(self, config, seeded, store_factory, audit):
        report = await run_remediation(config, store_factory=store_factory, audit=audit)

        assert report.objects_processed == len(KEYS)
        assert report.count(RenameOutcome.SUCCESS) == 4
        assert report.count(RenameOutcome.ALREADY_CORRECT) == 1
        assert report.count(RenameOutcome.UNMAPPABLE) == 1
        assert report.objects_after == len(KEYS)
        assert report.tasks.submitted == 3
        assert report.tasks.completed == 3
        assert "5472/6010/101062745/v00001/content/data/400094393.jp2" in seeded.objects
        assert "legacy/readme.txt" in seeded.objects
        assert all(verify_key(k) for k in seeded.objects if k != "legacy/readme.txt")
        assert len(audit.records) == len(KEYS)

    async def test_second_pass_is_a_no_op(self, config, seeded, store_factory, audit):
        """Re-running over a remediated bucket changes nothing."""
        await run_remediation(config, store_factory=store_factory, audit=audit)
        mutations = seeded.mutations
        audit.records.clear()

        report = await run_remediation(config, store_factory=store_factory, audit=audit)

        assert seeded.mutations == mutations
        assert report.count(RenameOutcome.SUCCESS) == 0
        assert report.count(RenameOutcome.ALREADY_CORRECT) == len(KEYS) - 1
        assert report.count(RenameOutcome.UNMAPPABLE) == 1

    async def test_every_store_is_closed(self, config, seeded, store_factory, audit):
        await run_remediation(config, store_factory=store_factory, audit=audit)
        assert store_factory.created
        assert all(store.opened and store.closed for store in store_factory.created)

    async def test_verify_only(self, config, seeded, store_factory, audit):
        config = config.model_copy(
            update={"remediation": RemediationConfig(parallelism=2, verify_only=True)}
        )

        report = await run_remediation(config, store_factory=store_factory, audit=audit)

        assert seeded.mutations == 0
        assert report.count(RenameOutcome.ALREADY_CORRECT) == 1
        assert report.count(RenameOutcome.SKIPPED) == len(KEYS) - 1

    async def test_objects_modified_during_run(self, config, state, store_factory, audit):
        state.put("1/a", last_modified=datetime.now(timezone.utc) + timedelta(hours=1))
        state.put("2/b", last_modified=datetime.now(timezone.utc) - timedelta(hours=1))

        report = await run_remediation(config, store_factory=store_factory, audit=audit)

        assert report.count(RenameOutcome.CONCURRENT_MODIFICATION) == 1
        assert report.count(RenameOutcome.SUCCESS) == 1
        assert "1/a" in state.objects

    async def test_guard_disabled(self, config, state, store_factory, audit):
        config = config.model_copy(
            update={"remediation": RemediationConfig(parallelism=2, guard_modified=False)}
        )
        state.put("1/a", last_modified=datetime.now(timezone.utc) + timedelta(hours=1))

        report = await run_remediation(config, store_factory=store_factory, audit=audit)

        assert report.count(RenameOutcome.SUCCESS) == 1

    async def test_empty_bucket(self, config, store_factory, audit):
        report = await run_remediation(config, store_factory=store_factory, audit=audit)
        assert report.objects_processed == 0
        assert report.tasks.submitted == 0

    async def test_failures_do_not_abort_the_run(self, config, seeded, store_factory, audit):
        seeded.fail_copy.add("12887301/v1/content/data/400171130.lfs")
        seeded.corrupt.add("12887302/v1/content/data/400171131.lfs")

        report = await run_remediation(config, store_factory=store_factory, audit=audit)

        assert report.count(RenameOutcome.CLIENT_ERROR) == 1
        assert report.count(RenameOutcome.ETAG_MISMATCH) == 1
        assert report.count(RenameOutcome.SUCCESS) == 2
        assert "12887301/v1/content/data/400171130.lfs" in seeded.objects
        assert "12887302/v1/content/data/400171131.lfs" in seeded.objects

    async def test_setup_error_aborts(self, config, audit):
        class Unreachable:
            async def init(self, verify=True):
                raise StoreSetupError("delivery", "NoSuchBucket")

        with pytest.raises(StoreSetupError):
            await run_remediation(config, store_factory=Unreachable, audit=audit)
        assert audit.records == []

    async def test_request_stop_before_run(self, config, seeded, store_factory, audit):
        remediation = Remediation(config, ReversedIdMapper(), store_factory=store_factory, audit=audit)
        remediation.request_stop()

        report = await remediation.run()

        assert report.interrupted
        assert report.tasks.submitted == 0
        assert seeded.mutations == 0

    async def test_memory_backend_from_config(self, config, audit):
        """Without a store factory the configured backend is used."""
        config = config.model_copy(
            update={"store": StoreConfig(backend="memory", bucket="delivery", max_keys=2)}
        )
        remediation = Remediation(config, ReversedIdMapper(), audit=audit)
        bucket = remediation.store_factory()
        for key in KEYS:
            bucket.state.put(key, size=10)

        report = await remediation.run()

        assert report.count(RenameOutcome.SUCCESS) == 4
        assert report.objects_after == len(KEYS)
        assert "5472/6010/101062745/v00001/content/data/400094393.jp2" in bucket.state.objects


class TestLookupStrategy:
    """Tests for a full run with the table-driven strategy."""

    @pytest.fixture
    def lookup_config(self, config, tmp_path):
        dump = tmp_path / "dump.txt"
        dump.write_text(
            "id : legacy name:new\n"
            "----\n"
            "1 : 400171120 first:12887296\n"
            "2 : 400171121 second:12887297\n"
        )
        return config.model_copy(
            update={
                "remediation": RemediationConfig(strategy="lookup", parallelism=2),
                "lookup": LookupConfig(path=str(dump)),
            }
        )

    async def test_lookup_run(self, lookup_config, state, store_factory, audit):
        state.put("0400171120/v1/content/data/400171120.png")
        state.put("400171121/v1/content/data/400171121.png")
        state.put("999/v1/content/data/999.png")

        report = await run_remediation(lookup_config, store_factory=store_factory, audit=audit)

        assert report.count(RenameOutcome.SUCCESS) == 2
        assert report.count(RenameOutcome.UNMAPPABLE) == 1
        assert set(state.objects) == {
            "12887296/v1/content/data/400171120.png",
            "12887297/v1/content/data/400171121.png",
            "999/v1/content/data/999.png",
        }

    async def test_second_pass_is_a_no_op(self, lookup_config, state, store_factory, audit):
        """Re-running over a remediated bucket renames nothing."""
        state.put("0400171120/v1/content/data/400171120.png")
        state.put("400171121/v1/content/data/400171121.png")
        state.put("999/v1/content/data/999.png")
        await run_remediation(lookup_config, store_factory=store_factory, audit=audit)
        mutations = state.mutations
        remediated = set(state.objects)

        report = await run_remediation(lookup_config, store_factory=store_factory, audit=audit)

        assert report.count(RenameOutcome.ALREADY_CORRECT) == 2
        assert report.count(RenameOutcome.UNMAPPABLE) == 1
        assert state.mutations == mutations
        assert set(state.objects) == remediated

    def test_build_lookup_table(self, lookup_config):
        table = build_lookup_table(lookup_config)
        assert len(table) == 2

    def test_no_table_for_reversed_id(self, config):
        assert build_lookup_table(config) is None

    async def test_missing_lookup_file(self, lookup_config, tmp_path, store_factory, audit):
        config = lookup_config.model_copy(
            update={"lookup": LookupConfig(path=str(tmp_path / "missing.txt"))}
        )
        with pytest.raises(LookupLoadError):
            await run_remediation(config, store_factory=store_factory, audit=audit)
