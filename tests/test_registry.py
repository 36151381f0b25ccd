"""Tests for blt.registry: snapshots, transactions, persistence, retention."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from blt.models import StudyRef
from blt.processor import Stage
from blt.registry import StudyRegistry
from blt.utils.atomic import SnapshotError

from conftest import make_request

LONG_AGO = datetime(2020, 1, 1, tzinfo=timezone.utc)


def register(registry: StudyRegistry, accession_number: str = "ACC-001") -> str:
    study = StudyRef("query-1", "pacs", "1.2.3", accession_number)
    return registry.create(make_request(accession_number), study, "query-1")


def force_stage(stage: Stage, updated_at: datetime = LONG_AGO):
    def mutation(state):
        state.stage = stage
        state.updated_at = updated_at
    return mutation


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestReads:
    def test_create_and_get(self, registry):
        request_id = register(registry)
        state = registry.get(request_id)
        assert state.request_id == request_id
        assert state.stage == Stage.QUERIED
        assert state.query_id == "query-1"
        assert request_id in registry
        assert len(registry) == 1

    def test_ids_are_unique(self, registry):
        ids = {register(registry) for _ in range(50)}
        assert len(ids) == 50

    def test_get_unknown(self, registry):
        with pytest.raises(KeyError):
            registry.get("missing")

    def test_get_returns_copy(self, registry):
        request_id = register(registry)
        registry.get(request_id).stage = Stage.DONE
        assert registry.get(request_id).stage == Stage.QUERIED

    def test_list_all_is_a_snapshot(self, registry):
        register(registry, "ACC-1")
        register(registry, "ACC-2")
        seen = []
        for state in registry.list_all():
            seen.append(state.request_id)
            register(registry, "ACC-late")
        assert len(seen) == 2
        assert len(registry) == 4

    def test_find_by_accession_number(self, registry):
        first = register(registry, "ACC-1")
        register(registry, "ACC-2")
        assert [s.request_id for s in registry.find_by_accession_number("ACC-1")] == [first]

    def test_summary(self, registry):
        async def scenario():
            done = register(registry, "ACC-1")
            register(registry, "ACC-2")
            await registry.update(done, force_stage(Stage.DONE))
            await registry.abandon(done, "finished anyway")

        asyncio.run(scenario())
        assert registry.summary() == {"Done": 1, "Queried": 1, "Abandoned": 1}


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class TestTransactions:
    def test_uncommitted_changes_are_discarded(self, registry):
        request_id = register(registry)

        async def scenario():
            async with registry.transaction(request_id) as txn:
                txn.state.stage = Stage.RETRIEVING
                # readers never see the working copy
                assert registry.get(request_id).stage == Stage.QUERIED

        asyncio.run(scenario())
        assert registry.get(request_id).stage == Stage.QUERIED

    def test_commit_publishes(self, registry):
        request_id = register(registry)

        async def scenario():
            async with registry.transaction(request_id) as txn:
                txn.state.retrieve_job_id = "job-r"
                txn.commit()
                assert registry.get(request_id).retrieve_job_id == "job-r"
                assert txn.commits == 1

        asyncio.run(scenario())

    def test_transactions_are_exclusive(self, registry):
        request_id = register(registry)

        async def increment():
            async with registry.transaction(request_id) as txn:
                attempts = txn.state.submission_attempts
                await asyncio.sleep(0)
                txn.state.submission_attempts = attempts + 1
                txn.commit()

        async def scenario():
            await asyncio.gather(*(increment() for _ in range(25)))

        asyncio.run(scenario())
        assert registry.get(request_id).submission_attempts == 25

    def test_unrelated_entries_do_not_block(self, registry):
        first = register(registry, "ACC-1")
        second = register(registry, "ACC-2")

        async def scenario():
            async with registry.transaction(first):
                assert registry.is_locked(first)
                state = await asyncio.wait_for(
                    registry.update(second, force_stage(Stage.DONE)), timeout=1
                )
                assert state.stage == Stage.DONE

        asyncio.run(scenario())

    def test_transaction_unknown(self, registry):
        async def scenario():
            async with registry.transaction("missing"):
                pass

        with pytest.raises(KeyError):
            asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Abandon and prune
# ---------------------------------------------------------------------------

class TestAbandon:
    def test_abandon_keeps_stage(self, registry):
        request_id = register(registry)

        state = asyncio.run(registry.abandon(request_id, "operator request"))

        assert state.is_abandoned
        assert state.abandon_reason == "operator request"
        assert state.stage == Stage.QUERIED
        assert not registry.get(request_id).needs_attention()
        assert registry.get(request_id).to_status_dict()["Abandoned"] is True

    def test_abandon_twice_keeps_first_reason(self, registry):
        request_id = register(registry)

        async def scenario():
            await registry.abandon(request_id, "first")
            return await registry.abandon(request_id, "second")

        assert asyncio.run(scenario()).abandon_reason == "first"

    def test_abandon_unknown(self, registry):
        with pytest.raises(KeyError):
            asyncio.run(registry.abandon("missing", "nope"))


class TestPrune:
    def test_only_old_finished_entries_removed(self, registry):
        now = datetime(2026, 10, 1, tzinfo=timezone.utc)
        active = register(registry, "ACC-active")
        done_old = register(registry, "ACC-done-old")
        failed_recent = register(registry, "ACC-failed-recent")
        abandoned_old = register(registry, "ACC-abandoned")

        async def scenario():
            await registry.update(active, force_stage(Stage.RETRIEVING))
            await registry.update(done_old, force_stage(Stage.DONE))
            await registry.update(
                failed_recent, force_stage(Stage.FAILED, now - timedelta(minutes=5))
            )
            await registry.abandon(abandoned_old, "stuck")
            await registry.update(abandoned_old, force_stage(Stage.RETRIEVING))

        asyncio.run(scenario())
        removed = registry.prune(timedelta(hours=1), now=now)

        assert sorted(removed) == sorted([done_old, abandoned_old])
        assert active in registry
        assert failed_recent in registry

    def test_locked_entry_is_kept(self, registry):
        request_id = register(registry)

        async def scenario():
            await registry.update(request_id, force_stage(Stage.DONE))
            async with registry.transaction(request_id):
                return registry.prune(timedelta(0))

        assert asyncio.run(scenario()) == []
        assert request_id in registry


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        state_file = tmp_path / "state" / "registry.json"
        registry = StudyRegistry(state_file)
        request_id = register(registry)

        async def scenario():
            async with registry.transaction(request_id) as txn:
                txn.state.transition_to(Stage.RETRIEVE_SCHEDULED)
                txn.state.transition_to(Stage.RETRIEVING)
                txn.state.retrieve_job_id = "job-r"
                txn.commit()

        asyncio.run(scenario())

        restored = StudyRegistry(state_file).get(request_id)
        assert restored.stage == Stage.RETRIEVING
        assert restored.retrieve_job_id == "job-r"
        assert restored.info == make_request()
        assert len(restored.history) == 2

    def test_file_written_on_create(self, tmp_path):
        state_file = tmp_path / "registry.json"
        registry = StudyRegistry(state_file)
        request_id = register(registry)

        data = json.loads(state_file.read_text())
        assert data["version"] == 1
        assert [entry["request_id"] for entry in data["requests"]] == [request_id]

    def test_invalid_entries_are_skipped(self, tmp_path):
        state_file = tmp_path / "registry.json"
        registry = StudyRegistry(state_file)
        request_id = register(registry)

        data = json.loads(state_file.read_text())
        data["requests"].append({"request_id": "broken"})
        state_file.write_text(json.dumps(data))

        restored = StudyRegistry(state_file)
        assert len(restored) == 1
        assert request_id in restored

    def test_corrupt_file_starts_empty(self, tmp_path):
        state_file = tmp_path / "registry.json"
        state_file.write_text("{not json")
        assert len(StudyRegistry(state_file)) == 0

    def test_corrupt_file_falls_back_to_backup(self, tmp_path):
        state_file = tmp_path / "registry.json"
        registry = StudyRegistry(state_file)
        first = register(registry, "ACC-1")
        register(registry, "ACC-2")

        state_file.write_text("{truncated")

        restored = StudyRegistry(state_file)
        # the backup holds the snapshot before the second request
        assert [s.request_id for s in restored.list_all()] == [first]

    def test_unwritable_state_file_registers_nothing(self, tmp_path):
        blocker = tmp_path / "state"
        blocker.write_text("a file where the directory should be")
        registry = StudyRegistry(blocker / "registry.json")

        with pytest.raises(SnapshotError):
            register(registry)

        assert len(registry) == 0
        assert list(registry.list_all()) == []
