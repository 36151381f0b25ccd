"""Tests for blt.runner.handler: accepting and rejecting requests."""

import asyncio

import pytest

from blt.archive import AmbiguousStudyMatch, StudyNotFound, TransientJobError
from blt.processor import PipelineStep, Stage

from conftest import drive, make_request


class TestSubmit:
    def test_accepted_request_is_retrieving(self, archive, pipeline):
        uid = archive.add_study("ACC-001")

        result = asyncio.run(pipeline.handler.submit(make_request()))

        state = pipeline.registry.get(result.request_id)
        assert state.stage == Stage.RETRIEVING
        assert result.job_id == state.retrieve_job_id
        assert result.query_id == state.query_id
        assert state.study.study_instance_uid == uid
        assert archive.submitted("retrieve") == [uid]

    def test_result_wire_names(self, archive, pipeline):
        archive.add_study("ACC-001")
        result = asyncio.run(pipeline.handler.submit(make_request()))
        assert set(result.to_dict()) == {"RequestID", "QueryID", "JobID"}

    def test_not_found_creates_nothing(self, archive, pipeline):
        with pytest.raises(StudyNotFound):
            asyncio.run(pipeline.handler.submit(make_request("ACC-404")))

        assert len(pipeline.registry) == 0
        assert archive.submitted("retrieve") == []

    def test_ambiguous_creates_nothing(self, archive, pipeline):
        archive.add_study("ACC-001")
        archive.add_study("ACC-001")

        with pytest.raises(AmbiguousStudyMatch) as excinfo:
            asyncio.run(pipeline.handler.submit(make_request()))

        assert excinfo.value.count == 2
        assert len(pipeline.registry) == 0
        assert archive.submitted("retrieve") == []

    def test_unreachable_archive_creates_nothing(self, archive, pipeline):
        archive.unreachable = True

        with pytest.raises(TransientJobError):
            asyncio.run(pipeline.handler.submit(make_request()))

        assert len(pipeline.registry) == 0

    def test_transient_retrieve_submission_is_retried(self, archive, pipeline):
        archive.add_study("ACC-001")
        archive.transient_submissions["retrieve"] = 2

        async def scenario():
            result = await pipeline.handler.submit(make_request())
            after_submit = pipeline.registry.get(result.request_id)
            await pipeline.poller.poll_once()
            after_first_poll = pipeline.registry.get(result.request_id)
            await pipeline.poller.poll_once()
            return result, after_submit, after_first_poll, pipeline.registry.get(result.request_id)

        result, after_submit, after_first_poll, final = asyncio.run(scenario())

        assert result.job_id is None
        assert after_submit.stage == Stage.RETRIEVE_SCHEDULED
        assert after_submit.submission_attempts == 1
        assert after_first_poll.stage == Stage.RETRIEVE_SCHEDULED
        assert after_first_poll.submission_attempts == 2
        assert final.stage in (Stage.RETRIEVING, Stage.ANONYMIZE_SCHEDULED, Stage.ANONYMIZING)
        assert final.retrieve_job_id is not None
        assert len(archive.submitted("retrieve")) == 3

    def test_refused_retrieve_submission_fails(self, archive, pipeline):
        archive.add_study("ACC-001")
        archive.rejected_steps.add("retrieve")

        result = asyncio.run(pipeline.handler.submit(make_request()))

        state = pipeline.registry.get(result.request_id)
        assert result.job_id is None
        assert state.stage == Stage.FAILED
        assert state.failure_reason.step == PipelineStep.RETRIEVE

    def test_duplicate_accession_number_is_accepted(self, archive, pipeline):
        archive.add_study("ACC-001")

        async def scenario():
            first = await pipeline.handler.submit(make_request())
            second = await pipeline.handler.submit(make_request())
            return first, second

        first, second = asyncio.run(scenario())

        assert first.request_id != second.request_id
        assert len(pipeline.registry) == 2
        assert len(archive.submitted("retrieve")) == 2


class TestReads:
    def test_list_and_get(self, archive, pipeline):
        archive.add_study("ACC-1")
        archive.add_study("ACC-2")

        async def scenario():
            await pipeline.handler.submit(make_request("ACC-1"))
            return await pipeline.handler.submit(make_request("ACC-2"))

        second = asyncio.run(scenario())

        states = pipeline.handler.list_studies()
        assert len(states) == 2
        assert pipeline.handler.get_study(second.request_id).info.search_accession_number == "ACC-2"

    def test_get_unknown(self, pipeline):
        with pytest.raises(KeyError):
            pipeline.handler.get_study("missing")

    def test_abandon_stops_polling(self, archive, pipeline):
        archive.add_study("ACC-001")
        archive.running_polls = 100

        async def scenario():
            result = await pipeline.handler.submit(make_request())
            await pipeline.handler.abandon(result.request_id, "operator")
            await pipeline.poller.poll_once()
            return result

        result = asyncio.run(scenario())

        state = pipeline.handler.get_study(result.request_id)
        assert state.stage == Stage.RETRIEVING
        assert state.is_abandoned
        assert not [name for name, _ in archive.calls if name == "get_job_status"]
        assert pipeline.handler.summary()["Abandoned"] == 1

    def test_abandoned_requests_do_not_block_resubmission(self, archive, pipeline):
        archive.add_study("ACC-001")

        async def scenario():
            first = await pipeline.handler.submit(make_request())
            await pipeline.handler.abandon(first.request_id, "stuck")
            second = await pipeline.handler.submit(make_request())
            await drive(pipeline)
            return first, second

        first, second = asyncio.run(scenario())

        assert pipeline.registry.get(second.request_id).stage == Stage.DONE
        assert pipeline.registry.get(first.request_id).stage == Stage.RETRIEVING
