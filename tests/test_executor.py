"""Tests for blt.runner.executor: job submission and series filtering."""

import asyncio

import pytest

from blt.config import ServiceConfig
from blt.config.settings import AnonymizationConfig
from blt.processor import (
    SideEffect,
    Stage,
    SubmissionAcknowledged,
    SubmissionDeferred,
    SubmissionRejected,
)
from blt.runner import SeriesFilterError, StageExecutor, build_pipeline

from conftest import FakeArchiveClient, drive, make_request


class TestExecute:
    def _state(self, pipeline, archive):
        archive.add_study("ACC-001")
        return asyncio.run(pipeline.handler.submit(make_request()))

    def test_acknowledged(self, archive, pipeline):
        result = self._state(pipeline, archive)
        state = pipeline.registry.get(result.request_id)

        event = asyncio.run(pipeline.executor.execute(SideEffect.SUBMIT_RETRIEVE, state))

        assert isinstance(event, SubmissionAcknowledged)
        assert event.job_id.startswith("retrieve-job-")

    def test_transient_failure_defers(self, archive, pipeline):
        result = self._state(pipeline, archive)
        state = pipeline.registry.get(result.request_id)
        archive.transient_submissions["retrieve"] = 1

        event = asyncio.run(pipeline.executor.execute(SideEffect.SUBMIT_RETRIEVE, state))

        assert isinstance(event, SubmissionDeferred)
        assert "timed out" in event.detail

    def test_refusal_rejects(self, archive, pipeline):
        result = self._state(pipeline, archive)
        state = pipeline.registry.get(result.request_id)
        archive.rejected_steps.add("retrieve")

        event = asyncio.run(pipeline.executor.execute(SideEffect.SUBMIT_RETRIEVE, state))

        assert isinstance(event, SubmissionRejected)
        assert "HTTP 400" in event.detail

    def test_push_without_anonymized_copy_rejects(self, archive, pipeline):
        result = self._state(pipeline, archive)
        state = pipeline.registry.get(result.request_id)

        event = asyncio.run(pipeline.executor.execute(SideEffect.SUBMIT_PUSH, state))

        assert isinstance(event, SubmissionRejected)
        assert archive.submitted("push") == []


class TestCommitOrdering:
    def test_stage_committed_before_submission(self, registry):
        seen = []

        class RecordingArchive(FakeArchiveClient):
            async def _submit(self, step, resource):
                # committed stage of every request at submission time
                seen.append((step, [s.stage for s in registry.list_all()]))
                return await super()._submit(step, resource)

        archive = RecordingArchive()
        archive.add_study("ACC-001")

        pipeline = build_pipeline(ServiceConfig(), client=archive, registry=registry)

        async def scenario():
            await pipeline.handler.submit(make_request())
            await drive(pipeline)

        asyncio.run(scenario())

        assert seen == [
            ("retrieve", [Stage.RETRIEVE_SCHEDULED]),
            ("anonymize", [Stage.ANONYMIZE_SCHEDULED]),
            ("push", [Stage.PUSH_SCHEDULED]),
        ]


class TestFilterSeries:
    def test_excluded_modalities_deleted(self, archive):
        uid = archive.add_study("ACC-001", modalities=("CT", "US", "us", "SR"))
        executor = StageExecutor(archive)

        deleted = asyncio.run(executor.filter_series(f"local-{uid}"))

        assert deleted == 2
        remaining = [s.modality for s in archive.series[f"local-{uid}"]]
        assert remaining == ["CT", "SR"]

    def test_nothing_to_delete(self, archive):
        uid = archive.add_study("ACC-001", modalities=("MR",))
        assert asyncio.run(StageExecutor(archive).filter_series(f"local-{uid}")) == 0

    def test_configured_modalities(self, archive):
        uid = archive.add_study("ACC-001", modalities=("CT", "SR"))
        executor = StageExecutor(archive, AnonymizationConfig(excluded_modalities=["SR"]))
        assert asyncio.run(executor.filter_series(f"local-{uid}")) == 1

    def test_all_series_deleted(self, archive):
        uid = archive.add_study("ACC-001", modalities=("US", "US"))
        with pytest.raises(SeriesFilterError, match="all series"):
            asyncio.run(StageExecutor(archive).filter_series(f"local-{uid}"))

    def test_empty_study(self, archive):
        with pytest.raises(SeriesFilterError, match="no series"):
            asyncio.run(StageExecutor(archive).filter_series("local-missing"))

    def test_ultrasound_only_study_fails_anonymize(self, archive, pipeline):
        archive.add_study("ACC-001", modalities=("US",))

        async def scenario():
            result = await pipeline.handler.submit(make_request())
            await drive(pipeline)
            return pipeline.registry.get(result.request_id)

        state = asyncio.run(scenario())

        assert state.stage == Stage.FAILED
        assert state.failure_reason.step.value == "anonymize"
        assert "all series" in state.failure_reason.detail
        assert state.anonymization_job_id is None
        assert archive.submitted("anonymize") == []
