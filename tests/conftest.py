"""Shared fixtures: an in-memory archive and request builders."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Optional

import pytest

from blt.archive import (
    AmbiguousStudyMatch,
    ArchiveClient,
    ArchiveRequestError,
    StudyNotFound,
    TransientJobError,
)
from blt.config import ServiceConfig
from blt.models import BltStudyRequest, JobStatus, JobStatusReport, SeriesInfo, StudyRef
from blt.registry import StudyRegistry
from blt.runner import build_pipeline


class FakeArchiveClient(ArchiveClient):
    """
    Archive double keeping studies and jobs in memory.

    Jobs report Running for ``running_polls`` checks and then finish, with
    Failure for every step listed in ``failing_steps``.
    """

    def __init__(self, running_polls: int = 0) -> None:
        self.running_polls = running_polls
        self.studies: dict[str, list[str]] = {}
        self.series: dict[str, list[SeriesInfo]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}

        self.failing_steps: set[str] = set()
        self.rejected_steps: set[str] = set()
        self.transient_submissions: dict[str, int] = {}
        self.transient_status_checks = 0
        self.unreachable = False

        self.calls: list[tuple[str, Any]] = []
        self.outstanding_checks: dict[str, int] = {}
        self.max_outstanding_checks = 0
        self._ids = itertools.count(1)

    def add_study(
        self,
        accession_number: str,
        modalities: tuple[str, ...] = ("CT",),
    ) -> str:
        uid = f"1.2.826.0.1.3680043.{next(self._ids)}"
        self.studies.setdefault(accession_number, []).append(uid)
        self.series[f"local-{uid}"] = [
            SeriesInfo(
                series_id=f"series-{uid}-{i}",
                modality=modality,
                series_instance_uid=f"{uid}.{i}",
            )
            for i, modality in enumerate(modalities)
        ]
        return uid

    def submitted(self, step: str) -> list[Any]:
        return [arg for name, arg in self.calls if name == f"submit_{step}"]

    async def find_study(self, accession_number: str) -> StudyRef:
        self.calls.append(("find_study", accession_number))
        if self.unreachable:
            raise TransientJobError("connection refused")

        matches = self.studies.get(accession_number, [])
        if not matches:
            raise StudyNotFound(accession_number)
        if len(matches) > 1:
            raise AmbiguousStudyMatch(accession_number, len(matches))

        return StudyRef(
            query_id=f"query-{next(self._ids)}",
            modality="pacs",
            study_instance_uid=matches[0],
            accession_number=accession_number,
        )

    async def _submit(self, step: str, resource: str) -> str:
        self.calls.append((f"submit_{step}", resource))

        remaining = self.transient_submissions.get(step, 0)
        if remaining:
            self.transient_submissions[step] = remaining - 1
            raise TransientJobError(f"{step} submission timed out")
        if step in self.rejected_steps:
            raise ArchiveRequestError("POST", f"/{step}", 400, "refused")

        job_id = f"{step}-job-{next(self._ids)}"
        self.jobs[job_id] = {"step": step, "resource": resource, "polls": 0}
        return job_id

    async def submit_retrieve(self, study: StudyRef) -> str:
        return await self._submit("retrieve", study.study_instance_uid)

    async def find_local_study(self, study_instance_uid: str) -> str:
        self.calls.append(("find_local_study", study_instance_uid))
        return f"local-{study_instance_uid}"

    async def list_series(self, study_id: str) -> list[SeriesInfo]:
        self.calls.append(("list_series", study_id))
        return list(self.series.get(study_id, []))

    async def delete_series(self, series_id: str) -> None:
        self.calls.append(("delete_series", series_id))
        for study_id, items in self.series.items():
            self.series[study_id] = [s for s in items if s.series_id != series_id]

    async def submit_anonymize(
        self,
        study_id: str,
        replacements: dict[str, str],
        keep: list[str],
    ) -> str:
        self.calls.append(("anonymize_replacements", dict(replacements)))
        return await self._submit("anonymize", study_id)

    async def submit_push(self, study_id: str, destination: Optional[str] = None) -> str:
        return await self._submit("push", study_id)

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        self.calls.append(("get_job_status", job_id))

        self.outstanding_checks[job_id] = self.outstanding_checks.get(job_id, 0) + 1
        self.max_outstanding_checks = max(
            self.max_outstanding_checks, self.outstanding_checks[job_id]
        )
        try:
            # Let other checks interleave
            await asyncio.sleep(0)

            if self.transient_status_checks:
                self.transient_status_checks -= 1
                raise TransientJobError("status check timed out")

            job = self.jobs.get(job_id)
            if job is None:
                return JobStatusReport(job_id, JobStatus.FAILURE, "job is unknown")

            job["polls"] += 1
            if job["polls"] <= self.running_polls:
                return JobStatusReport(job_id, JobStatus.RUNNING)
            if job["step"] in self.failing_steps:
                return JobStatusReport(job_id, JobStatus.FAILURE, "simulated failure")

            content = {}
            if job["step"] == "anonymize":
                content = {"ID": f"anon-{job['resource']}"}
            return JobStatusReport(job_id, JobStatus.SUCCESS, content=content)
        finally:
            self.outstanding_checks[job_id] -= 1


REQUEST_FIELDS = {
    "MRN": "MRN-001",
    "PatientName": "DOE^JANE",
    "PatientBirthDate": "19800102",
    "SearchAccessionNumber": "ACC-001",
    "AnonPatientID": "BLT-0001",
    "AnonPatientName": "BLT^SUBJECT1",
    "AnonAccessionNumber": "ANON-001",
    "AnonPatientBirthDate": "19800101",
}


def make_request(accession_number: str = "ACC-001", **overrides: str) -> BltStudyRequest:
    data = dict(REQUEST_FIELDS, SearchAccessionNumber=accession_number)
    data.update(overrides)
    return BltStudyRequest.from_dict(data)


async def drive(pipeline, max_cycles: int = 20) -> int:
    """Poll until no request needs attention; return the number of cycles."""
    for cycle in range(1, max_cycles + 1):
        await pipeline.poller.poll_once()
        if not any(s.needs_attention() for s in pipeline.registry.list_all()):
            return cycle
    raise AssertionError(f"requests still active after {max_cycles} cycles")


@pytest.fixture
def archive() -> FakeArchiveClient:
    return FakeArchiveClient()


@pytest.fixture
def registry() -> StudyRegistry:
    return StudyRegistry()


@pytest.fixture
def pipeline(archive, registry):
    return build_pipeline(ServiceConfig(), client=archive, registry=registry)
