"""Boundary component accepting BLT requests and serving status reads."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from blt.archive import ArchiveClient
from blt.models import BltStudyRequest
from blt.processor import BltStudyState, SubmissionRequested
from blt.registry import StudyRegistry
from blt.runner.executor import StageExecutor
from blt.utils.logging import get_logger, request_context

logger = get_logger("runner.handler")


@dataclass(frozen=True)
class SubmissionResult:
    """What the caller of a new request gets back."""

    request_id: str
    query_id: str
    # None when the retrieve submission must be retried by the poller
    job_id: Optional[str]

    def to_dict(self) -> dict:
        return {
            "RequestID": self.request_id,
            "QueryID": self.query_id,
            "JobID": self.job_id,
        }


class RequestHandler:
    """Accepts new requests and answers status queries."""

    def __init__(
        self,
        client: ArchiveClient,
        registry: StudyRegistry,
        executor: StageExecutor,
    ) -> None:
        self.client = client
        self.registry = registry
        self.executor = executor

    async def submit(self, request: BltStudyRequest) -> SubmissionResult:
        """
        Start the pipeline for a request.

        The study lookup happens before anything is registered, so a
        rejected request leaves no state behind.

        Raises:
            RequestRejected: No study, or more than one, matches
            TransientJobError: The archive could not be reached
            ArchiveError: The archive refused the lookup
        """
        accession_number = request.search_accession_number
        study = await self.client.find_study(accession_number)

        in_flight = [
            s.request_id
            for s in self.registry.find_by_accession_number(accession_number)
            if not s.stage.is_terminal() and not s.is_abandoned
        ]
        if in_flight:
            logger.warning(
                "study_requested_twice",
                accession_number=accession_number,
                in_flight=in_flight,
            )

        request_id = self.registry.create(request, study, study.query_id)
        with request_context(request_id, "Queried"):
            async with self.registry.transaction(request_id) as txn:
                await self.executor.apply(txn, SubmissionRequested())
                state = txn.state

        return SubmissionResult(
            request_id=request_id,
            query_id=state.query_id,
            job_id=state.retrieve_job_id,
        )

    def list_studies(self) -> list[BltStudyState]:
        return list(self.registry.list_all())

    def get_study(self, request_id: str) -> BltStudyState:
        """
        Raises:
            KeyError: If the request is unknown
        """
        return self.registry.get(request_id)

    async def abandon(self, request_id: str, reason: str) -> BltStudyState:
        return await self.registry.abandon(request_id, reason)

    def summary(self) -> dict[str, int]:
        return self.registry.summary()
