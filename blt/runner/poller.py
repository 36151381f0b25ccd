"""Background polling of archive jobs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from blt.archive import ArchiveClient, ArchiveError, TransientJobError
from blt.config.settings import PollerConfig
from blt.processor import JobObserved, SubmissionRequested
from blt.registry import StudyRegistry
from blt.runner.executor import StageExecutor
from blt.utils.logging import get_logger, request_context, set_stage

logger = get_logger("runner.poller")


@dataclass
class PollCycleResult:
    """What one polling cycle did."""

    checked: int = 0
    advanced: int = 0
    skipped_in_flight: int = 0
    errors: int = 0
    pruned: int = 0


class JobPoller:
    """
    Periodically checks every outstanding job and advances its request.

    Requests are polled concurrently, bounded by an asyncio.Semaphore. A
    request whose previous check is still running is skipped, so there is
    at most one outstanding status check per request.
    """

    def __init__(
        self,
        client: ArchiveClient,
        registry: StudyRegistry,
        executor: StageExecutor,
        config: Optional[PollerConfig] = None,
        retention: Optional[timedelta] = None,
    ) -> None:
        """
        Initialize the poller.

        Args:
            client: Archive client
            registry: Registry holding the requests
            executor: Applies observations and submits follow-up jobs
            config: Interval and parallelism
            retention: Age after which finished entries are pruned (None keeps them)
        """
        self.client = client
        self.registry = registry
        self.executor = executor
        self.config = config or PollerConfig()
        self.retention = retention

        self.cycles = 0
        self._in_flight: set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start polling in a background task on the running loop."""
        if self.running:
            return self._task

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever(), name="blt-job-poller")
        logger.info(
            "poller_started",
            interval_seconds=self.config.interval_seconds,
            parallelism=self.config.parallelism,
        )
        return self._task

    async def stop(self) -> None:
        """Stop polling and wait for the current cycle to end."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.config.interval_seconds + 30)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("poller_cancelled")
        finally:
            self._task = None

        logger.info("poller_stopped", cycles=self.cycles)

    async def run_forever(self) -> None:
        """Poll until stop() is called."""
        stop_event = self._stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                # One broken cycle must not end polling for every request
                logger.exception("poll_cycle_failed", error=str(e))

            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.config.interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> PollCycleResult:
        """Run a single polling cycle over the registry."""
        result = PollCycleResult()
        candidates = []
        for state in self.registry.list_all():
            if not state.needs_attention():
                continue
            if state.request_id in self._in_flight:
                result.skipped_in_flight += 1
                continue
            candidates.append(state.request_id)

        semaphore = asyncio.Semaphore(self.config.parallelism)
        outcomes = await asyncio.gather(
            *(self._poll_guarded(request_id, semaphore) for request_id in candidates),
            return_exceptions=True,
        )

        for request_id, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                result.errors += 1
                logger.error(
                    "poll_request_failed",
                    request_id=request_id,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            elif outcome:
                result.advanced += 1
            result.checked += 1

        if self.retention is not None:
            result.pruned = len(self.registry.prune(self.retention))

        self.cycles += 1
        if result.checked:
            logger.debug(
                "poll_cycle_completed",
                cycle=self.cycles,
                checked=result.checked,
                advanced=result.advanced,
                errors=result.errors,
            )
        return result

    async def _poll_guarded(self, request_id: str, semaphore: asyncio.Semaphore) -> bool:
        if request_id in self._in_flight:
            return False

        self._in_flight.add(request_id)
        try:
            async with semaphore:
                return await self.poll_request(request_id)
        finally:
            self._in_flight.discard(request_id)

    async def poll_request(self, request_id: str) -> bool:
        """
        Check one request's active job, or retry its pending submission.

        Returns:
            True if the request's state changed
        """
        with request_context(request_id):
            async with self.registry.transaction(request_id) as txn:
                state = txn.state
                if not state.needs_attention():
                    return False
                set_stage(state.stage.value)

                if not state.stage.is_polling():
                    transition = await self.executor.apply(txn, SubmissionRequested())
                    return transition.changed

                job_id = state.active_job_id
                try:
                    report = await self.client.get_job_status(job_id)
                except TransientJobError as e:
                    logger.warning(
                        "job_status_transient_error",
                        request_id=request_id,
                        job_id=job_id,
                        error=str(e),
                    )
                    return False
                except ArchiveError as e:
                    logger.error(
                        "job_status_check_failed",
                        request_id=request_id,
                        job_id=job_id,
                        error=str(e),
                    )
                    return False

                transition = await self.executor.apply(txn, JobObserved(report))
                return transition.changed
