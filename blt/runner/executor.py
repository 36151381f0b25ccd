"""Execution of pipeline side effects against the archive."""

from __future__ import annotations

from typing import Optional

from blt.archive import ArchiveClient, ArchiveError, TransientJobError
from blt.config.settings import AnonymizationConfig
from blt.processor import (
    BltStudyState,
    Event,
    PipelineStateMachine,
    SideEffect,
    SubmissionAcknowledged,
    SubmissionDeferred,
    SubmissionRejected,
    Transition,
)
from blt.registry import RegistryTransaction
from blt.utils.logging import get_logger, set_stage

logger = get_logger("runner.executor")


class SeriesFilterError(Exception):
    """Filtering left nothing worth anonymizing."""

    pass


class StageExecutor:
    """
    Applies events to a request inside its registry transaction.

    For each event: compute the transition, commit the new state, then
    carry out the side effect (a job submission) and feed the outcome back
    in as the next event. The scheduled stage is committed before the job
    is submitted, so a later stage is never submitted ahead of the commit
    of the earlier stage's success.
    """

    def __init__(
        self,
        client: ArchiveClient,
        anonymization: Optional[AnonymizationConfig] = None,
        machine: Optional[PipelineStateMachine] = None,
    ) -> None:
        self.client = client
        self.anonymization = anonymization or AnonymizationConfig()
        self.machine = machine or PipelineStateMachine()

    async def apply(self, txn: RegistryTransaction, event: Event) -> Transition:
        """
        Advance the transaction's state by one event and its follow-ups.

        Args:
            txn: Open registry transaction for the request
            event: Event to apply

        Returns:
            The last transition computed
        """
        old_stage = txn.state.stage
        transition = self.machine.advance(txn.state, event)

        if transition.ignored:
            # Stale or duplicate input; nothing is wrong with the system
            logger.warning(
                "event_ignored",
                request_id=txn.request_id,
                event=type(event).__name__,
                reason=transition.ignored,
            )
            return transition

        if transition.changed:
            txn.state = transition.state
            txn.commit()
            if txn.state.stage != old_stage:
                set_stage(txn.state.stage.value)
                self._log_transition(old_stage.value, txn.state)

        if transition.side_effect is None:
            return transition

        outcome = await self.execute(transition.side_effect, txn.state)
        return await self.apply(txn, outcome)

    def _log_transition(self, old_stage: str, state: BltStudyState) -> None:
        fields = {
            "request_id": state.request_id,
            "from_stage": old_stage,
            "to_stage": state.stage.value,
        }
        if state.failure_reason is not None:
            logger.error(
                "stage_transition",
                failure=str(state.failure_reason),
                **fields,
            )
        else:
            logger.info("stage_transition", **fields)

    async def execute(self, effect: SideEffect, state: BltStudyState) -> Event:
        """
        Submit the job a side effect asks for.

        Returns:
            SubmissionAcknowledged, SubmissionDeferred (transient failure)
            or SubmissionRejected (the archive refused)
        """
        try:
            if effect == SideEffect.SUBMIT_RETRIEVE:
                job_id = await self.client.submit_retrieve(state.study)
            elif effect == SideEffect.SUBMIT_ANONYMIZE:
                job_id = await self._submit_anonymize(state)
            else:
                job_id = await self._submit_push(state)

        except TransientJobError as e:
            logger.warning(
                "job_submission_deferred",
                request_id=state.request_id,
                effect=effect.value,
                attempt=state.submission_attempts + 1,
                error=str(e),
            )
            return SubmissionDeferred(str(e))

        except (ArchiveError, SeriesFilterError) as e:
            logger.error(
                "job_submission_rejected",
                request_id=state.request_id,
                effect=effect.value,
                error=str(e),
            )
            return SubmissionRejected(str(e))

        logger.info(
            "job_submitted",
            request_id=state.request_id,
            effect=effect.value,
            job_id=job_id,
        )
        return SubmissionAcknowledged(job_id)

    async def _submit_anonymize(self, state: BltStudyState) -> str:
        study_id = await self.client.find_local_study(state.study.study_instance_uid)
        await self.filter_series(study_id)
        return await self.client.submit_anonymize(
            study_id,
            state.info.anonymization_replacements(),
            self.anonymization.keep_tags,
        )

    async def _submit_push(self, state: BltStudyState) -> str:
        if state.anonymized_study_id is None:
            raise ArchiveError("no anonymized study to push")
        return await self.client.submit_push(state.anonymized_study_id)

    async def filter_series(self, study_id: str) -> int:
        """
        Delete series that must not leave the archive.

        Returns:
            Number of series deleted

        Raises:
            SeriesFilterError: If the study has no series left
        """
        excluded = {m.upper() for m in self.anonymization.excluded_modalities}
        series = await self.client.list_series(study_id)
        if not series:
            raise SeriesFilterError(f"study {study_id} has no series")

        deleted = 0
        for item in series:
            if item.modality.upper() not in excluded:
                continue
            await self.client.delete_series(item.series_id)
            deleted += 1
            logger.info(
                "series_deleted",
                study_id=study_id,
                series_instance_uid=item.series_instance_uid,
                series_description=item.series_description,
                modality=item.modality,
            )

        if deleted == len(series):
            raise SeriesFilterError(f"all series of study {study_id} were deleted")
        return deleted
