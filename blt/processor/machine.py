"""Pure transition logic for the BLT pipeline.

``PipelineStateMachine.advance`` takes a request state and one event and
returns the next state plus at most one side effect (a job submission) for
the caller to execute. It performs no I/O and never mutates its input, so
every path through the pipeline can be exercised without an archive.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from blt.models import JobStatus, JobStatusReport
from blt.processor.states import (
    STAGE_STEPS,
    BltStudyState,
    FailureReason,
    Stage,
)


class SideEffect(Enum):
    """Job submissions requested by a transition."""

    SUBMIT_RETRIEVE = "submit_retrieve"
    SUBMIT_ANONYMIZE = "submit_anonymize"
    SUBMIT_PUSH = "submit_push"


@dataclass(frozen=True)
class SubmissionRequested:
    """Submit the current stage's job (first attempt or after a transient error)."""


@dataclass(frozen=True)
class SubmissionAcknowledged:
    """The archive accepted the submission and assigned a job ID."""

    job_id: str


@dataclass(frozen=True)
class SubmissionDeferred:
    """The submission failed transiently and will be attempted again."""

    detail: str


@dataclass(frozen=True)
class SubmissionRejected:
    """The archive refused the submission; the stage has failed."""

    detail: str


@dataclass(frozen=True)
class JobObserved:
    """A status report for a polled job."""

    report: JobStatusReport


Event = Union[
    SubmissionRequested,
    SubmissionAcknowledged,
    SubmissionDeferred,
    SubmissionRejected,
    JobObserved,
]


@dataclass(frozen=True)
class Transition:
    """Result of advancing a state by one event."""

    state: BltStudyState
    side_effect: Optional[SideEffect] = None

    # Set when the event did not apply to the state (stale or duplicate)
    ignored: Optional[str] = None

    changed: bool = False


@dataclass(frozen=True)
class _ScheduledStep:
    job_field: str
    running_stage: Stage
    side_effect: SideEffect


_SCHEDULED: dict[Stage, _ScheduledStep] = {
    Stage.RETRIEVE_SCHEDULED: _ScheduledStep(
        "retrieve_job_id", Stage.RETRIEVING, SideEffect.SUBMIT_RETRIEVE
    ),
    Stage.ANONYMIZE_SCHEDULED: _ScheduledStep(
        "anonymization_job_id", Stage.ANONYMIZING, SideEffect.SUBMIT_ANONYMIZE
    ),
    Stage.PUSH_SCHEDULED: _ScheduledStep(
        "push_job_id", Stage.PUSHING, SideEffect.SUBMIT_PUSH
    ),
}


class PipelineStateMachine:
    """
    Decides the next stage and action for a request.

    Stage order:
        Queried -> RetrieveScheduled -> Retrieving -> AnonymizeScheduled
        -> Anonymizing -> PushScheduled -> Pushing -> Done

    Any job failure or refused submission leads to Failed. Done and Failed
    accept no events.
    """

    def advance(
        self,
        state: BltStudyState,
        event: Event,
        now: Optional[datetime] = None,
    ) -> Transition:
        """
        Apply one event to a state.

        Args:
            state: Current request state (not modified)
            event: What happened
            now: Timestamp recorded in the history

        Returns:
            Transition with the new state and optional side effect
        """
        if state.stage.is_terminal():
            return Transition(state, ignored=f"request already {state.stage.value}")

        if isinstance(event, SubmissionRequested):
            return self._on_submission_requested(state, now)
        if isinstance(event, SubmissionAcknowledged):
            return self._on_acknowledged(state, event.job_id, now)
        if isinstance(event, SubmissionDeferred):
            return self._on_deferred(state)
        if isinstance(event, SubmissionRejected):
            return self._on_rejected(state, event.detail, now)
        if isinstance(event, JobObserved):
            return self._on_observed(state, event.report, now)

        raise TypeError(f"Unknown pipeline event: {event!r}")

    def _on_submission_requested(
        self, state: BltStudyState, now: Optional[datetime]
    ) -> Transition:
        if state.stage == Stage.QUERIED:
            new_state = state.copy()
            new_state.transition_to(Stage.RETRIEVE_SCHEDULED, now)
            return Transition(
                new_state, side_effect=SideEffect.SUBMIT_RETRIEVE, changed=True
            )

        step = _SCHEDULED.get(state.stage)
        if step is None:
            return Transition(
                state, ignored=f"nothing to submit in stage {state.stage.value}"
            )
        return Transition(state, side_effect=step.side_effect)

    def _on_acknowledged(
        self, state: BltStudyState, job_id: str, now: Optional[datetime]
    ) -> Transition:
        step = _SCHEDULED.get(state.stage)
        if step is None:
            return Transition(
                state,
                ignored=f"job {job_id} acknowledged in stage {state.stage.value}",
            )
        if getattr(state, step.job_field) is not None:
            return Transition(
                state, ignored=f"{step.job_field} already set, job {job_id} dropped"
            )

        new_state = state.copy()
        setattr(new_state, step.job_field, job_id)
        new_state.transition_to(step.running_stage, now)
        return Transition(new_state, changed=True)

    def _on_deferred(self, state: BltStudyState) -> Transition:
        if not (state.stage.is_scheduled() or state.stage == Stage.QUERIED):
            return Transition(
                state, ignored=f"no submission pending in stage {state.stage.value}"
            )
        new_state = state.copy()
        new_state.submission_attempts += 1
        return Transition(new_state, changed=True)

    def _on_rejected(
        self, state: BltStudyState, detail: str, now: Optional[datetime]
    ) -> Transition:
        if not state.stage.is_scheduled():
            return Transition(
                state, ignored=f"no submission pending in stage {state.stage.value}"
            )
        return self._fail(state, FailureReason(STAGE_STEPS[state.stage], detail), now)

    def _on_observed(
        self,
        state: BltStudyState,
        report: JobStatusReport,
        now: Optional[datetime],
    ) -> Transition:
        if not state.stage.is_polling():
            return Transition(
                state,
                ignored=f"job {report.job_id} observed in stage {state.stage.value}",
            )
        if report.job_id != state.active_job_id:
            return Transition(
                state,
                ignored=(
                    f"job {report.job_id} is not the active job "
                    f"{state.active_job_id} of stage {state.stage.value}"
                ),
            )

        if report.status == JobStatus.FAILURE:
            reason = FailureReason(
                step=STAGE_STEPS[state.stage],
                detail=report.detail or "job failed",
                job_id=report.job_id,
            )
            return self._fail(state, reason, now)

        if report.status != JobStatus.SUCCESS:
            # Pending, Running, Paused, Retry: wait for the next poll
            return Transition(state)

        new_state = state.copy()
        if state.stage == Stage.RETRIEVING:
            new_state.transition_to(Stage.ANONYMIZE_SCHEDULED, now)
            return Transition(
                new_state, side_effect=SideEffect.SUBMIT_ANONYMIZE, changed=True
            )

        if state.stage == Stage.ANONYMIZING:
            anonymized_id = report.resource_id()
            if anonymized_id is None:
                reason = FailureReason(
                    step=STAGE_STEPS[state.stage],
                    detail="job succeeded without reporting the anonymized study",
                    job_id=report.job_id,
                )
                return self._fail(state, reason, now)
            new_state.anonymized_study_id = anonymized_id
            new_state.transition_to(Stage.PUSH_SCHEDULED, now)
            return Transition(
                new_state, side_effect=SideEffect.SUBMIT_PUSH, changed=True
            )

        new_state.transition_to(Stage.DONE, now)
        return Transition(new_state, changed=True)

    def _fail(
        self,
        state: BltStudyState,
        reason: FailureReason,
        now: Optional[datetime],
    ) -> Transition:
        new_state = state.copy()
        new_state.failure_reason = reason
        new_state.transition_to(Stage.FAILED, now)
        return Transition(new_state, changed=True)
