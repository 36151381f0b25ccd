"""FSM-based BLT request processing.

Every accepted request moves through well-defined stages:

    Queried -> RetrieveScheduled -> Retrieving
            -> AnonymizeScheduled -> Anonymizing
            -> PushScheduled -> Pushing -> Done

A ``*Scheduled`` stage means the job must be submitted; the matching
``-ing`` stage means the job ID is recorded and only polling remains.
Any failed job or refused submission ends the request in Failed.
"""

from blt.processor.machine import (
    Event,
    JobObserved,
    PipelineStateMachine,
    SideEffect,
    SubmissionAcknowledged,
    SubmissionDeferred,
    SubmissionRejected,
    SubmissionRequested,
    Transition,
)
from blt.processor.states import (
    TRANSITIONS,
    BltStudyState,
    FailureReason,
    PipelineStep,
    Stage,
    TransitionError,
)

__all__ = [
    # States
    "Stage",
    "PipelineStep",
    "BltStudyState",
    "FailureReason",
    "TransitionError",
    "TRANSITIONS",
    # Machine
    "PipelineStateMachine",
    "Transition",
    "SideEffect",
    "Event",
    "SubmissionRequested",
    "SubmissionAcknowledged",
    "SubmissionDeferred",
    "SubmissionRejected",
    "JobObserved",
]
