"""Pipeline stage definitions and per-request state."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from blt.models import BltStudyRequest, StudyRef


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(Enum):
    """Stages of one BLT request."""

    # Initial state, study found on the source modality
    QUERIED = "Queried"

    # Retrieve from source PACS
    RETRIEVE_SCHEDULED = "RetrieveScheduled"
    RETRIEVING = "Retrieving"

    # Anonymization inside the archive
    ANONYMIZE_SCHEDULED = "AnonymizeScheduled"
    ANONYMIZING = "Anonymizing"

    # Push to destination peer
    PUSH_SCHEDULED = "PushScheduled"
    PUSHING = "Pushing"

    # Terminal states
    DONE = "Done"
    FAILED = "Failed"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (Stage.DONE, Stage.FAILED)

    def is_polling(self) -> bool:
        """Check if an archive job is running and must be polled."""
        return self in (Stage.RETRIEVING, Stage.ANONYMIZING, Stage.PUSHING)

    def is_scheduled(self) -> bool:
        """Check if a job submission is due but not yet acknowledged."""
        return self in (
            Stage.RETRIEVE_SCHEDULED,
            Stage.ANONYMIZE_SCHEDULED,
            Stage.PUSH_SCHEDULED,
        )


class PipelineStep(Enum):
    """The job-backed steps of the pipeline, used in failure reports."""

    RETRIEVE = "retrieve"
    ANONYMIZE = "anonymize"
    PUSH = "push"


# Valid state transitions
TRANSITIONS: dict[Stage, set[Stage]] = {
    Stage.QUERIED: {Stage.RETRIEVE_SCHEDULED},
    Stage.RETRIEVE_SCHEDULED: {Stage.RETRIEVING, Stage.FAILED},
    Stage.RETRIEVING: {Stage.ANONYMIZE_SCHEDULED, Stage.FAILED},
    Stage.ANONYMIZE_SCHEDULED: {Stage.ANONYMIZING, Stage.FAILED},
    Stage.ANONYMIZING: {Stage.PUSH_SCHEDULED, Stage.FAILED},
    Stage.PUSH_SCHEDULED: {Stage.PUSHING, Stage.FAILED},
    Stage.PUSHING: {Stage.DONE, Stage.FAILED},
    # Terminal states have no transitions
    Stage.DONE: set(),
    Stage.FAILED: set(),
}

# Step each scheduled/polling stage belongs to
STAGE_STEPS: dict[Stage, PipelineStep] = {
    Stage.RETRIEVE_SCHEDULED: PipelineStep.RETRIEVE,
    Stage.RETRIEVING: PipelineStep.RETRIEVE,
    Stage.ANONYMIZE_SCHEDULED: PipelineStep.ANONYMIZE,
    Stage.ANONYMIZING: PipelineStep.ANONYMIZE,
    Stage.PUSH_SCHEDULED: PipelineStep.PUSH,
    Stage.PUSHING: PipelineStep.PUSH,
}


class TransitionError(Exception):
    """Invalid stage transition."""

    def __init__(self, from_stage: Stage, to_stage: Stage) -> None:
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(
            f"Invalid transition: {from_stage.value} -> {to_stage.value}"
        )


@dataclass(frozen=True)
class FailureReason:
    """Why a request ended in the Failed stage."""

    step: PipelineStep
    detail: str
    job_id: Optional[str] = None

    def __str__(self) -> str:
        if self.job_id:
            return f"{self.step.value} job {self.job_id} failed: {self.detail}"
        return f"{self.step.value} failed: {self.detail}"

    def to_dict(self) -> dict:
        return {
            "Stage": self.step.value,
            "Detail": self.detail,
            "JobID": self.job_id,
            "Message": str(self),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FailureReason:
        return cls(
            step=PipelineStep(data["Stage"]),
            detail=data["Detail"],
            job_id=data.get("JobID"),
        )


@dataclass
class BltStudyState:
    """Complete state of one accepted BLT request."""

    request_id: str
    info: BltStudyRequest
    study: StudyRef
    query_id: str
    stage: Stage = Stage.QUERIED

    # Set once each, in pipeline order
    retrieve_job_id: Optional[str] = None
    anonymization_job_id: Optional[str] = None
    push_job_id: Optional[str] = None

    # Archive ID of the anonymized copy, target of the push
    anonymized_study_id: Optional[str] = None

    failure_reason: Optional[FailureReason] = None

    # Transient submission failures for the current stage
    submission_attempts: int = 0

    abandoned_at: Optional[datetime] = None
    abandon_reason: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # History of (stage left, timestamp)
    history: list[tuple[str, str]] = field(default_factory=list)

    @property
    def is_abandoned(self) -> bool:
        return self.abandoned_at is not None

    @property
    def active_job_id(self) -> Optional[str]:
        """The job being polled in the current stage, if any."""
        if self.stage == Stage.RETRIEVING:
            return self.retrieve_job_id
        if self.stage == Stage.ANONYMIZING:
            return self.anonymization_job_id
        if self.stage == Stage.PUSHING:
            return self.push_job_id
        return None

    def needs_attention(self) -> bool:
        """Check if the poller has work to do for this request."""
        if self.is_abandoned or self.stage.is_terminal():
            return False
        return self.stage.is_polling() or self.stage.is_scheduled() or (
            self.stage == Stage.QUERIED
        )

    def can_transition_to(self, new_stage: Stage) -> bool:
        """Check if transition to new_stage is valid."""
        return new_stage in TRANSITIONS.get(self.stage, set())

    def transition_to(self, new_stage: Stage, now: Optional[datetime] = None) -> None:
        """
        Move to a new stage.

        Raises:
            TransitionError: If the transition is invalid
        """
        if not self.can_transition_to(new_stage):
            raise TransitionError(self.stage, new_stage)

        now = now or utcnow()
        self.history.append((self.stage.value, now.isoformat()))
        self.stage = new_stage
        self.updated_at = now
        self.submission_attempts = 0

    def copy(self) -> BltStudyState:
        """Copy that shares no mutable containers with this state."""
        return replace(self, history=list(self.history))

    def to_status_dict(self) -> dict[str, Any]:
        """Wire representation served to polling clients."""
        return {
            "RequestID": self.request_id,
            "Info": self.info.to_dict(),
            "Stage": self.stage.value,
            "QueryID": self.query_id,
            "RetrieveJobID": self.retrieve_job_id,
            "AnonymizationJobID": self.anonymization_job_id,
            "PushJobID": self.push_job_id,
            "FailureReason": (
                self.failure_reason.to_dict() if self.failure_reason else None
            ),
            "Abandoned": self.is_abandoned,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for persistence."""
        return {
            "request_id": self.request_id,
            "info": self.info.to_dict(),
            "study": self.study.to_dict(),
            "query_id": self.query_id,
            "stage": self.stage.value,
            "retrieve_job_id": self.retrieve_job_id,
            "anonymization_job_id": self.anonymization_job_id,
            "push_job_id": self.push_job_id,
            "anonymized_study_id": self.anonymized_study_id,
            "failure_reason": (
                self.failure_reason.to_dict() if self.failure_reason else None
            ),
            "submission_attempts": self.submission_attempts,
            "abandoned_at": self.abandoned_at.isoformat() if self.abandoned_at else None,
            "abandon_reason": self.abandon_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BltStudyState:
        """Create from dictionary."""
        return cls(
            request_id=data["request_id"],
            info=BltStudyRequest.from_dict(data["info"]),
            study=StudyRef.from_dict(data["study"]),
            query_id=data["query_id"],
            stage=Stage(data["stage"]),
            retrieve_job_id=data.get("retrieve_job_id"),
            anonymization_job_id=data.get("anonymization_job_id"),
            push_job_id=data.get("push_job_id"),
            anonymized_study_id=data.get("anonymized_study_id"),
            failure_reason=(
                FailureReason.from_dict(data["failure_reason"])
                if data.get("failure_reason")
                else None
            ),
            submission_attempts=data.get("submission_attempts", 0),
            abandoned_at=(
                datetime.fromisoformat(data["abandoned_at"])
                if data.get("abandoned_at")
                else None
            ),
            abandon_reason=data.get("abandon_reason"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            history=[tuple(item) for item in data.get("history", [])],
        )
