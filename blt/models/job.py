"""Archive job status models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class JobStatus(Enum):
    """State of an asynchronous archive job as reported by Orthanc."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILURE = "Failure"
    PAUSED = "Paused"
    RETRY = "Retry"

    def is_final(self) -> bool:
        """Check if the job has finished, successfully or not."""
        return self in (JobStatus.SUCCESS, JobStatus.FAILURE)

    @classmethod
    def parse(cls, value: str) -> JobStatus:
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown job state: {value!r}") from None


@dataclass(frozen=True)
class JobStatusReport:
    """One observation of an archive job."""

    job_id: str
    status: JobStatus
    detail: str = ""
    content: dict[str, Any] = field(default_factory=dict)

    def resource_id(self) -> Optional[str]:
        """ID of the resource a finished modification job produced."""
        if self.content.get("ID"):
            return str(self.content["ID"])
        path = self.content.get("Path")
        if path:
            return str(path).rstrip("/").rsplit("/", 1)[-1]
        return None

    @classmethod
    def from_orthanc(cls, data: dict[str, Any]) -> JobStatusReport:
        """Create from an Orthanc ``GET /jobs/{id}`` body."""
        status = JobStatus.parse(data.get("State", ""))
        detail = ""
        if status == JobStatus.FAILURE:
            parts = [
                str(data[key])
                for key in ("ErrorDescription", "ErrorDetails")
                if data.get(key)
            ]
            detail = ": ".join(parts) or f"error code {data.get('ErrorCode')}"
        return cls(
            job_id=data["ID"],
            status=status,
            detail=detail,
            content=data.get("Content") or {},
        )
