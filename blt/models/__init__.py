"""Data models for the BLT study transfer pipeline."""

from blt.models.job import JobStatus, JobStatusReport
from blt.models.study import (
    BltStudyRequest,
    InvalidRequestError,
    SeriesInfo,
    StudyRef,
    normalize_dicom_date,
)

__all__ = [
    # Requests
    "BltStudyRequest",
    "InvalidRequestError",
    "StudyRef",
    "SeriesInfo",
    "normalize_dicom_date",
    # Jobs
    "JobStatus",
    "JobStatusReport",
]
