"""Archive server client.

The pipeline never executes DICOM work itself. It submits jobs to the
archive (Orthanc) and polls them; this package is the only place that
speaks the archive's HTTP API.
"""

from blt.archive.client import ArchiveClient, OrthancArchiveClient
from blt.archive.errors import (
    AmbiguousStudyMatch,
    ArchiveConfigurationError,
    ArchiveError,
    ArchiveRequestError,
    RequestRejected,
    StudyNotFound,
    TransientJobError,
)

__all__ = [
    # Clients
    "ArchiveClient",
    "OrthancArchiveClient",
    # Errors
    "ArchiveError",
    "ArchiveConfigurationError",
    "ArchiveRequestError",
    "RequestRejected",
    "StudyNotFound",
    "AmbiguousStudyMatch",
    "TransientJobError",
]
