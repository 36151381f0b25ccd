"""Errors raised by the archive client."""

from __future__ import annotations


class ArchiveError(Exception):
    """Base class for archive communication errors."""

    pass


class RequestRejected(ArchiveError):
    """The study lookup did not resolve to exactly one study."""

    def __init__(self, accession_number: str, message: str) -> None:
        self.accession_number = accession_number
        super().__init__(message)


class StudyNotFound(RequestRejected):
    def __init__(self, accession_number: str) -> None:
        super().__init__(
            accession_number,
            f"No study found for AccessionNumber {accession_number!r}",
        )


class AmbiguousStudyMatch(RequestRejected):
    def __init__(self, accession_number: str, count: int) -> None:
        self.count = count
        super().__init__(
            accession_number,
            f"{count} studies match AccessionNumber {accession_number!r}",
        )


class TransientJobError(ArchiveError):
    """Timeout, network failure or server error; retried on the next poll."""

    pass


class ArchiveRequestError(ArchiveError):
    """The archive refused a call (HTTP 4xx)."""

    def __init__(self, method: str, path: str, status_code: int, body: str = "") -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body
        message = f"{method} {path} returned HTTP {status_code}"
        if body:
            message = f"{message}: {body}"
        super().__init__(message)


class ArchiveConfigurationError(ArchiveError):
    """The archive lacks something the pipeline needs (modality, peer)."""

    pass
