"""Typed client for the archive server's query, job and resource primitives."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from blt.archive.errors import (
    AmbiguousStudyMatch,
    ArchiveConfigurationError,
    ArchiveError,
    ArchiveRequestError,
    StudyNotFound,
    TransientJobError,
)
from blt.config.settings import ArchiveConfig
from blt.models import JobStatus, JobStatusReport, SeriesInfo, StudyRef
from blt.utils.logging import get_logger

logger = get_logger("archive.client")


class ArchiveClient(ABC):
    """
    Contract of the archive server as seen by the pipeline.

    Every method is a single external call (or a short fixed sequence of
    calls, for the study lookup). Nothing here retries: transient failures
    raise TransientJobError and the caller decides when to try again.
    """

    @abstractmethod
    async def find_study(self, accession_number: str) -> StudyRef:
        """
        Query the source modality for a study by AccessionNumber.

        Raises:
            StudyNotFound: No study matches
            AmbiguousStudyMatch: More than one study matches
        """
        ...

    @abstractmethod
    async def submit_retrieve(self, study: StudyRef) -> str:
        """Start a job pulling the study from the source modality."""
        ...

    @abstractmethod
    async def find_local_study(self, study_instance_uid: str) -> str:
        """Get the archive ID of a study already stored in the archive."""
        ...

    @abstractmethod
    async def list_series(self, study_id: str) -> list[SeriesInfo]:
        ...

    @abstractmethod
    async def delete_series(self, series_id: str) -> None:
        ...

    @abstractmethod
    async def submit_anonymize(
        self,
        study_id: str,
        replacements: dict[str, str],
        keep: list[str],
    ) -> str:
        """Start a job anonymizing a stored study."""
        ...

    @abstractmethod
    async def submit_push(self, study_id: str, destination: Optional[str] = None) -> str:
        """Start a job sending a stored study to a peer."""
        ...

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobStatusReport:
        ...

    async def ping(self) -> dict[str, Any]:
        """
        Check that the archive answers and has what the pipeline needs.

        Returns:
            Facts about the archive worth logging
        """
        return {}

    async def aclose(self) -> None:
        """Release network resources."""
        return None


class OrthancArchiveClient(ArchiveClient):
    """
    ArchiveClient backed by the Orthanc REST API.

    Ref: https://orthanc.uclouvain.be/api/
    """

    def __init__(
        self,
        config: ArchiveConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Archive connection settings
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.url,
            timeout=config.timeout,
            transport=transport,
        )
        self._source_modality = config.source_modality
        self._destination_peer = config.destination_peer

    async def __aenter__(self) -> OrthancArchiveClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one HTTP call and decode its JSON body.

        Raises:
            TransientJobError: Timeout, transport failure or HTTP 5xx
            ArchiveRequestError: HTTP 4xx
        """
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientJobError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientJobError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientJobError(
                f"{method} {path} returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise ArchiveRequestError(
                method, path, response.status_code, response.text[:500]
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransientJobError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _job_id(body: Any, path: str) -> str:
        if isinstance(body, dict) and isinstance(body.get("ID"), str):
            return body["ID"]
        raise ArchiveError(f"POST {path} did not return a job ID: {body!r}")

    async def source_modality(self) -> str:
        """Configured source modality, or the first one Orthanc knows."""
        if self._source_modality is None:
            modalities = await self._request("GET", "/modalities")
            if not modalities:
                raise ArchiveConfigurationError(
                    "Orthanc is not configured with any DICOM modalities"
                )
            self._source_modality = modalities[0]
            logger.info("source_modality_selected", modality=self._source_modality)
        return self._source_modality

    async def destination_peer(self) -> str:
        """Configured destination peer, or the first one Orthanc knows."""
        if self._destination_peer is None:
            peers = await self._request("GET", "/peers")
            if not peers:
                raise ArchiveConfigurationError(
                    "Orthanc is not configured with any peers"
                )
            self._destination_peer = peers[0]
            logger.info("destination_peer_selected", peer=self._destination_peer)
        return self._destination_peer

    async def ping(self) -> dict[str, Any]:
        system = await self._request("GET", "/system") or {}
        return {
            "name": system.get("Name", ""),
            "version": system.get("Version", ""),
            "source_modality": await self.source_modality(),
            "destination_peer": await self.destination_peer(),
        }

    async def find_study(self, accession_number: str) -> StudyRef:
        modality = await self.source_modality()
        path = f"/modalities/{modality}/query"
        body = await self._request("POST", path, json={
            "Level": "Study",
            "Query": {
                "AccessionNumber": accession_number,
                "StudyInstanceUID": "",
            },
        })
        if not isinstance(body, dict) or not body.get("ID"):
            raise ArchiveError(f"POST {path} did not return a query ID: {body!r}")
        query_id = str(body["ID"])

        answers = await self._request("GET", f"/queries/{query_id}/answers") or []
        logger.debug(
            "study_query_answered",
            query_id=query_id,
            accession_number=accession_number,
            answers=len(answers),
        )
        if len(answers) == 0:
            raise StudyNotFound(accession_number)
        if len(answers) > 1:
            raise AmbiguousStudyMatch(accession_number, len(answers))

        content = await self._request(
            "GET",
            f"/queries/{query_id}/answers/{answers[0]}/content",
            params={"simplify": ""},
        )
        study_instance_uid = (content or {}).get("StudyInstanceUID")
        if not study_instance_uid:
            raise ArchiveError(
                f"Query {query_id} answer has no StudyInstanceUID: {content!r}"
            )

        return StudyRef(
            query_id=query_id,
            modality=modality,
            study_instance_uid=study_instance_uid,
            accession_number=accession_number,
        )

    async def submit_retrieve(self, study: StudyRef) -> str:
        path = f"/queries/{study.query_id}/retrieve"
        body = await self._request("POST", path, json={"Asynchronous": True})
        return self._job_id(body, path)

    async def find_local_study(self, study_instance_uid: str) -> str:
        body = await self._request("POST", "/tools/find", json={
            "Level": "Study",
            "Query": {"StudyInstanceUID": study_instance_uid},
        })
        if not body:
            raise ArchiveError(
                f"Study {study_instance_uid} is not stored in the archive"
            )
        return str(body[0])

    async def list_series(self, study_id: str) -> list[SeriesInfo]:
        body = await self._request("GET", f"/studies/{study_id}/series") or []
        return [SeriesInfo.from_orthanc(item) for item in body]

    async def delete_series(self, series_id: str) -> None:
        await self._request("DELETE", f"/series/{series_id}")

    async def submit_anonymize(
        self,
        study_id: str,
        replacements: dict[str, str],
        keep: list[str],
    ) -> str:
        path = f"/studies/{study_id}/anonymize"
        body = await self._request("POST", path, json={
            "Replace": replacements,
            "Keep": keep,
            "KeepSource": False,
            # required to modify PatientID
            "Force": True,
            "Asynchronous": True,
        })
        return self._job_id(body, path)

    async def submit_push(self, study_id: str, destination: Optional[str] = None) -> str:
        peer = destination or await self.destination_peer()
        path = f"/peers/{peer}/store"
        body = await self._request("POST", path, json={
            "Resources": [study_id],
            "Asynchronous": True,
            "Compress": self.config.compress_push,
        })
        return self._job_id(body, path)

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        try:
            body = await self._request("GET", f"/jobs/{job_id}")
        except ArchiveRequestError as e:
            if e.status_code != 404:
                raise
            # Orthanc forgets jobs beyond its JobsHistorySize
            return JobStatusReport(
                job_id=job_id,
                status=JobStatus.FAILURE,
                detail="job is unknown to the archive",
            )
        if not isinstance(body, dict):
            raise ArchiveError(f"Unexpected job body for {job_id}: {body!r}")
        try:
            return JobStatusReport.from_orthanc(body)
        except (KeyError, TypeError, ValueError) as e:
            raise ArchiveError(f"Unexpected job body for {job_id}: {e}") from e
