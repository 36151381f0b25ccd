"""Request and response bodies of the HTTP API."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from blt.models import BltStudyRequest, normalize_dicom_date


def _wire(name: str, legacy: Optional[str] = None) -> AliasChoices:
    return AliasChoices(name, legacy) if legacy else AliasChoices(name)


class BltStudyRequestBody(BaseModel):
    """
    Body of ``POST /blt/studies``.

    The underscore spellings (``Search_AccessionNumber``, ``Anon_PatientID``,
    ...) sent by older clients are accepted as well.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    mrn: str = Field(min_length=1, validation_alias=_wire("MRN"))
    patient_name: str = Field(min_length=1, validation_alias=_wire("PatientName"))
    patient_birth_date: str = Field(
        min_length=1, validation_alias=_wire("PatientBirthDate")
    )
    search_accession_number: str = Field(
        min_length=1,
        validation_alias=_wire("SearchAccessionNumber", "Search_AccessionNumber"),
    )
    anon_patient_id: str = Field(
        min_length=1, validation_alias=_wire("AnonPatientID", "Anon_PatientID")
    )
    anon_patient_name: str = Field(
        min_length=1, validation_alias=_wire("AnonPatientName", "Anon_PatientName")
    )
    anon_accession_number: str = Field(
        min_length=1,
        validation_alias=_wire("AnonAccessionNumber", "Anon_AccessionNumber"),
    )
    anon_patient_birth_date: str = Field(
        min_length=1,
        validation_alias=_wire("AnonPatientBirthDate", "Anon_PatientBirthDate"),
    )

    @field_validator("patient_birth_date", "anon_patient_birth_date")
    @classmethod
    def _dicom_date(cls, value: str) -> str:
        return normalize_dicom_date(value)

    def to_request(self) -> BltStudyRequest:
        return BltStudyRequest(**self.model_dump())


class SubmissionResponse(BaseModel):
    RequestID: str
    QueryID: str
    # null when the retrieve job is still to be submitted
    JobID: Optional[str] = None


class FailureDetail(BaseModel):
    Stage: str
    Detail: str
    JobID: Optional[str] = None
    Message: str


class StudyStatus(BaseModel):
    """One entry of ``GET /blt/studies``."""

    RequestID: str
    Info: dict[str, str]
    Stage: str
    QueryID: str
    RetrieveJobID: Optional[str] = None
    AnonymizationJobID: Optional[str] = None
    PushJobID: Optional[str] = None
    FailureReason: Optional[FailureDetail] = None
    Abandoned: bool = False
