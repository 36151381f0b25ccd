"""BLT study request and study reference models."""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Any

_DICOM_DATE = re.compile(r"^\d{8}$")


class InvalidRequestError(ValueError):
    """A BLT study request failed validation."""

    def __init__(self, field_name: str, message: str) -> None:
        self.field_name = field_name
        super().__init__(f"{field_name}: {message}")


def normalize_dicom_date(value: str) -> str:
    """
    Normalize a birth date to the DICOM DA format (YYYYMMDD).

    Dates exported from spreadsheets arrive as ``M/D/YYYY``; those are
    rewritten. Anything else is passed through unchanged and must already
    be eight digits.

    Raises:
        ValueError: If the result is not a valid DA value
    """
    value = value.strip()
    if "/" in value:
        parts = value.split("/")
        if len(parts) == 3 and all(p.isdigit() for p in parts):
            month, day, year = parts
            value = f"{year}{month:0>2}{day:0>2}"

    if not _DICOM_DATE.match(value):
        raise ValueError(f"not a DICOM date (YYYYMMDD or M/D/YYYY): {value!r}")
    return value


# Canonical wire name -> attribute name
WIRE_NAMES: dict[str, str] = {
    "MRN": "mrn",
    "PatientName": "patient_name",
    "PatientBirthDate": "patient_birth_date",
    "SearchAccessionNumber": "search_accession_number",
    "AnonPatientID": "anon_patient_id",
    "AnonPatientName": "anon_patient_name",
    "AnonAccessionNumber": "anon_accession_number",
    "AnonPatientBirthDate": "anon_patient_birth_date",
}

# Underscore names sent by older clients
WIRE_ALIASES: dict[str, str] = {
    "Search_AccessionNumber": "SearchAccessionNumber",
    "Anon_PatientID": "AnonPatientID",
    "Anon_PatientName": "AnonPatientName",
    "Anon_AccessionNumber": "AnonAccessionNumber",
    "Anon_PatientBirthDate": "AnonPatientBirthDate",
}

_DATE_FIELDS = ("patient_birth_date", "anon_patient_birth_date")


@dataclass(frozen=True)
class BltStudyRequest:
    """
    Caller input identifying a source study and its anonymization values.

    Instances are validated on construction and never change afterwards.
    """

    mrn: str
    patient_name: str
    patient_birth_date: str
    search_accession_number: str
    anon_patient_id: str
    anon_patient_name: str
    anon_accession_number: str
    anon_patient_birth_date: str

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, str):
                raise InvalidRequestError(f.name, "must be a string")
            value = value.strip()
            if not value:
                raise InvalidRequestError(f.name, "must not be empty")
            if f.name in _DATE_FIELDS:
                try:
                    value = normalize_dicom_date(value)
                except ValueError as e:
                    raise InvalidRequestError(f.name, str(e)) from e
            # frozen dataclass: normalized values go in through object.__setattr__
            object.__setattr__(self, f.name, value)

    def anonymization_replacements(self) -> dict[str, str]:
        """DICOM tag replacements for the anonymization job."""
        return {
            "PatientID": self.anon_patient_id,
            "PatientName": self.anon_patient_name,
            "PatientBirthDate": self.anon_patient_birth_date,
            "AccessionNumber": self.anon_accession_number,
        }

    def to_dict(self) -> dict[str, str]:
        """Convert to the canonical wire representation."""
        return {wire: getattr(self, attr) for wire, attr in WIRE_NAMES.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BltStudyRequest:
        """
        Create from a wire dictionary, accepting the legacy underscore names.

        Raises:
            InvalidRequestError: If a field is missing or invalid
        """
        normalized = {WIRE_ALIASES.get(k, k): v for k, v in data.items()}
        kwargs = {}
        for wire, attr in WIRE_NAMES.items():
            if wire not in normalized:
                raise InvalidRequestError(wire, "is required")
            kwargs[attr] = normalized[wire]
        return cls(**kwargs)


@dataclass(frozen=True)
class StudyRef:
    """A study found on the source modality by an archive query."""

    query_id: str
    modality: str
    study_instance_uid: str
    accession_number: str

    def to_dict(self) -> dict:
        return {
            "query_id": self.query_id,
            "modality": self.modality,
            "study_instance_uid": self.study_instance_uid,
            "accession_number": self.accession_number,
        }

    @classmethod
    def from_dict(cls, data: dict) -> StudyRef:
        return cls(
            query_id=data["query_id"],
            modality=data["modality"],
            study_instance_uid=data["study_instance_uid"],
            accession_number=data["accession_number"],
        )


@dataclass(frozen=True)
class SeriesInfo:
    """A series of a study stored in the archive."""

    series_id: str
    modality: str
    series_instance_uid: str = ""
    series_description: str = ""

    @classmethod
    def from_orthanc(cls, data: dict) -> SeriesInfo:
        tags = data.get("MainDicomTags", {})
        return cls(
            series_id=data["ID"],
            modality=tags.get("Modality", ""),
            series_instance_uid=tags.get("SeriesInstanceUID", ""),
            series_description=tags.get("SeriesDescription", ""),
        )
