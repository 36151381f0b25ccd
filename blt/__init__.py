"""BLT study transfer: retrieve, anonymize and push studies through an Orthanc archive."""

__version__ = "0.1.0"
