"""
Exception types raised by the master file sequence and archive engine.

Validation errors are raised before any side effect. Precondition errors
refuse an operation outright. Per-item problems (publication, tech metadata,
checksum mismatch) are logged by the caller and never abort a batch.
"""

from __future__ import annotations


class MutationError(Exception):
    """Base class for every error a unit or master file mutation can raise."""


class ValidationError(MutationError):
    pass


class InvalidFilename(ValidationError, ValueError):
    def __init__(self, filename: str, reason: str = "does not match <unit>_<page>.tif"):
        self.filename = filename
        super().__init__(f"Invalid master file filename {filename}: {reason}")


class SequenceGap(ValidationError):
    pass


class SequenceOverflow(ValidationError):
    pass


class NotFoundError(MutationError, LookupError):
    pass


class PreconditionError(MutationError):
    pass


class LineageError(PreconditionError):
    pass


class UnitPublishedError(PreconditionError):
    pass


class ArchiveError(MutationError, OSError):
    pass


class ArchiveMissing(ArchiveError):
    pass


class CloneSourceMissing(MutationError):
    pass


class ShiftError(MutationError):
    """A rename while making room for inserted pages failed; the insert is abandoned."""


class PublicationError(Exception):
    pass


class TechMetadataError(Exception):
    pass
