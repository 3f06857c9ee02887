"""
Entity records persisted by the record store.

Each record is a plain dataclass whose fields map one-to-one onto the
columns of the table named by its ``__table__`` attribute. The ``id`` field
is assigned by the store on create.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from typing import ClassVar, Optional

PID_NAMESPACE = "tsm"
ARCHIVE_NOTE_MARKER = "Archive: "


@dataclass
class Unit:
    __table__: ClassVar[str] = "units"

    id: Optional[int] = None
    order_id: Optional[int] = None
    metadata_id: Optional[int] = None
    staff_notes: str = ""
    reorder: bool = False
    master_files_count: int = 0
    date_archived: Optional[datetime] = None
    date_dl_deliverables_ready: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def archive_override(self) -> Optional[str]:
        """Archive directory named in the staff notes, if the unit lives somewhere non-standard."""
        if ARCHIVE_NOTE_MARKER not in self.staff_notes:
            return None
        override = self.staff_notes.split(ARCHIVE_NOTE_MARKER, 1)[1].strip()
        return override.split()[0] if override else None

    @property
    def published(self) -> bool:
        return self.date_dl_deliverables_ready is not None


@dataclass
class MasterFile:
    __table__: ClassVar[str] = "master_files"

    id: Optional[int] = None
    unit_id: int = 0
    filename: str = ""
    title: str = ""
    description: str = ""
    size: int = 0
    checksum: str = ""
    metadata_id: Optional[int] = None
    component_id: Optional[int] = None
    location_id: Optional[int] = None
    original_id: Optional[int] = None
    date_archived: Optional[datetime] = None
    deaccessioned_at: Optional[datetime] = None
    deaccession_note: str = ""
    deaccessioned_by: Optional[int] = None
    date_dl_ingest: Optional[datetime] = None
    date_dl_update: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def pid(self) -> str:
        return f"{PID_NAMESPACE}:{self.id}"

    @property
    def is_clone(self) -> bool:
        return self.original_id is not None

    @property
    def is_deaccessioned(self) -> bool:
        return self.deaccessioned_at is not None


@dataclass
class TechMetadata:
    __table__: ClassVar[str] = "image_tech_metas"

    id: Optional[int] = None
    master_file_id: int = 0
    image_format: str = ""
    width: int = 0
    height: int = 0
    resolution: int = 0
    color_space: str = ""
    depth: int = 0
    compression: str = ""
    color_profile: str = ""
    equipment: str = ""
    software: str = ""
    model: str = ""
    exif_version: str = ""
    capture_date: Optional[datetime] = None
    iso: int = 0
    exposure_bias: str = ""
    exposure_time: str = ""
    aperture: str = ""
    focal_length: float = 0.0

    def copy_for(self, master_file_id: int) -> "TechMetadata":
        values = {f.name: getattr(self, f.name) for f in fields(self) if f.name not in ("id", "master_file_id")}
        return TechMetadata(master_file_id=master_file_id, **values)


@dataclass
class Metadata:
    __table__: ClassVar[str] = "metadata"

    id: Optional[int] = None
    title: str = ""
    date_dl_ingest: Optional[datetime] = None
    date_dl_update: Optional[datetime] = None


@dataclass
class StaffMember:
    __table__: ClassVar[str] = "staff_members"

    id: Optional[int] = None
    computing_id: str = ""
    email: str = ""


@dataclass
class JobStatusRecord:
    __table__: ClassVar[str] = "job_statuses"

    id: Optional[int] = None
    name: str = ""
    originator_type: str = ""
    originator_id: int = 0
    status: str = "running"
    failures: int = 0
    error: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class JobEventRecord:
    __table__: ClassVar[str] = "job_events"

    id: Optional[int] = None
    job_status_id: int = 0
    level: int = 0
    text: str = ""
    created_at: Optional[datetime] = None
