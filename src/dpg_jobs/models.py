from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    RUNNING = "running"
    DONE = "finished"
    FAILED = "failure"


class EventLevel(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2
    FATAL = 3


class JobEvent(BaseModel):
    timestamp: datetime
    level: EventLevel
    message: str


class JobSummary(BaseModel):
    id: int
    name: str
    originator_type: str
    originator_id: int
    status: JobStatus
    failures: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class JobDetail(JobSummary):
    events: List[JobEvent]


class DeleteMasterFilesRequest(BaseModel):
    filenames: List[str] = Field(min_length=1)


class RenumberMasterFilesRequest(BaseModel):
    filenames: List[str] = Field(min_length=1)
    start_num: int = Field(default=1, ge=1)


class CloneFile(BaseModel):
    id: int
    title: Optional[str] = None


class CloneSource(BaseModel):
    unit_id: int
    all: bool = False
    masterfiles: List[CloneFile] = Field(default_factory=list)


class CloneRequest(BaseModel):
    sources: List[CloneSource] = Field(min_length=1)
    start_page: int = Field(default=1, ge=1)


class DeaccessionRequest(BaseModel):
    compute_id: str = Field(min_length=1)
    note: str = ""


class RenameMasterFileRequest(BaseModel):
    filename: str
    title: Optional[str] = None
    description: Optional[str] = None


class CopyFromArchiveRequest(BaseModel):
    compute_id: str = Field(min_length=1)
    filename: Optional[str] = None
    files: List[str] = Field(default_factory=list)
