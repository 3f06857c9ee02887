from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query

from .archive import ArchiveStore, WorkingArea
from .configuration import load_config
from .database import RecordStore
from .errors import MutationError, NotFoundError, PreconditionError, ValidationError
from .iiif import IIIFPublisher
from .job_manager import JobManager
from .lineage import LineageTracker
from .models import (
    CloneRequest,
    CopyFromArchiveRequest,
    DeaccessionRequest,
    DeleteMasterFilesRequest,
    JobDetail,
    JobSummary,
    RenameMasterFileRequest,
    RenumberMasterFilesRequest,
)
from .mutations import MutationEngine
from .records import MasterFile

app = FastAPI(title="DPG Jobs API", version="0.1.0")

config = load_config()
store = RecordStore(Path(config.database_path))
archive = ArchiveStore(Path(config.archive_dir), config.archive_file_mode, config.checksum_algorithm)
working = WorkingArea(Path(config.processing_dir), config.working_file_mode, config.checksum_algorithm)
engine = MutationEngine(
    store,
    archive,
    working,
    LineageTracker(store),
    IIIFPublisher(config.iiif.bucket, Path(config.iiif.staging_dir), config.iiif.jp2_rate),
)
job_manager = JobManager(store, max_workers=config.max_workers)


def get_job_manager() -> JobManager:
    return job_manager


def get_engine() -> MutationEngine:
    return engine


def _http_error(exc: MutationError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PreconditionError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _unit_id(engine: MutationEngine, unit_id: int) -> int:
    try:
        return engine.load_unit(unit_id).id
    except NotFoundError as exc:
        raise _http_error(exc) from exc


def _master_file(engine: MutationEngine, master_file_id: int) -> MasterFile:
    try:
        return engine.load_master_file(master_file_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


# -- jobs ----------------------------------------------------------------


@app.get("/jobs", response_model=list[JobSummary])
def list_jobs(limit: int = Query(100, ge=1, le=1000), manager: JobManager = Depends(get_job_manager)) -> list[JobSummary]:
    return manager.list_jobs(limit)


@app.get("/jobs/{job_id}", response_model=JobDetail)
def get_job(job_id: int, manager: JobManager = Depends(get_job_manager)) -> JobDetail:
    job = manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/jobs/{job_id}/status")
def job_status(job_id: int, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    job = manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return {
        "status": job.status,
        "failures": job.failures,
        "error": job.error,
    }


# -- unit mutations ------------------------------------------------------


@app.post("/units/{unit_id}/masterfiles/add", response_model=JobSummary)
def add_master_files(
    unit_id: int,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    unit_id = _unit_id(engine, unit_id)
    return manager.start("AddMasterFiles", "Unit", unit_id, engine.add_master_files, unit_id, unit_id=unit_id)


@app.post("/units/{unit_id}/masterfiles/replace", response_model=JobSummary)
def replace_master_files(
    unit_id: int,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    unit_id = _unit_id(engine, unit_id)
    return manager.start("ReplaceMasterFiles", "Unit", unit_id, engine.replace_master_files, unit_id, unit_id=unit_id)


@app.post("/units/{unit_id}/masterfiles/delete", response_model=JobSummary)
def delete_master_files(
    unit_id: int,
    request: DeleteMasterFilesRequest,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    try:
        unit = engine.load_unit(unit_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    if unit.published:
        raise HTTPException(status_code=409, detail="Cannot delete from units that have been published")
    return manager.start("DeleteMasterFiles", "Unit", unit_id, engine.delete_master_files, unit_id, request.filenames, unit_id=unit_id)


@app.post("/units/{unit_id}/masterfiles/renumber", response_model=JobSummary)
def renumber_master_files(
    unit_id: int,
    request: RenumberMasterFilesRequest,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    unit_id = _unit_id(engine, unit_id)
    return manager.start(
        "RenumberMasterFiles", "Unit", unit_id, engine.renumber_titles, unit_id, request.filenames, request.start_num, unit_id=unit_id
    )


@app.post("/units/{unit_id}/masterfiles/clone", response_model=JobSummary)
def clone_master_files(
    unit_id: int,
    request: CloneRequest,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    unit_id = _unit_id(engine, unit_id)
    return manager.start(
        "CloneMasterFiles",
        "Unit",
        unit_id,
        engine.clone_master_files,
        unit_id,
        request.sources,
        request.start_page,
        unit_id=unit_id,
        lock_units=engine.clone_lock_units(request.sources),
    )


@app.post("/units/{unit_id}/iiif", response_model=JobSummary)
def publish_unit(
    unit_id: int,
    overwrite: bool = False,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    unit_id = _unit_id(engine, unit_id)
    return manager.start("UnitIIIF", "Unit", unit_id, engine.publish_unit, unit_id, overwrite, unit_id=unit_id)


@app.post("/units/{unit_id}/copy", response_model=JobSummary)
def copy_from_archive(
    unit_id: int,
    request: CopyFromArchiveRequest,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    unit_id = _unit_id(engine, unit_id)
    filenames: Optional[list[str]]
    if request.filename == "all":
        filenames = None
    elif request.filename:
        filenames = [request.filename]
    elif request.files:
        filenames = request.files
    else:
        raise HTTPException(status_code=400, detail="Missing filename or files")
    return manager.start(
        "CopyArchivedFilesToProduction", "Unit", unit_id, engine.copy_from_archive, unit_id, request.compute_id, filenames, unit_id=unit_id
    )


# -- master file mutations -----------------------------------------------


@app.post("/masterfiles/{master_file_id}/deaccession", response_model=JobSummary)
def deaccession_master_file(
    master_file_id: int,
    request: DeaccessionRequest,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    master_file = _master_file(engine, master_file_id)
    return manager.start(
        "DeaccessionMasterFile",
        "MasterFile",
        master_file.id,
        engine.deaccession_master_file,
        master_file.id,
        request.compute_id,
        request.note,
        unit_id=master_file.unit_id,
    )


@app.post("/masterfiles/{master_file_id}/rename")
def rename_master_file(
    master_file_id: int,
    request: RenameMasterFileRequest,
    engine: MutationEngine = Depends(get_engine),
    manager: JobManager = Depends(get_job_manager),
) -> Dict[str, Any]:
    master_file = _master_file(engine, master_file_id)
    job = manager.create_job("RenameMasterFile", "MasterFile", master_file.id)
    try:
        with manager.unit_locks.hold(master_file.unit_id, job):
            renamed = engine.rename_master_file(master_file.id, request.filename, request.title, request.description)
    except MutationError as exc:
        job.fatal(str(exc))
        raise _http_error(exc) from exc
    job.info(f"Renamed master file {renamed.id} to {renamed.filename}")
    job.done()
    return {"id": renamed.id, "filename": renamed.filename, "title": renamed.title, "job": job.id}


@app.post("/masterfiles/{master_file_id}/techmeta", response_model=JobSummary)
def update_tech_metadata(
    master_file_id: int,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    master_file = _master_file(engine, master_file_id)
    return manager.start(
        "UpdateTechMetadata", "MasterFile", master_file.id, engine.update_tech_metadata, master_file.id, unit_id=master_file.unit_id
    )


@app.post("/masterfiles/{master_file_id}/iiif", response_model=JobSummary)
def update_iiif(
    master_file_id: int,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    master_file = _master_file(engine, master_file_id)
    if master_file.is_deaccessioned:
        raise HTTPException(status_code=409, detail=f"Master file {master_file.id} has been deaccessioned")
    if master_file.is_clone:
        raise HTTPException(status_code=409, detail=f"Master file {master_file.id} is a clone")
    return manager.start("UpdateIIIF", "MasterFile", master_file.id, engine.publish_master_file, master_file.id, unit_id=master_file.unit_id)


@app.delete("/masterfiles/{master_file_id}/iiif", response_model=JobSummary)
def delete_iiif(
    master_file_id: int,
    manager: JobManager = Depends(get_job_manager),
    engine: MutationEngine = Depends(get_engine),
) -> JobSummary:
    master_file = _master_file(engine, master_file_id)
    return manager.start("DeleteIIIF", "MasterFile", master_file.id, engine.unpublish_master_file, master_file.id, unit_id=master_file.unit_id)


# -- archive -------------------------------------------------------------


@app.get("/archive/exist")
def archive_exists(dir: str = Query(..., min_length=1), engine: MutationEngine = Depends(get_engine)) -> Dict[str, Any]:
    count = engine.archive.count_tif_files(dir)
    if count is None:
        return {"exists": False, "tif_count": 0}
    return {"exists": True, "tif_count": count}
