"""
Master file sequence mutations.

Every unit mutation has the same shape, tracked by :class:`MutationReport`:

    validating -> making_room -> applying -> finalizing -> done
                                   (or failed from any phase)

Validation runs against an immutable snapshot of the unit before any side
effect. The full list of renames is computed up front by
:mod:`dpg_jobs.sequence`, then applied one file at a time. Each file is
handled atomically (archive and record move together); the batch as a whole
is best effort and per-item failures are logged and reported.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Protocol, Sequence, Set

from .archive import ArchiveStore, TifFile, WorkingArea
from .database import RecordStore
from .errors import (
    ArchiveError,
    ArchiveMissing,
    CloneSourceMissing,
    InvalidFilename,
    LineageError,
    MutationError,
    NotFoundError,
    PreconditionError,
    PublicationError,
    SequenceOverflow,
    ShiftError,
    TechMetadataError,
    UnitPublishedError,
    ValidationError,
)
from .iiif import Publisher
from .lineage import LineageTracker
from .models import CloneSource
from .records import MasterFile, Metadata, StaffMember, TechMetadata, Unit
from .sequence import (
    MAX_PAGE_NUMBER,
    PageEntry,
    RenameStep,
    belongs_to_unit,
    format_filename,
    last_page,
    parse_page_number,
    plan_gap_closure,
    plan_insertion_shift,
    try_page_number,
    validate_new_pages,
)
from .techmetadata import extract_tech_metadata

logger = logging.getLogger(__name__)

STORE_ERRORS = (sqlite3.Error, LookupError)


class JobLogger(Protocol):
    def info(self, text: str) -> None: ...

    def warning(self, text: str) -> None: ...

    def error(self, text: str) -> None: ...


class ProcessLog:
    """Job-less log used by synchronous operations."""

    def info(self, text: str) -> None:
        logger.info(text)

    def warning(self, text: str) -> None:
        logger.warning(text)

    def error(self, text: str) -> None:
        logger.error(text)


class MutationPhase(str, Enum):
    VALIDATING = "validating"
    MAKING_ROOM = "making_room"
    APPLYING = "applying"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ItemFailure:
    item: str
    reason: str


@dataclass
class MutationReport:
    """Outcome of one mutation, including everything that was skipped."""

    name: str
    phase: MutationPhase = MutationPhase.VALIDATING
    applied: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    mismatches: List[str] = field(default_factory=list)

    def advance(self, phase: MutationPhase) -> None:
        self.phase = phase

    def fail_item(self, job: JobLogger, item: str, reason: str) -> None:
        self.failures.append(ItemFailure(item=item, reason=reason))
        job.error(reason)

    def mismatch(self, job: JobLogger, item: str, reason: str) -> None:
        self.mismatches.append(item)
        job.warning(reason)

    @property
    def complete(self) -> bool:
        return self.phase == MutationPhase.DONE and not self.failures

    def summary(self) -> str:
        text = f"{self.name} {self.phase.value}: {len(self.applied)} applied, {len(self.failures)} failed, {len(self.mismatches)} checksum mismatches"
        if self.failures:
            text += "; failed items: " + ", ".join(failure.item for failure in self.failures)
        return text


class MutationEngine:
    """
    Applies sequence mutations across the record store, the archive and
    the clone working areas.

    Args:
        store: Record store
        archive: Permanent archive
        working: Transient working directories
        lineage: Original/clone classification
        publisher: IIIF publication service
        extract: Tech metadata extractor
    """

    def __init__(
        self,
        store: RecordStore,
        archive: ArchiveStore,
        working: WorkingArea,
        lineage: LineageTracker,
        publisher: Publisher,
        extract: Callable[[Path], TechMetadata] = extract_tech_metadata,
    ) -> None:
        self.store = store
        self.archive = archive
        self.working = working
        self.lineage = lineage
        self.publisher = publisher
        self.extract = extract

    # -- loading ---------------------------------------------------------

    def load_unit(self, unit_id: int) -> Unit:
        unit = self.store.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError(f"Unit {unit_id} not found")
        return unit

    def load_master_file(self, master_file_id: int) -> MasterFile:
        master_file = self.store.get(MasterFile, master_file_id)
        if master_file is None:
            raise NotFoundError(f"Master file {master_file_id} not found")
        return master_file

    def unit_master_files(self, unit_id: int) -> List[MasterFile]:
        return self.store.query(MasterFile, order_by="filename", unit_id=unit_id)

    @staticmethod
    def snapshot(files: Sequence[MasterFile]) -> tuple[PageEntry, ...]:
        return tuple(PageEntry(mf.id, mf.filename, mf.title, try_page_number(mf.filename)) for mf in files)

    @contextmanager
    def _lifecycle(self, job: JobLogger, report: MutationReport) -> Iterator[MutationReport]:
        try:
            yield report
        except Exception:
            report.advance(MutationPhase.FAILED)
            job.info(report.summary())
            raise
        report.advance(MutationPhase.DONE)
        job.info(report.summary())

    # -- per-file helpers ------------------------------------------------

    def _regenerate_tech_metadata(self, job: JobLogger, master_file: MasterFile, path: Path) -> Optional[TechMetadata]:
        """Delete any tech metadata for the file and create it afresh from ``path``."""
        self.store.delete_where(TechMetadata, master_file_id=master_file.id)
        job.info(f"Create image tech metadata for {master_file.filename}")
        try:
            tech_metadata = self.extract(path)
        except TechMetadataError as exc:
            job.error(f"Unable to create {master_file.filename} tech metadata: {exc}")
            return None
        tech_metadata.master_file_id = master_file.id
        return self.store.create(tech_metadata)

    def _publish(self, job: JobLogger, master_file: MasterFile, tech_metadata: Optional[TechMetadata], path: Path, overwrite: bool) -> bool:
        job.info(f"Publish master file {master_file.pid} from {path} to IIIF; overwrite {overwrite}")
        try:
            self.publisher.publish(master_file, tech_metadata, path, overwrite)
        except PublicationError as exc:
            job.error(f"Unable to publish {master_file.filename} to IIIF: {exc}")
            return False
        return True

    def _unpublish(self, job: JobLogger, master_file: MasterFile) -> bool:
        try:
            self.publisher.unpublish(master_file)
        except PublicationError as exc:
            job.error(f"Unable to unpublish IIIF resource for master file {master_file.id}: {exc}")
            return False
        return True

    def _ensure_checksum(self, job: JobLogger, master_file: MasterFile, path: Path) -> None:
        if master_file.checksum:
            return
        job.info(f"Masterfile {master_file.pid} is missing its checksum; calculating it now from {path}")
        master_file.checksum = self.archive.checksum(path)
        try:
            self.store.update_fields(master_file, "checksum")
        except STORE_ERRORS as exc:
            job.error(f"Unable to update checksum of {master_file.pid}: {exc}")

    def _archive_file(self, job: JobLogger, report: MutationReport, unit: Unit, master_file: MasterFile, source: Path) -> bool:
        """Archive bytes for a master file, record the resulting checksum and archive date."""
        try:
            archived = self.archive.archive(unit.id, source, master_file.filename, self.archive.override_for(unit, master_file))
        except ArchiveError as exc:
            report.fail_item(job, master_file.filename, f"Unable to archive {master_file.filename}: {exc}")
            return False
        fields = ["date_archived"]
        if archived != master_file.checksum:
            report.mismatch(job, master_file.filename, f"Archived checksum does not match for {master_file.filename}: {archived} vs {master_file.checksum}")
            master_file.checksum = archived
            fields.append("checksum")
        master_file.date_archived = datetime.utcnow()
        try:
            self.store.update_fields(master_file, *fields)
        except STORE_ERRORS as exc:
            job.error(f"Unable to set date archived for master file {master_file.id}: {exc}")
        job.info(f"Masterfile {master_file.id} : {master_file.filename} successfully archived")
        return True

    def _apply_rename(self, job: JobLogger, report: MutationReport, unit: Unit, master_file: MasterFile, step: RenameStep) -> None:
        """
        Move one master file to a new filename (and maybe title).

        The archive (or clone working copy) moves first; if the record
        update then fails the bytes are moved back, so the file and its
        record never disagree.

        Raises:
            ArchiveError: If the archived bytes cannot be moved
            sqlite3.Error, LookupError: If the record update fails
        """
        old, new = step.old_filename, step.new_filename
        override = self.archive.override_for(unit, master_file)
        moved_archive = False
        moved_clone = False
        if self.lineage.owns_archive_copy(master_file):
            try:
                verified = self.archive.rename(unit.id, old, master_file.checksum, new, override)
                moved_archive = True
                if not verified:
                    report.mismatch(job, new, f"Checksum does not match for rename {old} -> {new}")
            except ArchiveMissing as exc:
                job.error(f"{exc}; renaming the record only")
        elif self.working.rename_clone(unit.id, old, new):
            moved_clone = True
            job.info(f"Rename cloned file {old} -> {new}")

        master_file.filename = new
        master_file.title = step.new_title
        try:
            self.store.update_fields(master_file, "filename", "title")
        except STORE_ERRORS:
            master_file.filename = old
            master_file.title = step.old_title
            if moved_archive:
                self.archive.rename(unit.id, new, master_file.checksum, old, override)
            if moved_clone:
                self.working.rename_clone(unit.id, new, old)
            raise

    def _apply_renames(
        self,
        job: JobLogger,
        report: MutationReport,
        unit: Unit,
        files: Sequence[MasterFile],
        steps: Sequence[RenameStep],
        abort_on_failure: bool,
    ) -> None:
        by_id = {mf.id: mf for mf in files}
        occupied: Set[str] = {mf.filename for mf in files}
        for step in steps:
            title_note = f". Title {step.new_title}" if step.title_changed else ""
            job.info(f"Rename {step.old_filename} to {step.new_filename}{title_note}")
            try:
                if step.new_filename in occupied:
                    raise ArchiveError(f"{step.new_filename} is still in use in unit {unit.id}")
                self._apply_rename(job, report, unit, by_id[step.master_file_id], step)
            except (ArchiveError, *STORE_ERRORS) as exc:
                message = f"Unable to rename {step.old_filename} to {step.new_filename}: {exc}"
                if abort_on_failure:
                    report.failures.append(ItemFailure(item=step.old_filename, reason=message))
                    raise ShiftError(f"Unable to create gap for new image insertion; {message}") from exc
                report.fail_item(job, step.old_filename, message)
                continue
            occupied.discard(step.old_filename)
            occupied.add(step.new_filename)
            report.applied.append(f"{step.old_filename} -> {step.new_filename}")

    def _refresh_count(self, unit: Unit, *extra_fields: str) -> None:
        unit.master_files_count = self.store.count(MasterFile, unit_id=unit.id)
        self.store.update_fields(unit, "master_files_count", *extra_fields)

    def _incoming_files(self, job: JobLogger, unit_id: int) -> tuple[Path, List[TifFile]]:
        src_dir = self.working.unit_update_dir(unit_id)
        job.info(f"Looking for new *.tif files in {src_dir}")
        return src_dir, self.working.list_tif_files(src_dir, unit_id)

    def _cleanup_incoming(self, job: JobLogger, report: MutationReport, src_dir: Path) -> None:
        if report.failures:
            job.warning(f"Leaving {src_dir} in place; {len(report.failures)} file(s) were not processed")
            return
        job.info("Cleaning up working files")
        self.working.clean(src_dir)

    # -- append / insert -------------------------------------------------

    def add_master_files(self, job: JobLogger, unit_id: int) -> MutationReport:
        """
        Add the .tif files waiting in the unit's update directory.

        Files whose pages follow the unit's last page are appended. If the
        first new page falls inside the existing sequence, every existing
        file from that page on is first shifted up by the batch size, in
        descending order.

        Raises:
            SequenceGap: If the batch skips a page or starts beyond last page + 1
            ShiftError: If making room fails part way
        """
        report = MutationReport("AddMasterFiles")
        with self._lifecycle(job, report):
            job.info("Load unit and masterfiles")
            unit = self.load_unit(unit_id)
            src_dir, files = self._incoming_files(job, unit_id)
            if not files:
                raise ValidationError("No tif files found")

            existing = self.unit_master_files(unit_id)
            snapshot = self.snapshot(existing)
            last = last_page(snapshot)
            pages = validate_new_pages([tif.filename for tif in files], last)
            shift: List[RenameStep] = []
            if pages[0] <= last:
                shift = plan_insertion_shift(snapshot, unit_id, pages[0], len(pages))

            if shift:
                report.advance(MutationPhase.MAKING_ROOM)
                job.info(
                    f"Renaming/rearchiving all master files from {shift[-1].old_filename} "
                    f"to make room for insertion of {len(pages)} new master files"
                )
                self._apply_renames(job, report, unit, existing, shift, abort_on_failure=True)

            report.advance(MutationPhase.APPLYING)
            component_id = existing[0].component_id if existing else None
            location_id = existing[0].location_id if existing else None
            job.info(f"Adding {len(files)} new master files...")
            for tif in files:
                self._add_one(job, report, unit, tif, component_id, location_id)

            report.advance(MutationPhase.FINALIZING)
            self._refresh_count(unit)
            self._cleanup_incoming(job, report, src_dir)
        return report

    def _add_one(self, job: JobLogger, report: MutationReport, unit: Unit, tif: TifFile, component_id: Optional[int], location_id: Optional[int]) -> None:
        master_file = MasterFile(
            unit_id=unit.id,
            filename=tif.filename,
            title=str(parse_page_number(tif.filename)),
            size=tif.size,
            checksum=self.archive.checksum(tif.path),
            metadata_id=unit.metadata_id,
            component_id=component_id,
            location_id=location_id,
        )
        try:
            self.store.create(master_file)
        except sqlite3.Error as exc:
            report.fail_item(job, tif.filename, f"Unable to create {tif.filename}: {exc}")
            return
        job.info(f"Created masterfile for {tif.filename}, PID: {master_file.pid}")

        tech_metadata = self._regenerate_tech_metadata(job, master_file, tif.path)
        self._publish(job, master_file, tech_metadata, tif.path, overwrite=True)
        if self._archive_file(job, report, unit, master_file, tif.path):
            report.applied.append(tif.filename)

    # -- replace ---------------------------------------------------------

    def replace_master_files(self, job: JobLogger, unit_id: int) -> MutationReport:
        """
        Overwrite existing master files with same-named files from the update directory.

        Page numbering is untouched. Files that match no master file in the
        unit, clones and deaccessioned files are skipped with an error.
        """
        report = MutationReport("ReplaceMasterFiles")
        with self._lifecycle(job, report):
            unit = self.load_unit(unit_id)
            src_dir, files = self._incoming_files(job, unit_id)
            if not files:
                raise ValidationError("No replacement .tif files found")
            by_name = {mf.filename: mf for mf in self.unit_master_files(unit_id)}

            report.advance(MutationPhase.APPLYING)
            for tif in files:
                job.info(f"Replacing master file {tif.filename}")
                master_file = by_name.get(tif.filename)
                if master_file is None:
                    report.fail_item(job, tif.filename, f"Masterfile {tif.filename} was not found in unit. Skipping.")
                    continue
                if not self.lineage.owns_archive_copy(master_file):
                    report.fail_item(job, tif.filename, f"Masterfile {tif.filename} is a clone or deaccessioned and cannot be replaced. Skipping.")
                    continue

                master_file.size = tif.size
                master_file.checksum = self.archive.checksum(tif.path)
                try:
                    self.store.update_fields(master_file, "size", "checksum")
                except STORE_ERRORS as exc:
                    report.fail_item(job, tif.filename, f"Unable to save updates to {tif.filename}: {exc}")
                    continue
                tech_metadata = self._regenerate_tech_metadata(job, master_file, tif.path)
                self._publish(job, master_file, tech_metadata, tif.path, overwrite=True)
                if self._archive_file(job, report, unit, master_file, tif.path):
                    report.applied.append(tif.filename)

            report.advance(MutationPhase.FINALIZING)
            self._cleanup_incoming(job, report, src_dir)
        return report

    # -- delete / renumber -----------------------------------------------

    def delete_master_files(self, job: JobLogger, unit_id: int, filenames: Sequence[str]) -> MutationReport:
        """
        Delete master files by name, then close the page gaps they leave.

        Raises:
            ValidationError: If no filenames are given
            UnitPublishedError: If the unit's deliverables are already published
        """
        report = MutationReport("DeleteMasterFiles")
        with self._lifecycle(job, report):
            targets = sorted(set(filenames))
            if not targets:
                raise ValidationError("No filenames in request")
            job.info(f"These masterfiles will be removed {targets}")
            job.info("Load unit and masterfiles")
            unit = self.load_unit(unit_id)
            if unit.published:
                raise UnitPublishedError("Cannot delete from units that have been published")
            by_name = {mf.filename: mf for mf in self.unit_master_files(unit_id)}

            report.advance(MutationPhase.APPLYING)
            deleted = 0
            for filename in targets:
                master_file = by_name.get(filename)
                if master_file is None:
                    report.fail_item(job, filename, f"Master file {filename} not found in unit {unit_id}; skipping")
                    continue
                if self._delete_one(job, report, unit, master_file):
                    deleted += 1

            report.advance(MutationPhase.FINALIZING)
            job.info("Updating remaining master files to correct page number gaps")
            remaining = self.unit_master_files(unit_id)
            snapshot = self.snapshot(remaining)
            for entry in snapshot:
                if entry.page is None:
                    job.error(f"Skipping rename of masterfile with invalid filename {entry.filename}")
            steps = plan_gap_closure(snapshot, unit_id)
            self._apply_renames(job, report, unit, remaining, steps, abort_on_failure=False)

            unit.master_files_count = max(unit.master_files_count - deleted, 0)
            self.store.update_fields(unit, "master_files_count")
        return report

    def _delete_one(self, job: JobLogger, report: MutationReport, unit: Unit, master_file: MasterFile) -> bool:
        job.info(f"Delete {master_file.filename}")
        if self.lineage.owns_archive_copy(master_file):
            if self.lineage.has_descendant_clones(master_file.id):
                report.fail_item(job, master_file.filename, f"Master file {master_file.filename} has been cloned and cannot be deleted; skipping")
                return False
            try:
                if not self.archive.remove(unit.id, master_file.filename, self.archive.override_for(unit, master_file)):
                    job.warning(f"No archive found for {master_file.filename}")
            except ArchiveError as exc:
                report.fail_item(job, master_file.filename, str(exc))
                return False
            self._unpublish(job, master_file)
        else:
            try:
                if self.working.remove_clone(unit.id, master_file.filename):
                    job.info(f"Removed cloned tif {master_file.filename} from the finalization directory")
            except ArchiveError as exc:
                report.fail_item(job, master_file.filename, str(exc))
                return False

        job.info(f"Removing master file and image tech metadata for {master_file.filename}")
        try:
            self.store.delete_where(TechMetadata, master_file_id=master_file.id)
            self.store.delete(master_file)
        except sqlite3.Error as exc:
            report.fail_item(job, master_file.filename, f"Unable to delete master file {master_file.filename}: {exc}")
            return False
        report.applied.append(master_file.filename)
        return True

    def renumber_titles(self, job: JobLogger, unit_id: int, filenames: Sequence[str], start_num: int) -> MutationReport:
        """Give the named files sequential numeric titles starting at ``start_num``, in filename order."""
        report = MutationReport("RenumberMasterFiles")
        with self._lifecycle(job, report):
            targets = sorted(set(filenames))
            if not targets:
                raise ValidationError("No filenames in request")
            if start_num < 1:
                raise ValidationError(f"Invalid start number {start_num}")
            job.info(f"These masterfiles will be renamed {targets} starting at page {start_num}")
            self.load_unit(unit_id)
            by_name = {mf.filename: mf for mf in self.unit_master_files(unit_id)}

            report.advance(MutationPhase.APPLYING)
            number = start_num
            for filename in targets:
                master_file = by_name.get(filename)
                if master_file is None:
                    report.fail_item(job, filename, f"Master file {filename} not found in unit {unit_id}; skipping")
                    continue
                job.info(f"MasterFile {filename} renumber from {master_file.title} to {number}")
                master_file.title = str(number)
                try:
                    self.store.update_fields(master_file, "title")
                except STORE_ERRORS as exc:
                    report.fail_item(job, filename, f"Unable to update title of {filename}: {exc}")
                    continue
                report.applied.append(filename)
                number += 1
        return report

    def rename_master_file(self, master_file_id: int, new_filename: str, title: Optional[str] = None, description: Optional[str] = None) -> MasterFile:
        """
        Rename one master file and its archived bytes (synchronous).

        Raises:
            InvalidFilename: If the new name is not a filename for the file's unit
            LineageError: If the file is a clone or deaccessioned
            PreconditionError: If another master file in the unit has the name
        """
        log = ProcessLog()
        master_file = self.load_master_file(master_file_id)
        if not belongs_to_unit(new_filename, master_file.unit_id):
            raise InvalidFilename(new_filename, f"not a master file name for unit {master_file.unit_id}")
        if not self.lineage.owns_archive_copy(master_file):
            raise LineageError(f"Master file {master_file.filename} is a clone or deaccessioned; its archive cannot be renamed")
        unit = self.load_unit(master_file.unit_id)
        if new_filename != master_file.filename:
            clash = self.store.find(MasterFile, unit_id=unit.id, filename=new_filename)
            if clash is not None:
                raise PreconditionError(f"{new_filename} is already used by master file {clash.id}")

        log.info(f"Rename master file {master_file.id} {master_file.filename} -> {new_filename}")
        report = MutationReport("RenameMasterFile")
        step = RenameStep(master_file.id, master_file.filename, new_filename, master_file.title, title or master_file.title)
        if new_filename != master_file.filename:
            self._apply_rename(log, report, unit, master_file, step)
        elif step.title_changed:
            master_file.title = step.new_title
            self.store.update_fields(master_file, "title")
        if description:
            master_file.description = description
            self.store.update_fields(master_file, "description")
        return master_file

    # -- clone -----------------------------------------------------------

    def clone_master_files(self, job: JobLogger, dest_unit_id: int, sources: Sequence[CloneSource], start_page: int = 1) -> MutationReport:
        """
        Clone master files from one or more source units into a destination unit.

        Clones are numbered consecutively from ``start_page`` and copied into
        the destination's finalization directory. A missing source archive
        file aborts the rest of the batch; clones already created are kept.

        Raises:
            CloneSourceMissing: If a source unit or archived source file is missing
        """
        report = MutationReport("CloneMasterFiles")
        with self._lifecycle(job, report):
            if not sources:
                raise ValidationError("No clone sources in request")
            if start_page < 1:
                raise ValidationError(f"Invalid start page {start_page}")
            job.info(f"Loading destination unit {dest_unit_id}")
            dest = self.load_unit(dest_unit_id)

            report.advance(MutationPhase.APPLYING)
            page = start_page
            try:
                for source in sources:
                    page = self._clone_from_unit(job, report, source, dest, page)
            finally:
                report.advance(MutationPhase.FINALIZING)
                cloned = page - start_page
                job.info(f"{cloned} masterfiles cloned into unit. Flagging unit as cloned")
                if cloned:
                    dest.reorder = True
                    self._refresh_count(dest, "reorder")
        return report

    def clone_lock_units(self, sources: Sequence[CloneSource]) -> List[int]:
        """Units a clone reads from: every source unit and the units holding their originals."""
        units: Set[int] = set()
        for source in sources:
            units.add(source.unit_id)
            for master_file in self.unit_master_files(source.unit_id):
                if not master_file.is_clone:
                    continue
                try:
                    units.add(self.lineage.root_original(master_file).unit_id)
                except MutationError:
                    # reported by the clone job itself
                    continue
        return sorted(units)

    def _clone_from_unit(self, job: JobLogger, report: MutationReport, source: CloneSource, dest: Unit, page: int) -> int:
        job.info(f"Loading clone source unit {source.unit_id}")
        src_unit = self.store.get(Unit, source.unit_id)
        if src_unit is None:
            raise CloneSourceMissing(f"Unable to load unit {source.unit_id}")
        src_files = self.unit_master_files(src_unit.id)

        if source.all:
            job.info(f"Cloning all master files from unit {src_unit.id}. Starting page number: {page}")
            selected = [(mf, mf.title) for mf in src_files]
        else:
            by_id = {mf.id: mf for mf in src_files}
            selected = []
            for item in source.masterfiles:
                master_file = by_id.get(item.id)
                if master_file is None:
                    report.fail_item(job, str(item.id), f"Unable to find masterfile {item.id} in source unit {src_unit.id}. Skipping.")
                    continue
                selected.append((master_file, item.title or master_file.title))

        for src_mf, title in selected:
            if src_mf.is_deaccessioned:
                job.info(f"Master file {src_mf.filename} has been deaccessioned and will not be cloned")
                continue
            if page > MAX_PAGE_NUMBER:
                raise SequenceOverflow(f"Clone page {page} exceeds the maximum page number {MAX_PAGE_NUMBER}")
            if self._clone_one(job, report, src_unit, src_mf, dest, title, page):
                page += 1
        return page

    def _clone_one(self, job: JobLogger, report: MutationReport, src_unit: Unit, src_mf: MasterFile, dest: Unit, title: str, page: int) -> bool:
        try:
            root = self.lineage.root_original(src_mf)
        except NotFoundError as exc:
            raise CloneSourceMissing(str(exc)) from exc
        root_unit = src_unit if root.unit_id == src_unit.id else self.store.get(Unit, root.unit_id)
        if root_unit is None:
            raise CloneSourceMissing(f"Unable to load unit {root.unit_id} of original master file {root.id}")
        if root.id != src_mf.id:
            job.info(f"Masterfile {src_mf.filename} is itself a clone; cloning from original {root.pid}")

        source_path = self.archive.location_of(root_unit, root)
        if self.archive.override_for(root_unit, root):
            job.info(f"Masterfile {root.filename} is archived in non-standard location {source_path}")
        if not source_path.is_file():
            raise CloneSourceMissing(f"unable to find archived tif {source_path} for master file with ID {root.id}")
        self._ensure_checksum(job, root, source_path)

        new_filename = format_filename(dest.id, page)
        job.info(f"Cloning master file from {source_path} to {self.working.finalization_dir(dest.id) / new_filename}")
        try:
            new_checksum = self.working.clone_into(source_path, dest.id, new_filename)
        except OSError as exc:
            raise ArchiveError(f"Unable to copy {source_path} for clone {new_filename}: {exc}") from exc
        if new_checksum != root.checksum:
            report.mismatch(job, new_filename, f"Checksum mismatch for clone of source master file {root.id}: {root.checksum} vs {new_checksum}")

        clone = MasterFile(
            unit_id=dest.id,
            filename=new_filename,
            title=title,
            description=src_mf.description,
            size=src_mf.size,
            checksum=new_checksum,
            metadata_id=src_mf.metadata_id,
            component_id=src_mf.component_id,
            location_id=src_mf.location_id,
            original_id=root.id,
        )
        try:
            self.store.create(clone)
        except sqlite3.Error as exc:
            self.working.remove_clone(dest.id, new_filename)
            report.fail_item(job, src_mf.filename, f"Unable to create {new_filename}: {exc}")
            return False

        tech_metadata = self.store.find(TechMetadata, master_file_id=src_mf.id)
        if tech_metadata is not None:
            try:
                self.store.create(tech_metadata.copy_for(clone.id))
            except sqlite3.Error as exc:
                job.error(f"Unable to create tech metadata for masterfile {clone.id}: {exc}")
        job.info(f"Master file cloned to {clone.pid}")
        report.applied.append(new_filename)
        return True

    # -- deaccession -----------------------------------------------------

    def deaccession_master_file(self, job: JobLogger, master_file_id: int, computing_id: str, note: str) -> MutationReport:
        """
        Retire a master file: mark it, remove its archive copy, withdraw publication.

        Raises:
            LineageError: If the file is a clone or has clones
            PreconditionError: If it is already deaccessioned
            NotFoundError: If the file or the staff member does not exist
        """
        report = MutationReport("DeaccessionMasterFile")
        with self._lifecycle(job, report):
            master_file = self.load_master_file(master_file_id)
            staff = self.store.find(StaffMember, computing_id=computing_id)
            if staff is None:
                raise NotFoundError(f"Unable to find staff member {computing_id}")
            if master_file.is_deaccessioned:
                raise PreconditionError(f"Master file {master_file.filename} is already deaccessioned")
            self.lineage.ensure_deaccessionable(master_file)
            unit = self.load_unit(master_file.unit_id)

            report.advance(MutationPhase.APPLYING)
            job.info(f"User {computing_id} begins to deaccession masterfile {master_file.filename}")
            now = datetime.utcnow()
            master_file.deaccessioned_at = now
            master_file.deaccession_note = note
            master_file.deaccessioned_by = staff.id
            try:
                self.store.update_fields(master_file, "deaccessioned_at", "deaccession_note", "deaccessioned_by")
            except STORE_ERRORS as exc:
                raise MutationError(f"Unable to mark masterfile {master_file.filename} as deaccessioned: {exc}") from exc

            try:
                if not self.archive.remove(unit.id, master_file.filename, self.archive.override_for(unit, master_file)):
                    job.warning(f"No archive found for {master_file.filename}")
            except ArchiveError as exc:
                report.fail_item(job, master_file.filename, str(exc))
            self._unpublish(job, master_file)

            report.advance(MutationPhase.FINALIZING)
            if master_file.date_dl_ingest is not None:
                job.info("File was published to DL; flagging for removal")
                master_file.date_dl_update = now
                self.store.update_fields(master_file, "date_dl_update")
                metadata = self.store.get(Metadata, master_file.metadata_id)
                if metadata is not None:
                    metadata.date_dl_update = now
                    self.store.update_fields(metadata, "date_dl_update")
            report.applied.append(master_file.filename)
            job.info(f"masterfile {master_file.filename} deaccessioned by {computing_id}")
        return report

    # -- archive-backed maintenance --------------------------------------

    def _bytes_location(self, unit: Unit, master_file: MasterFile) -> Path:
        """Where readable bytes for a master file are: archive, clone working copy, or the original's archive."""
        if master_file.is_clone:
            working_copy = self.working.finalization_dir(unit.id) / master_file.filename
            if working_copy.is_file():
                return working_copy
            root = self.lineage.root_original(master_file)
            return self.archive.location_of(self.load_unit(root.unit_id), root)
        return self.archive.location_of(unit, master_file)

    def update_tech_metadata(self, job: JobLogger, master_file_id: int) -> MutationReport:
        """Recreate a master file's tech metadata from its archived bytes."""
        report = MutationReport("UpdateTechMetadata")
        with self._lifecycle(job, report):
            master_file = self.load_master_file(master_file_id)
            unit = self.load_unit(master_file.unit_id)
            path = self._bytes_location(unit, master_file)
            if not path.is_file():
                raise ArchiveMissing(f"Master file {master_file_id} archive {path} does not exist")
            report.advance(MutationPhase.APPLYING)
            job.info(f"Create tech metadata from archived master file {path}")
            if self._regenerate_tech_metadata(job, master_file, path) is None:
                raise MutationError(f"Unable to create tech metadata for {master_file.pid}")
            report.applied.append(master_file.filename)
        return report

    def publish_master_file(self, job: JobLogger, master_file_id: int) -> MutationReport:
        """Republish one master file to IIIF from its archive copy."""
        report = MutationReport("UpdateIIIF")
        with self._lifecycle(job, report):
            master_file = self.load_master_file(master_file_id)
            if master_file.is_deaccessioned:
                raise PreconditionError(f"Master file {master_file_id}:{master_file.filename} has been deaccessioned and cannot be updated")
            if master_file.is_clone:
                raise LineageError(f"Master file {master_file_id}:{master_file.filename} is a clone and cannot be updated")
            unit = self.load_unit(master_file.unit_id)
            path = self.archive.location_of(unit, master_file)
            if not path.is_file():
                raise ArchiveMissing(f"Master file {master_file_id} archive {path} does not exist")
            tech_metadata = self.store.find(TechMetadata, master_file_id=master_file.id)
            if tech_metadata is None or tech_metadata.width == 0 or tech_metadata.height == 0:
                raise ValidationError(f"{master_file.pid} has invalid tech metadata and is likely corrupt")
            if tech_metadata.color_space.strip() == "CMYK":
                raise ValidationError(f"{master_file.pid} has unsupported colorspace CMYK")

            report.advance(MutationPhase.APPLYING)
            try:
                self.publisher.publish(master_file, tech_metadata, path, True)
            except PublicationError as exc:
                raise MutationError(f"Update IIIF for master file {master_file_id} from archive {path} failed: {exc}") from exc
            report.applied.append(master_file.filename)
        return report

    def unpublish_master_file(self, job: JobLogger, master_file_id: int) -> MutationReport:
        report = MutationReport("DeleteIIIF")
        with self._lifecycle(job, report):
            master_file = self.load_master_file(master_file_id)
            report.advance(MutationPhase.APPLYING)
            try:
                self.publisher.unpublish(master_file)
            except PublicationError as exc:
                raise MutationError(f"Unable to unpublish IIIF resource: {exc}") from exc
            report.applied.append(master_file.filename)
        return report

    def publish_unit(self, job: JobLogger, unit_id: int, overwrite: bool) -> MutationReport:
        """Publish every canonical, archived master file of a unit to IIIF."""
        report = MutationReport("UnitIIIF")
        with self._lifecycle(job, report):
            job.info(f"Loading target unit {unit_id}")
            unit = self.load_unit(unit_id)
            files = self.unit_master_files(unit_id)
            report.advance(MutationPhase.APPLYING)
            job.info(f"Publishing {len(files)} master files to IIIF with overwrite={overwrite}")
            for master_file in files:
                if master_file.is_deaccessioned:
                    job.info(f"Master file {master_file.filename} has been deaccessioned will not be published to IIIF")
                    continue
                if master_file.is_clone:
                    job.info(f"Master file {master_file.filename} is a clone and will not be published to IIIF")
                    continue
                path = self.archive.location_of(unit, master_file)
                if not path.is_file():
                    report.fail_item(job, master_file.filename, f"Master file does not exist in the archive at {path}")
                    continue
                tech_metadata = self.store.find(TechMetadata, master_file_id=master_file.id)
                if self._publish(job, master_file, tech_metadata, path, overwrite):
                    report.applied.append(master_file.filename)
                else:
                    report.failures.append(ItemFailure(item=master_file.filename, reason="publication failed"))
        return report

    def copy_from_archive(self, job: JobLogger, unit_id: int, computing_id: str, filenames: Optional[Sequence[str]] = None) -> MutationReport:
        """
        Copy archived master files into a staff member's download directory.

        ``filenames`` of None copies every master file in the unit. Clones in
        a reorder unit are copied from their original's archive location.
        """
        report = MutationReport("CopyArchivedFilesToProduction")
        with self._lifecycle(job, report):
            unit = self.load_unit(unit_id)
            if self.store.count(StaffMember, computing_id=computing_id) != 1:
                raise ValidationError(f"{computing_id} is not a valid computing ID")
            files = self.unit_master_files(unit_id)
            if filenames is None:
                targets = files
            else:
                by_name = {mf.filename: mf for mf in files}
                targets = []
                for filename in filenames:
                    if filename not in by_name:
                        report.fail_item(job, filename, f"Unable to find master file {filename} in unit {unit_id}")
                        continue
                    targets.append(by_name[filename])
            dest_dir = self.working.from_archive_dir(computing_id, unit_id)
            job.info(f"Ensure download destination directory {dest_dir} exists")

            report.advance(MutationPhase.APPLYING)
            for master_file in targets:
                if master_file.is_deaccessioned:
                    report.fail_item(job, master_file.filename, f"Master file {master_file.filename} has been deaccessioned and cannot be downloaded")
                    continue
                if unit.reorder and master_file.is_clone:
                    root = self.lineage.root_original(master_file)
                    source = self.archive.location_of(self.load_unit(root.unit_id), root)
                else:
                    source = self.archive.location_of(unit, master_file)
                job.info(f"Copying {source.name} from archive directory {source.parent}")
                try:
                    archive_checksum, copy_checksum = self.archive.copy_out(source, dest_dir)
                except ArchiveError as exc:
                    report.fail_item(job, master_file.filename, f"Unable to copy {master_file.filename}: {exc}")
                    continue
                if archive_checksum != copy_checksum:
                    report.mismatch(job, master_file.filename, f"Checksum does not match on copied file {dest_dir / source.name}")
                report.applied.append(master_file.filename)
            report.advance(MutationPhase.FINALIZING)
            job.info(f"{len(report.applied)} Masterfiles from unit {unit_id} copied to {dest_dir}")
        return report
