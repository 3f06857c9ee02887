"""
Archive store adapter and transient working areas.

The archive is a directory tree ``<archive_dir>/<unit 9 digits>/<filename>``
holding the canonical bytes of every original master file. It is the single
point of truth for whether a master file's bytes exist and match their
recorded checksum. All operations are per file; there is no cross-file
transaction.

Working areas live under the processing directory and are always safe to
clean:

- ``finalization/unit_update/<unit>``: incoming files for add/replace
- ``finalization/<unit>``: cloned files waiting for deliverables
- ``from_archive/<computing id>/<unit>``: copies requested by staff
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import ArchiveError, ArchiveMissing, InvalidFilename
from .records import MasterFile, Unit
from .sequence import belongs_to_unit, filename_unit_prefix, unit_directory
from .utils import copy_file, ensure_directory, file_checksum, sanitize_label

logger = logging.getLogger(__name__)

# Fine arts collections are archived in directories named after the filename prefix
FILENAME_OVERRIDE_MARKERS = ("ARCH", "AVRN", "VRC")


@dataclass(frozen=True)
class TifFile:
    filename: str
    path: Path
    size: int


class ArchiveStore:
    """
    Durable master file storage keyed by unit id and filename.

    Args:
        archive_dir: Root of the archive tree
        file_mode: Permission bits applied to archived files
        algorithm: Checksum algorithm used for verification
    """

    def __init__(self, archive_dir: Path, file_mode: int = 0o664, algorithm: str = "md5") -> None:
        self.archive_dir = Path(archive_dir)
        self.file_mode = file_mode
        self.algorithm = algorithm

    def unit_dir(self, unit_id: int, override: Optional[str] = None) -> Path:
        if override:
            return self.archive_dir / override
        return self.archive_dir / unit_directory(unit_id)

    def path_for(self, unit_id: int, filename: str, override: Optional[str] = None) -> Path:
        return self.unit_dir(unit_id, override) / filename

    @staticmethod
    def override_for(unit: Unit, master_file: MasterFile) -> Optional[str]:
        """
        Name the non-standard archive directory of a master file, if any.

        Filenames carrying a fine arts marker are archived under their own
        prefix; otherwise a unit whose staff notes name an archive directory
        is archived there; everything else uses the unit's padded id.
        """
        filename = master_file.filename
        if any(marker in filename for marker in FILENAME_OVERRIDE_MARKERS) and "_" in filename:
            return filename_unit_prefix(filename)
        return unit.archive_override

    def location_of(self, unit: Unit, master_file: MasterFile) -> Path:
        return self.path_for(unit.id, master_file.filename, self.override_for(unit, master_file))

    def checksum(self, path: Path) -> str:
        return file_checksum(path, self.algorithm)

    def exists(self, unit_id: int, filename: str, override: Optional[str] = None) -> bool:
        return self.path_for(unit_id, filename, override).is_file()

    def archive(self, unit_id: int, source_path: Path, target_filename: str, override: Optional[str] = None) -> str:
        """
        Copy a file into the archive and return the checksum of the copy.

        The caller compares the result with the expected checksum; a
        mismatch does not undo the copy.

        Raises:
            ArchiveError: If the unit directory cannot be created or the copy fails
        """
        target_dir = self.unit_dir(unit_id, override)
        target = target_dir / target_filename
        try:
            ensure_directory(target_dir, 0o777)
            checksum = copy_file(Path(source_path), target, self.file_mode, self.algorithm)
        except OSError as exc:
            raise ArchiveError(f"Unable to archive {source_path} to {target}: {exc}") from exc
        logger.info(f"{target_filename} archived to {target}. Checksum [{checksum}]")
        return checksum

    def rename(
        self,
        unit_id: int,
        old_filename: str,
        expected_checksum: str,
        new_filename: str,
        override: Optional[str] = None,
    ) -> bool:
        """
        Rename an archived file in place and verify its checksum.

        Returns:
            True if the renamed bytes match ``expected_checksum``

        Raises:
            ArchiveMissing: If the source file is not in the archive
            ArchiveError: If the target already exists or the rename fails
        """
        source = self.path_for(unit_id, old_filename, override)
        target = self.path_for(unit_id, new_filename, override)
        if not source.is_file():
            raise ArchiveMissing(f"No archive found for {old_filename} at {source}")
        if target.exists():
            raise ArchiveError(f"Refusing to rename {source} over existing {target}")
        try:
            os.rename(source, target)
        except OSError as exc:
            raise ArchiveError(f"Unable to rename {source} -> {target}: {exc}") from exc
        new_checksum = self.checksum(target)
        if new_checksum != expected_checksum:
            logger.warning(f"Checksum does not match for rename {source} -> {target}; {expected_checksum} vs {new_checksum}")
            return False
        return True

    def remove(self, unit_id: int, filename: str, override: Optional[str] = None) -> bool:
        """
        Delete archived bytes. Absence is not an error.

        Returns:
            True if a file was removed, False if there was nothing to remove

        Raises:
            ArchiveError: If the file exists but cannot be removed
        """
        target = self.path_for(unit_id, filename, override)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.info(f"No archive found for {filename}; nothing to remove")
            return False
        except OSError as exc:
            raise ArchiveError(f"Unable to remove {target} from archive: {exc}") from exc
        logger.info(f"Archived file {target} was removed")
        return True

    def copy_out(self, source: Path, dest_dir: Path) -> tuple[str, str]:
        """
        Copy archived bytes to a working directory.

        Returns:
            (archive checksum, copy checksum)

        Raises:
            ArchiveMissing: If the archived file does not exist
            ArchiveError: If the copy fails
        """
        if not source.is_file():
            raise ArchiveMissing(f"Archived file {source} does not exist")
        archive_checksum = self.checksum(source)
        try:
            ensure_directory(dest_dir)
            copy_checksum = copy_file(source, dest_dir / source.name, 0o666, self.algorithm)
        except OSError as exc:
            raise ArchiveError(f"Unable to copy {source} to {dest_dir}: {exc}") from exc
        return archive_checksum, copy_checksum

    def count_tif_files(self, directory: str) -> Optional[int]:
        """Count .tif files below an archive directory, or None if it does not exist."""
        root = (self.archive_dir / directory).resolve()
        if self.archive_dir.resolve() not in (root, *root.parents) or not root.is_dir():
            return None
        return sum(1 for path in root.rglob("*.tif") if path.is_file())


class WorkingArea:
    """Transient directories under the processing root; never a source of truth."""

    def __init__(self, processing_dir: Path, file_mode: int = 0o664, algorithm: str = "md5") -> None:
        self.processing_dir = Path(processing_dir)
        self.file_mode = file_mode
        self.algorithm = algorithm

    def finalization_dir(self, unit_id: int) -> Path:
        return self.processing_dir / "finalization" / unit_directory(unit_id)

    def unit_update_dir(self, unit_id: int) -> Path:
        return self.processing_dir / "finalization" / "unit_update" / unit_directory(unit_id)

    def from_archive_dir(self, computing_id: str, unit_id: int) -> Path:
        return self.processing_dir / "from_archive" / sanitize_label(computing_id, "unknown") / unit_directory(unit_id)

    def list_tif_files(self, src_dir: Path, unit_id: int) -> List[TifFile]:
        """
        Find the incoming .tif files for a unit, sorted by filename.

        Raises:
            InvalidFilename: If a .tif file is not named for this unit
        """
        if not src_dir.is_dir():
            return []
        found = []
        for path in sorted(src_dir.rglob("*.tif"), key=lambda p: p.name):
            if not path.is_file():
                continue
            if not belongs_to_unit(path.name, unit_id):
                raise InvalidFilename(path.name, f"invalid file in {src_dir} for unit {unit_id}")
            found.append(TifFile(filename=path.name, path=path, size=path.stat().st_size))
        return found

    def clone_into(self, source: Path, dest_unit_id: int, filename: str) -> str:
        """Copy bytes into a destination unit's finalization directory and return the copy's checksum."""
        dest_dir = ensure_directory(self.finalization_dir(dest_unit_id))
        return copy_file(source, dest_dir / filename, self.file_mode, self.algorithm)

    def remove_clone(self, unit_id: int, filename: str) -> bool:
        """
        Delete a clone's working copy. Absence is not an error.

        Raises:
            ArchiveError: If the copy exists but cannot be removed
        """
        path = self.finalization_dir(unit_id) / filename
        if not path.is_file():
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise ArchiveError(f"Unable to remove cloned file {path}: {exc}") from exc
        return True

    def rename_clone(self, unit_id: int, old_filename: str, new_filename: str) -> bool:
        """
        Rename a clone's working copy, never over an existing path.

        Raises:
            ArchiveError: If the target exists or the rename fails
        """
        source = self.finalization_dir(unit_id) / old_filename
        if not source.is_file():
            return False
        target = self.finalization_dir(unit_id) / new_filename
        if target.exists():
            raise ArchiveError(f"Refusing to rename cloned file {source} over existing {target}")
        try:
            os.rename(source, target)
        except OSError as exc:
            raise ArchiveError(f"Unable to rename cloned file {source} -> {target}: {exc}") from exc
        return True

    def clean(self, directory: Path) -> None:
        shutil.rmtree(directory, ignore_errors=True)
