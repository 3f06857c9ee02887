"""
Tests for the archive store adapter and working areas.
"""

import pytest

from conftest import write_tif

from dpg_jobs.archive import ArchiveStore
from dpg_jobs.errors import ArchiveError, ArchiveMissing, InvalidFilename
from dpg_jobs.records import MasterFile, Unit


class TestArchiveStore:
    """Tests for archive, rename, remove and copy out."""

    def test_archive_copies_bytes_and_returns_checksum(self, archive, tmp_path):
        source = write_tif(tmp_path / "in" / "000000042_0001.tif", 1)
        checksum = archive.archive(42, source, "000000042_0001.tif")

        target = tmp_path / "archive" / "000000042" / "000000042_0001.tif"
        assert target.read_bytes() == source.read_bytes()
        assert checksum == archive.checksum(source)

    def test_checksum_is_path_independent(self, archive, tmp_path):
        first = write_tif(tmp_path / "a.tif", 3)
        second = tmp_path / "b.tif"
        second.write_bytes(first.read_bytes())
        assert archive.checksum(first) == archive.checksum(second)

    def test_rename_verifies_checksum(self, archive, tmp_path):
        source = write_tif(tmp_path / "in.tif", 1)
        checksum = archive.archive(42, source, "000000042_0001.tif")

        assert archive.rename(42, "000000042_0001.tif", checksum, "000000042_0002.tif")
        assert not archive.exists(42, "000000042_0001.tif")
        assert archive.exists(42, "000000042_0002.tif")

    def test_rename_reports_mismatch(self, archive, tmp_path):
        archive.archive(42, write_tif(tmp_path / "in.tif", 1), "000000042_0001.tif")
        assert archive.rename(42, "000000042_0001.tif", "not-the-checksum", "000000042_0002.tif") is False

    def test_rename_refuses_to_overwrite(self, archive, tmp_path):
        archive.archive(42, write_tif(tmp_path / "one.tif", 1), "000000042_0001.tif")
        archive.archive(42, write_tif(tmp_path / "two.tif", 2), "000000042_0002.tif")
        with pytest.raises(ArchiveError):
            archive.rename(42, "000000042_0001.tif", "", "000000042_0002.tif")
        assert archive.exists(42, "000000042_0001.tif")

    def test_rename_missing_source(self, archive):
        with pytest.raises(ArchiveMissing):
            archive.rename(42, "000000042_0001.tif", "", "000000042_0002.tif")

    def test_remove_is_idempotent(self, archive, tmp_path):
        archive.archive(42, write_tif(tmp_path / "in.tif", 1), "000000042_0001.tif")
        assert archive.remove(42, "000000042_0001.tif") is True
        assert archive.remove(42, "000000042_0001.tif") is False

    def test_copy_out(self, archive, tmp_path):
        archive.archive(42, write_tif(tmp_path / "in.tif", 1), "000000042_0001.tif")
        source = archive.path_for(42, "000000042_0001.tif")
        archived, copied = archive.copy_out(source, tmp_path / "out")
        assert archived == copied
        assert (tmp_path / "out" / "000000042_0001.tif").is_file()

    def test_copy_out_missing(self, archive, tmp_path):
        with pytest.raises(ArchiveMissing):
            archive.copy_out(tmp_path / "nope.tif", tmp_path / "out")

    def test_count_tif_files(self, archive, tmp_path):
        archive.archive(42, write_tif(tmp_path / "in.tif", 1), "000000042_0001.tif")
        assert archive.count_tif_files("000000042") == 1
        assert archive.count_tif_files("000000043") is None
        assert archive.count_tif_files("../") is None


class TestArchiveLocation:
    """Tests for non-standard archive locations."""

    def test_standard_location(self, archive):
        unit = Unit(id=42)
        master_file = MasterFile(unit_id=42, filename="000000042_0001.tif")
        assert archive.location_of(unit, master_file) == archive.archive_dir / "000000042" / "000000042_0001.tif"

    def test_staff_notes_override(self, archive):
        unit = Unit(id=42, staff_notes="Rescanned. Archive: special_collections_01 per request")
        master_file = MasterFile(unit_id=42, filename="000000042_0001.tif")
        assert archive.location_of(unit, master_file) == archive.archive_dir / "special_collections_01" / "000000042_0001.tif"

    def test_fine_arts_filename_override(self, archive):
        unit = Unit(id=42)
        master_file = MasterFile(unit_id=42, filename="ARCH123_0001.tif")
        assert archive.location_of(unit, master_file) == archive.archive_dir / "ARCH123" / "ARCH123_0001.tif"

    def test_checksum_algorithm_is_configurable(self, tmp_path):
        source = write_tif(tmp_path / "in.tif", 1)
        assert len(ArchiveStore(tmp_path, algorithm="sha256").checksum(source)) == 64
        assert len(ArchiveStore(tmp_path).checksum(source)) == 32


class TestWorkingArea:
    """Tests for the transient working directories."""

    def test_list_tif_files_sorted(self, working):
        src = working.unit_update_dir(42)
        write_tif(src / "000000042_0007.tif", 7)
        write_tif(src / "000000042_0006.tif", 6)
        (src / "notes.txt").write_text("ignored")

        found = working.list_tif_files(src, 42)
        assert [tif.filename for tif in found] == ["000000042_0006.tif", "000000042_0007.tif"]
        assert all(tif.size > 0 for tif in found)

    def test_list_tif_files_rejects_foreign_names(self, working):
        src = working.unit_update_dir(42)
        write_tif(src / "000000099_0001.tif", 1)
        with pytest.raises(InvalidFilename):
            working.list_tif_files(src, 42)

    def test_missing_directory_has_no_files(self, working):
        assert working.list_tif_files(working.unit_update_dir(42), 42) == []

    def test_clone_lifecycle(self, working, tmp_path):
        source = write_tif(tmp_path / "src.tif", 1)
        working.clone_into(source, 7, "000000007_0001.tif")
        assert working.rename_clone(7, "000000007_0001.tif", "000000007_0002.tif")
        assert working.remove_clone(7, "000000007_0002.tif")
        assert not working.remove_clone(7, "000000007_0002.tif")

    def test_rename_clone_never_overwrites(self, working, tmp_path):
        working.clone_into(write_tif(tmp_path / "one.tif", 1), 7, "000000007_0001.tif")
        working.clone_into(write_tif(tmp_path / "two.tif", 2), 7, "000000007_0002.tif")
        before = (working.finalization_dir(7) / "000000007_0001.tif").read_bytes()

        with pytest.raises(ArchiveError):
            working.rename_clone(7, "000000007_0002.tif", "000000007_0001.tif")

        assert (working.finalization_dir(7) / "000000007_0001.tif").read_bytes() == before
        assert (working.finalization_dir(7) / "000000007_0002.tif").is_file()

    def test_from_archive_dir_is_sanitized(self, working):
        path = working.from_archive_dir("../ABC3d", 42)
        assert path.parent.name == "abc3d"
        assert path.name == "000000042"
