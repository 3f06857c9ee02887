"""
Pytest configuration and fixtures for DPG Jobs tests.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest
from PIL import Image

# Set test environment variables before importing the app
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="dpg_test_"))
os.environ["ARCHIVE_DIR"] = str(_TEST_ROOT / "archive")
os.environ["PROCESSING_DIR"] = str(_TEST_ROOT / "processing")
os.environ["DB_PATH"] = str(_TEST_ROOT / "db" / "dpg_jobs.db")
os.environ["IIIF_STAGING_DIR"] = str(_TEST_ROOT / "iiif")
os.environ.pop("IIIF_BUCKET", None)

from dpg_jobs.archive import ArchiveStore, WorkingArea
from dpg_jobs.database import RecordStore
from dpg_jobs.errors import PublicationError
from dpg_jobs.lineage import LineageTracker
from dpg_jobs.mutations import MutationEngine
from dpg_jobs.records import MasterFile, StaffMember, TechMetadata, Unit
from dpg_jobs.sequence import format_filename
from dpg_jobs.techmetadata import extract_tech_metadata


def page_color(page):
    """A distinct RGB color per page so every page image has different bytes."""
    return ((page * 37) % 256, (page * 73) % 256, (page * 11 + 40) % 256)


def write_tif(path, page, size=(16, 12)):
    """Write a small RGB TIFF for a page and return its path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, page_color(page)).save(path, format="TIFF", dpi=(300, 300))
    return path


class FakePublisher:
    """Records publish/unpublish calls instead of talking to S3."""

    def __init__(self, fail=False):
        self.fail = fail
        self.published = []
        self.unpublished = []

    def publish(self, master_file, tech_metadata, source_path, overwrite):
        if self.fail:
            raise PublicationError("publication is down")
        self.published.append((master_file.id, Path(source_path).name, overwrite))

    def unpublish(self, master_file):
        if self.fail:
            raise PublicationError("publication is down")
        self.unpublished.append(master_file.id)


class RecordingJob:
    """Stand-in for a JobLog that keeps every line in memory."""

    def __init__(self):
        self.infos = []
        self.warnings = []
        self.errors = []

    def info(self, text):
        self.infos.append(text)

    def warning(self, text):
        self.warnings.append(text)

    def error(self, text):
        self.errors.append(text)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the directories used by the application module."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def store(tmp_path):
    return RecordStore(tmp_path / "records.db")


@pytest.fixture
def archive(tmp_path):
    return ArchiveStore(tmp_path / "archive")


@pytest.fixture
def working(tmp_path):
    return WorkingArea(tmp_path / "processing")


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def engine(store, archive, working, publisher):
    return MutationEngine(store, archive, working, LineageTracker(store), publisher)


@pytest.fixture
def job():
    return RecordingJob()


@pytest.fixture
def staff(store):
    return store.create(StaffMember(computing_id="abc3d", email="abc3d@example.edu"))


@pytest.fixture
def make_unit(store, archive, tmp_path):
    """
    Factory for a unit with archived master files for pages 1..n.

    Titles are the page numbers, checksums match the archived bytes and
    each file has tech metadata.
    """

    def _make(pages=5, staff_notes=""):
        unit = store.create(Unit(staff_notes=staff_notes, metadata_id=7))
        source_dir = tmp_path / "sources" / str(unit.id)
        for page in range(1, pages + 1):
            filename = format_filename(unit.id, page)
            source = write_tif(source_dir / filename, page)
            master_file = store.create(
                MasterFile(
                    unit_id=unit.id,
                    filename=filename,
                    title=str(page),
                    size=source.stat().st_size,
                    checksum=archive.checksum(source),
                    metadata_id=unit.metadata_id,
                    component_id=11,
                    location_id=12,
                )
            )
            archive.archive(unit.id, source, filename, unit.archive_override)
            tech_metadata = extract_tech_metadata(source)
            tech_metadata.master_file_id = master_file.id
            store.create(tech_metadata)
        unit.master_files_count = pages
        store.update_fields(unit, "master_files_count")
        return unit

    return _make


def unit_files(store, unit_id):
    return store.query(MasterFile, order_by="filename", unit_id=unit_id)


def tech_metadata_for(store, master_file_id):
    return store.find(TechMetadata, master_file_id=master_file_id)
