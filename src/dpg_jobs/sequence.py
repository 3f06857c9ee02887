"""
Page sequence model for a unit's master files.

Master file filenames encode the page position: ``%09d_%04d.tif`` (unit id,
page number). Everything here is a pure function over an immutable
snapshot of a unit's files; nothing touches the store or the archive.
Mutations load a snapshot, compute the complete list of renames with these
helpers, and only then apply writes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .errors import InvalidFilename, SequenceGap, SequenceOverflow

FILENAME_PATTERN = re.compile(r"^(\d+)_(\d+)\.tif$")
MAX_PAGE_NUMBER = 9999


@dataclass(frozen=True)
class PageEntry:
    """One master file as seen by the sequence model."""

    master_file_id: int
    filename: str
    title: str
    page: Optional[int]


@dataclass(frozen=True)
class RenameStep:
    master_file_id: int
    old_filename: str
    new_filename: str
    old_title: str
    new_title: str

    @property
    def title_changed(self) -> bool:
        return self.old_title != self.new_title


def unit_directory(unit_id: int) -> str:
    return f"{unit_id:09d}"


def format_filename(unit_id: int, page_number: int) -> str:
    return f"{unit_id:09d}_{page_number:04d}.tif"


def parse_page_number(filename: str) -> int:
    """
    Extract the page number from a master file filename.

    Raises:
        InvalidFilename: If the filename is not ``<unit>_<digits>.tif``
    """
    match = FILENAME_PATTERN.match(filename)
    if match is None:
        raise InvalidFilename(filename)
    return int(match.group(2))


def filename_unit_prefix(filename: str) -> str:
    return filename.split("_", 1)[0]


def belongs_to_unit(filename: str, unit_id: int) -> bool:
    """True if the filename is a well formed master file name for this unit."""
    return re.match(rf"^{unit_directory(unit_id)}_\d{{4,}}\.tif$", filename) is not None


def try_page_number(filename: str) -> Optional[int]:
    try:
        return parse_page_number(filename)
    except InvalidFilename:
        return None


def detect_gap(sorted_pages: Sequence[int]) -> Optional[int]:
    """Return the first index i where ``pages[i+1] != pages[i] + 1``, or None."""
    for idx in range(len(sorted_pages) - 1):
        if sorted_pages[idx + 1] != sorted_pages[idx] + 1:
            return idx
    return None


def is_numeric_title(title: str) -> bool:
    """True for canonical decimal integers: "12" but not "012", "12a" or " 12"."""
    return title.isdigit() and str(int(title)) == title


def titles_track_pages(snapshot: Sequence[PageEntry]) -> bool:
    """
    Decide whether titles in a unit are derived from page numbers.

    Every entry must have a parseable page, a purely numeric title equal to
    that page, and must follow its predecessor by the same step in both
    title and page. A single free-text or out-of-step title means titles are
    left alone by bulk renumbering.
    """
    previous: Optional[PageEntry] = None
    for entry in snapshot:
        if entry.page is None or not is_numeric_title(entry.title):
            return False
        if int(entry.title) != entry.page:
            return False
        if previous is not None:
            if entry.page <= previous.page:
                return False
            if int(entry.title) - int(previous.title) != entry.page - previous.page:
                return False
        previous = entry
    return True


def last_page(snapshot: Sequence[PageEntry]) -> int:
    """Highest page number in the snapshot, 0 for an empty unit."""
    pages = [entry.page for entry in snapshot if entry.page is not None]
    return max(pages) if pages else 0


def validate_new_pages(filenames: Iterable[str], last_existing_page: int) -> List[int]:
    """
    Validate a batch of incoming filenames against the unit's current sequence.

    The batch must itself be contiguous and must not start beyond
    ``last_existing_page + 1``.

    Returns:
        The batch page numbers, ascending

    Raises:
        InvalidFilename: If any filename cannot be parsed
        SequenceGap: If the batch skips a page or leaves a gap after the unit
        SequenceOverflow: If the batch runs past the largest page number
    """
    pages = sorted(parse_page_number(name) for name in filenames)
    if not pages:
        return pages
    gap_idx = detect_gap(pages)
    if gap_idx is not None:
        raise SequenceGap(f"Gap in sequence number of new master files; {pages[gap_idx]} to {pages[gap_idx + 1]}")
    if pages[0] < 1:
        raise SequenceGap(f"New master file sequence must start at page 1 or later, not {pages[0]}")
    if pages[0] > last_existing_page + 1:
        raise SequenceGap(f"New master file sequence number gap (from {last_existing_page} to {pages[0]})")
    if pages[-1] > MAX_PAGE_NUMBER:
        raise SequenceOverflow(f"Page {pages[-1]} exceeds the maximum page number {MAX_PAGE_NUMBER}")
    return pages


def plan_insertion_shift(snapshot: Sequence[PageEntry], unit_id: int, first_new_page: int, gap_size: int) -> List[RenameStep]:
    """
    Compute the renames that open a gap of ``gap_size`` pages at ``first_new_page``.

    Every entry at or after the insertion point moves up by ``gap_size``.
    Steps are returned in descending page order so that applying them one
    by one never renames onto a file that has not moved yet.

    Raises:
        InvalidFilename: If an entry's filename cannot be parsed
        SequenceOverflow: If a shifted page would exceed the maximum
    """
    for entry in snapshot:
        if entry.page is None:
            raise InvalidFilename(entry.filename, f"master file {entry.master_file_id} cannot be shifted")
    retitle = titles_track_pages(snapshot)
    moving = sorted((entry for entry in snapshot if entry.page >= first_new_page), key=lambda e: e.page, reverse=True)
    steps = []
    for entry in moving:
        new_page = entry.page + gap_size
        if new_page > MAX_PAGE_NUMBER:
            raise SequenceOverflow(f"Shifting {entry.filename} by {gap_size} exceeds page {MAX_PAGE_NUMBER}")
        new_title = str(int(entry.title) + gap_size) if retitle else entry.title
        steps.append(
            RenameStep(
                master_file_id=entry.master_file_id,
                old_filename=entry.filename,
                new_filename=format_filename(unit_id, new_page),
                old_title=entry.title,
                new_title=new_title,
            )
        )
    return steps


def plan_gap_closure(snapshot: Sequence[PageEntry], unit_id: int) -> List[RenameStep]:
    """
    Compute the renames that make the snapshot contiguous from page 1.

    The snapshot must be ordered by filename. Each entry's expected page is
    its position (1-based); entries whose parsed page is higher are moved
    down. Entries with unparseable filenames keep their position but are
    never renamed. Steps are returned in ascending page order.
    """
    retitle = titles_track_pages(snapshot)
    steps = []
    for expected, entry in enumerate(snapshot, start=1):
        if entry.page is None or entry.page <= expected:
            continue
        new_title = str(expected) if retitle else entry.title
        steps.append(
            RenameStep(
                master_file_id=entry.master_file_id,
                old_filename=entry.filename,
                new_filename=format_filename(unit_id, expected),
                old_title=entry.title,
                new_title=new_title,
            )
        )
    return steps


def is_contiguous(pages: Iterable[int]) -> bool:
    """True if the pages, sorted, are exactly 1..n."""
    ordered = sorted(pages)
    return ordered == list(range(1, len(ordered) + 1))
