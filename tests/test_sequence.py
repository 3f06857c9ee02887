"""
Tests for the page sequence model.

Tests cover:
- Filename formatting and parsing
- Batch validation (gaps, overflow, start beyond the unit)
- Insertion shift and gap closure planning
- The numeric title heuristic
"""

import pytest

from dpg_jobs.errors import InvalidFilename, SequenceGap, SequenceOverflow
from dpg_jobs.sequence import (
    PageEntry,
    belongs_to_unit,
    format_filename,
    is_contiguous,
    last_page,
    parse_page_number,
    plan_gap_closure,
    plan_insertion_shift,
    titles_track_pages,
    validate_new_pages,
)

UNIT = 1234


def entries(pages, titles=None):
    titles = titles or [str(page) for page in pages]
    return tuple(
        PageEntry(master_file_id=idx + 1, filename=format_filename(UNIT, page), title=title, page=page)
        for idx, (page, title) in enumerate(zip(pages, titles))
    )


class TestFilenames:
    """Tests for the bit-exact filename convention."""

    def test_format_filename_pads_unit_and_page(self):
        assert format_filename(1234, 7) == "000001234_0007.tif"

    def test_parse_page_number(self):
        assert parse_page_number("000001234_0007.tif") == 7

    @pytest.mark.parametrize("filename", ["000001234_0007.tiff", "000001234-0007.tif", "page7.tif"])
    def test_parse_rejects_bad_names(self, filename):
        with pytest.raises(InvalidFilename) as info:
            parse_page_number(filename)
        assert info.value.filename == filename

    def test_belongs_to_unit(self):
        assert belongs_to_unit("000001234_0001.tif", 1234)
        assert not belongs_to_unit("000001235_0001.tif", 1234)
        assert not belongs_to_unit("000001234_001.tif", 1234)


class TestValidateNewPages:
    """Tests for incoming batch validation."""

    def test_append_after_last_page(self):
        names = [format_filename(UNIT, page) for page in (7, 6)]
        assert validate_new_pages(names, 5) == [6, 7]

    def test_gap_inside_batch_is_rejected(self):
        names = [format_filename(UNIT, page) for page in (6, 8)]
        with pytest.raises(SequenceGap):
            validate_new_pages(names, 5)

    def test_batch_starting_beyond_unit_is_rejected(self):
        with pytest.raises(SequenceGap):
            validate_new_pages([format_filename(UNIT, 8)], 5)

    def test_insert_inside_unit_is_allowed(self):
        names = [format_filename(UNIT, page) for page in (3, 4)]
        assert validate_new_pages(names, 5) == [3, 4]

    def test_page_zero_is_rejected(self):
        with pytest.raises(SequenceGap):
            validate_new_pages([format_filename(UNIT, 0)], 0)

    def test_overflow(self):
        with pytest.raises(SequenceOverflow):
            validate_new_pages(["000001234_10000.tif"], 9999)


class TestInsertionShift:
    """Tests for opening a gap in the sequence."""

    def test_shift_moves_later_pages_in_descending_order(self):
        steps = plan_insertion_shift(entries([1, 2, 3, 4, 5]), UNIT, 3, 2)
        assert [(s.old_filename, s.new_filename) for s in steps] == [
            (format_filename(UNIT, 5), format_filename(UNIT, 7)),
            (format_filename(UNIT, 4), format_filename(UNIT, 6)),
            (format_filename(UNIT, 3), format_filename(UNIT, 5)),
        ]
        assert [s.new_title for s in steps] == ["7", "6", "5"]

    def test_free_text_titles_are_kept(self):
        snapshot = entries([1, 2, 3], titles=["Cover", "2", "3"])
        steps = plan_insertion_shift(snapshot, UNIT, 2, 1)
        assert [s.new_title for s in steps] == ["3", "2"]
        assert not any(s.title_changed for s in steps)

    def test_shift_past_max_page_overflows(self):
        with pytest.raises(SequenceOverflow):
            plan_insertion_shift(entries([9998, 9999]), UNIT, 9998, 1)

    def test_unparseable_filename_blocks_shift(self):
        snapshot = entries([1, 2]) + (PageEntry(9, "odd.tif", "x", None),)
        with pytest.raises(InvalidFilename):
            plan_insertion_shift(snapshot, UNIT, 1, 1)


class TestGapClosure:
    """Tests for renumbering after a delete."""

    def test_closes_gap_after_deleted_page(self):
        steps = plan_gap_closure(entries([1, 2, 4, 5]), UNIT)
        assert [(s.old_filename, s.new_filename, s.new_title) for s in steps] == [
            (format_filename(UNIT, 4), format_filename(UNIT, 3), "3"),
            (format_filename(UNIT, 5), format_filename(UNIT, 4), "4"),
        ]

    def test_contiguous_unit_needs_nothing(self):
        assert plan_gap_closure(entries([1, 2, 3]), UNIT) == []

    def test_first_page_deleted(self):
        steps = plan_gap_closure(entries([2, 3]), UNIT)
        assert [s.new_filename for s in steps] == [format_filename(UNIT, 1), format_filename(UNIT, 2)]


class TestTitleHeuristic:
    def test_titles_equal_to_pages_track(self):
        assert titles_track_pages(entries([1, 2, 4, 5]))

    def test_one_free_text_title_stops_tracking(self):
        assert not titles_track_pages(entries([1, 2, 3], titles=["1", "Plate A", "3"]))

    def test_zero_padded_title_is_not_numeric(self):
        assert not titles_track_pages(entries([1, 2], titles=["1", "02"]))


def test_last_page_and_contiguity():
    assert last_page(()) == 0
    assert last_page(entries([1, 2, 5])) == 5
    assert is_contiguous([3, 1, 2])
    assert not is_contiguous([1, 3])
