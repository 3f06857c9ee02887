"""
Original/clone lineage of master files.

A master file with no ``original_id`` is canonical: its archive copy is the
source of truth. A master file with an ``original_id`` is a clone whose bytes
live only in a working directory and must never be renamed or removed in
the permanent archive.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .database import RecordStore
from .errors import LineageError, NotFoundError
from .records import MasterFile

logger = logging.getLogger(__name__)


class Lineage(str, Enum):
    ORIGINAL = "original"
    CLONE = "clone"


class LineageTracker:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    @staticmethod
    def classify(master_file: MasterFile) -> Lineage:
        return Lineage.CLONE if master_file.original_id is not None else Lineage.ORIGINAL

    @staticmethod
    def owns_archive_copy(master_file: MasterFile) -> bool:
        """True if the master file's bytes are managed in the permanent archive."""
        return master_file.original_id is None and master_file.deaccessioned_at is None

    def has_descendant_clones(self, master_file_id: int) -> bool:
        return self.store.count(MasterFile, original_id=master_file_id) > 0

    def root_original(self, master_file: MasterFile) -> MasterFile:
        """
        Follow ``original_id`` back to the canonical master file.

        Raises:
            NotFoundError: If a referenced original no longer exists
            LineageError: If the chain loops
        """
        current = master_file
        seen = {current.id}
        while current.original_id is not None:
            original: Optional[MasterFile] = self.store.get(MasterFile, current.original_id)
            if original is None:
                raise NotFoundError(f"Original master file {current.original_id} for {current.filename} not found")
            if original.id in seen:
                raise LineageError(f"Clone lineage of master file {master_file.id} loops at {original.id}")
            seen.add(original.id)
            current = original
        return current

    def ensure_deaccessionable(self, master_file: MasterFile) -> None:
        """
        Refuse deaccession of clones and of originals that still have clones.

        Raises:
            LineageError: If deaccessioning would orphan derivative bytes
        """
        if master_file.original_id is not None:
            raise LineageError(f"Cannot deaccession a cloned master file ({master_file.filename})")
        if self.has_descendant_clones(master_file.id):
            logger.info(f"Master file {master_file.id} has clones; refusing deaccession")
            raise LineageError(f"Cannot deaccession master file {master_file.filename}; it has been cloned")
