"""
Snapshot Module - On-disk copy of the last good index.
======================================================

Stores the records of a published generation so a restarted process can
serve queries before its first rebuild finishes. Postings are not stored;
they are rebuilt from the records on load, which keeps the file small and
guarantees the loaded index matches what IndexBuilder would produce.
"""

import dataclasses
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

from pydantic import ValidationError

from coursefinder.indexing.builder import Index, IndexBuilder
from coursefinder.shared.config import get_settings
from coursefinder.shared.logging import get_logger
from coursefinder.shared.schemas import CourseRecord
from coursefinder.shared.utils import canonical_json, compute_hash, load_json, save_json

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotManager:
    """
    Saves and restores index snapshots.

    Example:
        >>> manager = SnapshotManager()
        >>> manager.save(store.active_index())
        >>> restored = manager.load()
    """

    def __init__(self, snapshot_file: Optional[Path] = None):
        settings = get_settings()
        self.snapshot_file = Path(snapshot_file or settings.resolved_paths.snapshot_file)

    @staticmethod
    def _checksum(records: list[dict[str, Any]]) -> str:
        return compute_hash(canonical_json(records))[:16]

    def save(self, index: Index) -> Path:
        """Write an index generation to disk."""
        records = [record.model_dump(mode="json") for record in index.records.values()]
        payload = {
            "version": SNAPSHOT_VERSION,
            "generation": index.generation,
            "next_doc_id": index.next_doc_id,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "checksum": self._checksum(records),
            "records": records,
        }
        save_json(self.snapshot_file, payload)
        logger.info(f"Saved snapshot of generation {index.generation} to {self.snapshot_file}")
        return self.snapshot_file

    def load(self) -> Optional[Index]:
        """
        Restore the saved index.

        Returns:
            The restored Index, or None if there is no usable snapshot
        """
        if not self.snapshot_file.exists():
            logger.debug(f"No snapshot at {self.snapshot_file}")
            return None

        try:
            payload = load_json(self.snapshot_file)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable snapshot {self.snapshot_file}: {e}")
            return None

        if not isinstance(payload, dict) or payload.get("version") != SNAPSHOT_VERSION:
            logger.warning(f"Ignoring snapshot with unsupported format: {self.snapshot_file}")
            return None

        raw_records = payload.get("records", [])
        if payload.get("checksum") != self._checksum(raw_records):
            logger.warning(f"Ignoring snapshot with bad checksum: {self.snapshot_file}")
            return None

        try:
            records = [CourseRecord.model_validate(item) for item in raw_records]
            generation = int(payload["generation"])
            next_doc_id = int(payload.get("next_doc_id", 0))
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring invalid snapshot {self.snapshot_file}: {e}")
            return None

        # Seed docIds from the stored records so they survive the reload
        seed = _seed_index(records, next_doc_id)
        built = IndexBuilder().build(records, previous=seed)
        index = dataclasses.replace(
            built,
            generation=generation,
            next_doc_id=max(next_doc_id, built.next_doc_id),
        )
        logger.info(
            f"Loaded snapshot generation {index.generation} "
            f"({index.document_count} documents) from {self.snapshot_file}"
        )
        return index

    def delete(self) -> bool:
        if self.snapshot_file.exists():
            self.snapshot_file.unlink()
            return True
        return False


def _seed_index(records: list[CourseRecord], next_doc_id: int) -> Index:
    """Bare index carrying only docIds, used to seed allocation on reload."""
    return Index(
        generation=0,
        records=MappingProxyType({record.doc_id: record for record in records}),
        postings=MappingProxyType({}),
        document_count=len(records),
        next_doc_id=next_doc_id,
    )
