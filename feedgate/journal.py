"""Append-only hash journal of every content object the feed has observed."""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Iterator

from feedgate.clock import iso_now
from feedgate.errors import JournalWriteError
from feedgate.manifest import hash_bytes
from feedgate.storage import Storage, canonical_json, read_jsonl

LOGGER = logging.getLogger(__name__)

JOURNAL_PATH = "out/wa_hash.log"


@dataclass(frozen=True, slots=True)
class JournalEntry:
    timestamp: str
    source_label: str
    digest: str
    size: int


class HashJournal:
    """Immutable, append-only record keyed by content digest.

    Each :meth:`append` is a single line write so concurrent writers never
    interleave partial records. Rows are never edited or removed.
    """

    def __init__(self, storage: Storage, *, path: str = JOURNAL_PATH) -> None:
        self.storage = storage
        self.path = path

    def append(self, content: bytes, source_label: str) -> str:
        digest = hash_bytes(content)
        entry = JournalEntry(timestamp=iso_now(), source_label=source_label, digest=digest, size=len(content))
        try:
            self.storage.append_line(self.path, canonical_json(asdict(entry)))
        except OSError as exc:
            LOGGER.error("journal_write_failed", extra={"journal": self.path, "source_label": source_label})
            raise JournalWriteError(detail={"source_label": source_label, "error": str(exc)}) from exc
        LOGGER.debug("journal_appended", extra={"digest": digest, "source_label": source_label})
        return digest

    def records(self) -> Iterator[JournalEntry]:
        for row in read_jsonl(self.storage, self.path):
            entry = _entry_from_row(row)
            if entry is None:
                LOGGER.warning("journal_bad_entry", extra={"journal": self.path, "row": row})
                continue
            yield entry

    def contains(self, digest: str) -> bool:
        return any(entry.digest == digest for entry in self.records())


def _entry_from_row(row: dict[str, object]) -> JournalEntry | None:
    timestamp = row.get("timestamp")
    source_label = row.get("source_label")
    digest = row.get("digest")
    size = row.get("size")
    if not isinstance(timestamp, str) or not isinstance(source_label, str) or not isinstance(digest, str):
        return None
    if not isinstance(size, int) or isinstance(size, bool):
        return None
    return JournalEntry(timestamp=timestamp, source_label=source_label, digest=digest, size=size)
