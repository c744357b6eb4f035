from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import json
from pathlib import Path

import pytest

from feedgate.errors import JournalWriteError
from feedgate.journal import HashJournal
from feedgate.manifest import hash_bytes
from feedgate.storage import FileStorage, MemoryStorage


def test_append_returns_digest_and_writes_one_line(storage: MemoryStorage) -> None:
    journal = HashJournal(storage)

    digest = journal.append(b"payload", "feed/a.txt")

    assert digest == hash_bytes(b"payload")
    lines = (storage.read_text("out/wa_hash.log") or "").splitlines()
    assert len(lines) == 1
    row = json.loads(lines[0])
    assert row["source_label"] == "feed/a.txt"
    assert row["size"] == 7
    assert row["timestamp"].endswith("Z")
    assert journal.contains(digest)


def test_journal_is_append_only(storage: MemoryStorage) -> None:
    journal = HashJournal(storage)
    journal.append(b"one", "a")
    first = storage.read_text("out/wa_hash.log")
    journal.append(b"two", "b")

    text = storage.read_text("out/wa_hash.log") or ""
    assert first is not None and text.startswith(first)
    assert [entry.source_label for entry in journal.records()] == ["a", "b"]


def test_records_skip_corrupt_lines(storage: MemoryStorage) -> None:
    journal = HashJournal(storage)
    journal.append(b"one", "a")
    storage.append_line("out/wa_hash.log", "{not json")
    storage.append_line("out/wa_hash.log", json.dumps({"source_label": "missing fields"}))
    journal.append(b"two", "b")

    assert [entry.source_label for entry in journal.records()] == ["a", "b"]


def test_concurrent_appends_do_not_interleave(tmp_path: Path) -> None:
    journal = HashJournal(FileStorage(tmp_path))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda idx: journal.append(f"item-{idx}".encode(), f"src-{idx}"), range(64)))

    lines = (tmp_path / "out" / "wa_hash.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 64
    assert {json.loads(line)["source_label"] for line in lines} == {f"src-{idx}" for idx in range(64)}


class _BrokenStorage(MemoryStorage):
    def append_line(self, path: str, line: str) -> None:
        raise OSError("disk full")


def test_write_failure_is_fatal() -> None:
    journal = HashJournal(_BrokenStorage())

    with pytest.raises(JournalWriteError) as excinfo:
        journal.append(b"x", "a.txt")

    assert excinfo.value.reason == "journal_write_failed"
    assert excinfo.value.detail["source_label"] == "a.txt"
