"""Content manifests and the delta computation between two of them."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import hashlib
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Protocol

from feedgate.clock import iso_now

LOGGER = logging.getLogger(__name__)


def hash_bytes(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True, slots=True)
class ContentRecord:
    path: str
    digest: str
    size: int
    timestamp: str


class Manifest(Mapping[str, str]):
    """Immutable path -> digest mapping ordered by path."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> None:
        items = dict(entries.items() if isinstance(entries, Mapping) else entries)
        for path, digest in items.items():
            if not isinstance(path, str) or not isinstance(digest, str) or not path or not digest:
                raise ValueError(f"invalid manifest entry: {path!r} -> {digest!r}")
        self._entries = MappingProxyType(dict(sorted(items.items())))

    def __getitem__(self, path: str) -> str:
        return self._entries[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Manifest({dict(self._entries)!r})"

    def paths(self) -> list[str]:
        return list(self._entries)

    def to_dict(self) -> dict[str, str]:
        return dict(self._entries)

    def canonical_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    def digest(self) -> str:
        return hash_bytes(self.canonical_bytes())


def diff(current: Mapping[str, str], previous_hashes: Mapping[str, str]) -> frozenset[str]:
    """Return paths in ``current`` that are new or whose digest changed.

    Paths that disappeared since ``previous_hashes`` are not part of the delta;
    use :func:`removed_paths` to report them.
    """

    return frozenset(path for path, digest in current.items() if previous_hashes.get(path) != digest)


def removed_paths(current: Mapping[str, str], previous_hashes: Mapping[str, str]) -> frozenset[str]:
    return frozenset(path for path in previous_hashes if path not in current)


class ContentSource(Protocol):
    def iter_paths(self) -> Iterable[str]:
        ...

    def read(self, path: str) -> bytes:
        ...


class DirectorySource:
    """Files under ``root`` matching any of ``globs``, keyed by POSIX relative path."""

    def __init__(self, root: Path, globs: Iterable[str] = ("**/*",)) -> None:
        self.root = Path(root)
        self.globs = tuple(globs)

    def iter_paths(self) -> list[str]:
        if not self.root.is_dir():
            return []
        seen: set[str] = set()
        for pattern in self.globs:
            for candidate in self.root.glob(pattern):
                if candidate.is_file():
                    seen.add(candidate.relative_to(self.root).as_posix())
        return sorted(seen)

    def read(self, path: str) -> bytes:
        return (self.root / path).read_bytes()


class MemorySource:
    def __init__(self, files: Mapping[str, bytes] | None = None) -> None:
        self.files: dict[str, bytes] = dict(files or {})

    def iter_paths(self) -> list[str]:
        return sorted(self.files)

    def read(self, path: str) -> bytes:
        try:
            return self.files[path]
        except KeyError as exc:
            raise FileNotFoundError(path) from exc


@dataclass(slots=True)
class ScanResult:
    manifest: Manifest
    records: dict[str, ContentRecord] = field(default_factory=dict)
    unreadable: list[str] = field(default_factory=list)

    @property
    def observed(self) -> int:
        return len(self.manifest) + len(self.unreadable)

    @property
    def coverage(self) -> float:
        if self.observed == 0:
            return 1.0
        return len(self.manifest) / self.observed

    @property
    def gaps(self) -> int:
        return len(self.unreadable)


def build_manifest(source: ContentSource) -> ScanResult:
    """Hash every object in ``source``; unreadable objects are reported as gaps."""

    entries: dict[str, str] = {}
    records: dict[str, ContentRecord] = {}
    unreadable: list[str] = []
    for path in sorted(source.iter_paths()):
        try:
            content = source.read(path)
        except OSError as exc:
            LOGGER.warning("manifest_unreadable", extra={"content_path": path, "error": str(exc)})
            unreadable.append(path)
            continue
        digest = hash_bytes(content)
        entries[path] = digest
        records[path] = ContentRecord(path=path, digest=digest, size=len(content), timestamp=iso_now())
    return ScanResult(manifest=Manifest(entries), records=records, unreadable=unreadable)
