"""Storage backends shared by every persisted feedgate artifact.

All paths are repository-relative POSIX strings such as ``out/STATE.json``.
``FileStorage`` maps them onto a directory; ``MemoryStorage`` keeps them in a
dictionary so tests never touch the filesystem.
"""

from __future__ import annotations

from contextlib import AbstractContextManager, contextmanager
import fnmatch
import json
import logging
import os
from pathlib import Path
import threading
from typing import Iterator, Protocol

from feedgate.clock import iso_now
from feedgate.errors import FeedGateError, SealInProgress

LOGGER = logging.getLogger(__name__)

__all__ = [
    "FileStorage",
    "MemoryStorage",
    "Storage",
    "canonical_json",
    "read_json",
    "read_jsonl",
]


class Storage(Protocol):
    def read_text(self, path: str) -> str | None:
        ...

    def read_bytes(self, path: str) -> bytes | None:
        ...

    def write_atomic(self, path: str, data: str | bytes) -> None:
        ...

    def append_line(self, path: str, line: str) -> None:
        ...

    def create_exclusive(self, path: str, data: str) -> bool:
        ...

    def exists(self, path: str) -> bool:
        ...

    def remove(self, path: str) -> None:
        ...

    def list(self, directory: str, pattern: str = "*") -> list[str]:
        ...

    def lock(self, name: str) -> AbstractContextManager[None]:
        ...


def _lock_body() -> str:
    return json.dumps({"pid": os.getpid(), "started_at": iso_now()}, sort_keys=True)


class FileStorage:
    """Directory-backed storage with atomic replace and append semantics."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root / path

    def read_text(self, path: str) -> str | None:
        try:
            return self._resolve(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def read_bytes(self, path: str) -> bytes | None:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError:
            return None

    def write_atomic(self, path: str, data: str | bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        payload = data.encode("utf-8") if isinstance(data, str) else data
        try:
            with tmp_path.open("wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def append_line(self, path: str, line: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        encoded = (line.rstrip("\n") + "\n").encode("utf-8")
        fd = os.open(target, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            os.write(fd, encoded)
            os.fsync(fd)
        finally:
            os.close(fd)

    def create_exclusive(self, path: str, data: str) -> bool:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def remove(self, path: str) -> None:
        try:
            self._resolve(path).unlink()
        except FileNotFoundError:
            return

    def list(self, directory: str, pattern: str = "*") -> list[str]:
        base = self._resolve(directory)
        if not base.is_dir():
            return []
        return sorted(
            str(item.relative_to(self.root).as_posix())
            for item in base.iterdir()
            if item.is_file() and fnmatch.fnmatch(item.name, pattern)
        )

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        lock_path = f"{name}.lock"
        try:
            acquired = self.create_exclusive(lock_path, _lock_body())
        except OSError as exc:
            raise FeedGateError("seal_lock_failed", {"lock": lock_path, "error": str(exc)}) from exc
        if not acquired:
            holder = self.read_text(lock_path)
            raise SealInProgress(detail={"lock": lock_path, "holder": (holder or "").strip()})
        try:
            yield
        finally:
            self.remove(lock_path)


class MemoryStorage:
    """In-memory storage used by tests; every operation is serialized."""

    def __init__(self) -> None:
        self._files: dict[str, bytes] = {}
        self._mutex = threading.Lock()

    def read_text(self, path: str) -> str | None:
        data = self.read_bytes(path)
        return data.decode("utf-8") if data is not None else None

    def read_bytes(self, path: str) -> bytes | None:
        with self._mutex:
            return self._files.get(path)

    def write_atomic(self, path: str, data: str | bytes) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with self._mutex:
            self._files[path] = payload

    def append_line(self, path: str, line: str) -> None:
        encoded = (line.rstrip("\n") + "\n").encode("utf-8")
        with self._mutex:
            self._files[path] = self._files.get(path, b"") + encoded

    def create_exclusive(self, path: str, data: str) -> bool:
        with self._mutex:
            if path in self._files:
                return False
            self._files[path] = data.encode("utf-8")
            return True

    def exists(self, path: str) -> bool:
        with self._mutex:
            return path in self._files

    def remove(self, path: str) -> None:
        with self._mutex:
            self._files.pop(path, None)

    def list(self, directory: str, pattern: str = "*") -> list[str]:
        prefix = directory.rstrip("/") + "/"
        with self._mutex:
            names = list(self._files)
        return sorted(
            name
            for name in names
            if name.startswith(prefix) and "/" not in name[len(prefix):] and fnmatch.fnmatch(name[len(prefix):], pattern)
        )

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        lock_path = f"{name}.lock"
        try:
            acquired = self.create_exclusive(lock_path, _lock_body())
        except OSError as exc:
            raise FeedGateError("seal_lock_failed", {"lock": lock_path, "error": str(exc)}) from exc
        if not acquired:
            raise SealInProgress(detail={"lock": lock_path})
        try:
            yield
        finally:
            self.remove(lock_path)


def read_jsonl(storage: Storage, path: str) -> list[dict[str, object]]:
    """Return JSON object rows from ``path``, skipping corrupt lines."""

    text = storage.read_text(path)
    if not text:
        return []
    rows: list[dict[str, object]] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            LOGGER.warning("jsonl_corrupt_line", extra={"path": path, "line": line_number})
            continue
        if not isinstance(payload, dict):
            LOGGER.warning("jsonl_non_object", extra={"path": path, "line": line_number})
            continue
        rows.append(payload)
    return rows


def read_json(storage: Storage, path: str) -> dict[str, object] | None:
    """Return the JSON object at ``path``; ``None`` when absent or unreadable."""

    text = storage.read_text(path)
    if text is None:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        LOGGER.warning("json_corrupt", extra={"path": path})
        return None
    return payload if isinstance(payload, dict) else None


def canonical_json(payload: object) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
