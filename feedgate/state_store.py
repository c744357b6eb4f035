"""Persisted snapshot of the last successfully sealed manifest."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import asdict, dataclass, field
import json
import logging
from typing import Mapping

from feedgate.clock import iso_now
from feedgate.errors import FeedGateError, SealInProgress, StateCorruption
from feedgate.manifest import Manifest
from feedgate.storage import Storage

LOGGER = logging.getLogger(__name__)

STATE_PATH = "out/STATE.json"
SEAL_LOCK_NAME = "out/SEAL"
SCHEMA_VERSION = 1


@dataclass(slots=True)
class SealState:
    schema_version: int = SCHEMA_VERSION
    generation: int = 0
    seal_id: str | None = None
    sealed_at: str | None = None
    manifest_digest: str | None = None
    last_manifest: list[str] = field(default_factory=list)
    last_hashes: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.generation == 0 and not self.last_hashes

    def manifest(self) -> Manifest:
        return Manifest(self.last_hashes)

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["last_manifest"] = list(self.last_manifest)
        payload["last_hashes"] = dict(sorted(self.last_hashes.items()))
        return payload


class DeltaStateStore:
    """Single-writer store for :class:`SealState`.

    ``commit`` replaces the whole snapshot with one atomic write, so a reader
    sees either the previous seal or the new one. The generation counter makes
    every commit name the exact snapshot it supersedes.
    """

    def __init__(self, storage: Storage, *, path: str = STATE_PATH, lock_name: str = SEAL_LOCK_NAME) -> None:
        self.storage = storage
        self.path = path
        self.lock_name = lock_name

    def load(self) -> SealState:
        try:
            text = self.storage.read_text(self.path)
        except OSError as exc:
            raise StateCorruption("state_unreadable", {"path": self.path, "error": str(exc)}) from exc
        if text is None:
            return SealState()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateCorruption("state_unparseable", {"path": self.path, "error": exc.msg}) from exc
        if not isinstance(payload, dict):
            raise StateCorruption("state_not_object", {"path": self.path})
        return _state_from_payload(payload, self.path)

    def commit(
        self,
        manifest: Manifest,
        hashes: Mapping[str, str],
        *,
        seal_id: str,
        expected_generation: int,
    ) -> SealState:
        if dict(manifest) != dict(hashes):
            raise ValueError("manifest and hashes disagree")
        current = self.load()
        if current.generation != expected_generation:
            raise SealInProgress(
                "generation_conflict",
                {"expected": expected_generation, "found": current.generation},
            )
        state = SealState(
            generation=current.generation + 1,
            seal_id=seal_id,
            sealed_at=iso_now(),
            manifest_digest=manifest.digest(),
            last_manifest=manifest.paths(),
            last_hashes=dict(hashes),
        )
        try:
            self.storage.write_atomic(self.path, json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.error("state_write_failed", extra={"seal_id": seal_id, "error": str(exc)})
            raise FeedGateError("state_write_failed", {"path": self.path, "seal_id": seal_id, "error": str(exc)}) from exc
        LOGGER.info(
            "seal_committed",
            extra={"seal_id": seal_id, "generation": state.generation, "paths": len(state.last_manifest)},
        )
        return state

    def seal_lock(self) -> AbstractContextManager[None]:
        return self.storage.lock(self.lock_name)


def _state_from_payload(payload: dict[str, object], path: str) -> SealState:
    manifest_paths = payload.get("last_manifest", [])
    hashes = payload.get("last_hashes", {})
    if not isinstance(manifest_paths, list) or not all(isinstance(item, str) for item in manifest_paths):
        raise StateCorruption("state_manifest_invalid", {"path": path})
    if not isinstance(hashes, dict) or not all(isinstance(k, str) and isinstance(v, str) and v for k, v in hashes.items()):
        raise StateCorruption("state_hashes_invalid", {"path": path})
    if sorted(manifest_paths) != sorted(hashes):
        raise StateCorruption("state_inconsistent", {"path": path, "manifest": len(manifest_paths), "hashes": len(hashes)})

    generation = payload.get("generation", 1 if hashes else 0)
    if not isinstance(generation, int) or isinstance(generation, bool) or generation < 0:
        raise StateCorruption("state_generation_invalid", {"path": path})
    schema_version = payload.get("schema_version", SCHEMA_VERSION)
    if schema_version != SCHEMA_VERSION:
        raise StateCorruption("state_schema_unsupported", {"path": path, "schema_version": str(schema_version)})

    manifest_digest = payload.get("manifest_digest")
    if manifest_digest is not None:
        expected = Manifest(hashes).digest()
        if manifest_digest != expected:
            raise StateCorruption("state_digest_mismatch", {"path": path, "expected": expected, "found": str(manifest_digest)})

    seal_id = payload.get("seal_id")
    sealed_at = payload.get("sealed_at")
    return SealState(
        schema_version=SCHEMA_VERSION,
        generation=generation,
        seal_id=seal_id if isinstance(seal_id, str) else None,
        sealed_at=sealed_at if isinstance(sealed_at, str) else None,
        manifest_digest=manifest_digest if isinstance(manifest_digest, str) else None,
        last_manifest=list(manifest_paths),
        last_hashes=dict(hashes),
    )
