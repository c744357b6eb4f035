"""Seal pipeline: presence -> delta -> seal -> anchor -> commit.

One pass walks the stages in :class:`SealStage` order. A failure anywhere
stops the pass in ``failed`` with the stage it failed from and an itemized
reason list; the state store is only written by the final transition.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging

from feedgate.anchors import AnchorRecorder, AnchorVerification, AnchorVerifier, seal_artifact_path
from feedgate.clock import iso_now
from feedgate.errors import FeedGateError, PresenceError, StateCorruption
from feedgate.journal import HashJournal
from feedgate.manifest import ContentSource, ScanResult, build_manifest, diff, hash_bytes, removed_paths
from feedgate.policy import PolicyRule, Signals, evaluate
from feedgate.presence import PresenceGate, PresenceRecord
from feedgate.state_store import DeltaStateStore, SealState
from feedgate.storage import Storage, canonical_json

LOGGER = logging.getLogger(__name__)


class SealStage(str, Enum):
    IDLE = "idle"
    PRESENCE_CHECKED = "presence_checked"
    DELTA_COMPUTED = "delta_computed"
    SEALED = "sealed"
    ANCHOR_SUBMITTED = "anchor_submitted"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(slots=True)
class PassResult:
    stage: SealStage = SealStage.IDLE
    status: str = "running"
    failed_stage: SealStage | None = None
    reasons: list[str] = field(default_factory=list)
    delta: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    seal_id: str | None = None
    artifact_digest: str | None = None
    manifest_digest: str | None = None
    coverage: float = 0.0
    gaps: int = 0
    backlog: int = 0
    presence: PresenceRecord | None = None
    anchors: AnchorVerification | None = None
    state: SealState | None = None
    error: FeedGateError | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"committed", "unchanged"}

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "status": self.status,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "reasons": list(self.reasons),
            "delta": list(self.delta),
            "removed": list(self.removed),
            "seal_id": self.seal_id,
            "artifact_digest": self.artifact_digest,
            "manifest_digest": self.manifest_digest,
            "coverage": self.coverage,
            "gaps": self.gaps,
            "backlog": self.backlog,
            "presence": self.presence.to_dict() if self.presence else None,
            "anchors": self.anchors.to_dict() if self.anchors else None,
        }


class SealPipeline:
    def __init__(
        self,
        storage: Storage,
        source: ContentSource,
        *,
        journal: HashJournal,
        state_store: DeltaStateStore,
        presence_gate: PresenceGate,
        recorder: AnchorRecorder,
        verifier: AnchorVerifier,
        node_id: str = "local",
        seals_dir: str = "out/seals",
    ) -> None:
        self.storage = storage
        self.source = source
        self.journal = journal
        self.state_store = state_store
        self.presence_gate = presence_gate
        self.recorder = recorder
        self.verifier = verifier
        self.node_id = node_id
        self.seals_dir = seals_dir

    def run_pass(self, policy: PolicyRule, *, now: datetime | None = None) -> PassResult:
        result = PassResult()
        try:
            presence = self.presence_gate.require_presence(policy, now=now)
            self.presence_gate.consume(presence, now=now)
        except PresenceError as exc:
            return _fail(result, exc.reason, exc)
        result.presence = presence
        _advance(result, SealStage.PRESENCE_CHECKED)

        try:
            with self.state_store.seal_lock():
                return self._sealed_pass(policy, result)
        except FeedGateError as exc:
            return _fail(result, exc.reason, exc)

    def _sealed_pass(self, policy: PolicyRule, result: PassResult) -> PassResult:
        try:
            previous = self.state_store.load()
        except StateCorruption as exc:
            return _fail(result, exc.reason, exc)
        result.state = previous

        scan = build_manifest(self.source)
        delta = diff(scan.manifest, previous.last_hashes)
        result.delta = sorted(delta)
        result.removed = sorted(removed_paths(scan.manifest, previous.last_hashes))
        result.manifest_digest = scan.manifest.digest()
        result.coverage = scan.coverage
        result.gaps = scan.gaps
        result.backlog = len(delta)
        _advance(result, SealStage.DELTA_COMPUTED)

        if not delta:
            result.status = "unchanged"
            result.seal_id = previous.seal_id
            result.backlog = 0
            LOGGER.info("seal_pass_unchanged", extra={"seal_id": previous.seal_id, "removed": len(result.removed)})
            return result

        try:
            artifact, seal_id = self._seal(scan, result, previous)
        except FeedGateError as exc:
            return _fail(result, exc.reason, exc)
        result.seal_id = seal_id
        result.artifact_digest = hash_bytes(artifact)
        _advance(result, SealStage.SEALED)

        try:
            self.recorder.submit(seal_id, artifact)
        except FeedGateError as exc:
            return _fail(result, exc.reason, exc)
        _advance(result, SealStage.ANCHOR_SUBMITTED)

        result.anchors = self.verifier.verify(seal_id)
        if not result.anchors.ok:
            return _fail(result, "anchors", extra_reasons=result.anchors.reasons)
        approval = evaluate(
            policy,
            Signals(coverage=scan.coverage, gaps=scan.gaps, anchors_ok=True, quorum_ok=False, presence_ok=True),
            skip=("quorum",),
        )
        if not approval.promote:
            return _fail(result, "seal_denied", extra_reasons=list(approval.reasons))

        try:
            result.state = self.state_store.commit(
                scan.manifest,
                scan.manifest.to_dict(),
                seal_id=seal_id,
                expected_generation=previous.generation,
            )
        except FeedGateError as exc:
            return _fail(result, exc.reason, exc)
        result.backlog = 0
        result.status = "committed"
        _advance(result, SealStage.COMMITTED)
        return result

    def _seal(self, scan: ScanResult, result: PassResult, previous: SealState) -> tuple[bytes, str]:
        created_at = iso_now()
        manifest_digest = scan.manifest.digest()
        seal_id = f"{''.join(ch if ch.isalnum() else '-' for ch in created_at)}-{manifest_digest[:12]}"
        entries: list[dict[str, object]] = []
        for path in result.delta:
            try:
                content = self.source.read(path)
            except OSError as exc:
                raise FeedGateError("content_unreadable", {"content_path": path, "error": str(exc)}) from exc
            if hash_bytes(content) != scan.manifest[path]:
                raise FeedGateError("content_changed", {"content_path": path})
            digest = self.journal.append(content, path)
            entries.append(
                {
                    "path": path,
                    "digest": digest,
                    "size": len(content),
                    "content_b64": base64.b64encode(content).decode("ascii"),
                }
            )
        artifact = {
            "schema_version": 1,
            "seal_id": seal_id,
            "created_at": created_at,
            "node_id": self.node_id,
            "parent_seal_id": previous.seal_id,
            "parent_generation": previous.generation,
            "manifest_digest": manifest_digest,
            "manifest": scan.manifest.to_dict(),
            "delta": entries,
            "removed": list(result.removed),
        }
        body = (canonical_json(artifact) + "\n").encode("utf-8")
        try:
            self.storage.write_atomic(seal_artifact_path(seal_id, self.seals_dir), body)
        except OSError as exc:
            raise FeedGateError("seal_write_failed", {"seal_id": seal_id, "error": str(exc)}) from exc
        LOGGER.info("seal_written", extra={"seal_id": seal_id, "delta": len(entries)})
        return body, seal_id


def _advance(result: PassResult, stage: SealStage) -> None:
    LOGGER.debug("seal_stage", extra={"from_stage": result.stage.value, "to_stage": stage.value})
    result.stage = stage


def _fail(
    result: PassResult,
    reason: str,
    error: FeedGateError | None = None,
    *,
    extra_reasons: list[str] | None = None,
) -> PassResult:
    result.failed_stage = result.stage
    result.stage = SealStage.FAILED
    result.status = "failed"
    result.reasons = [reason, *(extra_reasons or [])]
    result.error = error
    LOGGER.warning(
        "seal_pass_failed",
        extra={"failed_stage": result.failed_stage.value, "reasons": result.reasons},
    )
    return result
