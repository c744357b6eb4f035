from __future__ import annotations

import base64
from datetime import datetime
import json

import pytest

from feedgate.anchors import AnchorRecorder, AnchorVerifier, seal_artifact_path
from feedgate.backends import FilePinStore, FileTransparencyLog
from feedgate.errors import StateCorruption
from feedgate.journal import HashJournal
from feedgate.manifest import MemorySource, hash_bytes
from feedgate.pipeline import SealPipeline, SealStage
from feedgate.presence import PresenceGate
from feedgate.state_store import DeltaStateStore
from feedgate.storage import MemoryStorage


class _CountingStateStore(DeltaStateStore):
    def __init__(self, storage: MemoryStorage) -> None:
        super().__init__(storage)
        self.commits = 0

    def commit(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        self.commits += 1
        return super().commit(*args, **kwargs)


class _DownLog:
    def submit(self, artifact_digest: str) -> dict[str, object]:
        raise ConnectionError("transparency log unreachable")


def _build(  # type: ignore[no-untyped-def]
    storage: MemoryStorage, source: MemorySource, *, log=None, pins=None, verifier=None, min_pins: int = 1
) -> tuple[SealPipeline, _CountingStateStore]:
    state_store = _CountingStateStore(storage)
    pipeline = SealPipeline(
        storage,
        source,
        journal=HashJournal(storage),
        state_store=state_store,
        presence_gate=PresenceGate(storage),
        recorder=AnchorRecorder(storage, log or FileTransparencyLog(storage), pins or FilePinStore(storage), attempts=2),
        verifier=verifier or AnchorVerifier(storage, min_pins=min_pins, timeout=5.0),
        node_id="test-node",
    )
    return pipeline, state_store


def test_end_to_end_delta_then_incremental(storage: MemoryStorage, source: MemorySource, policy, present, renew_presence, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source)

    first = pipeline.run_pass(policy, now=now)

    assert first.status == "committed", first.reasons
    assert first.stage is SealStage.COMMITTED
    assert first.delta == ["a.txt", "b.txt"]
    assert state_store.load().last_hashes == {"a.txt": hash_bytes(b"alpha"), "b.txt": hash_bytes(b"bravo")}

    source.files["b.txt"] = b"bravo-2"
    renew_presence()
    second = pipeline.run_pass(policy, now=now)

    assert second.status == "committed", second.reasons
    assert second.delta == ["b.txt"]
    state = state_store.load()
    assert state.generation == 2
    assert state.seal_id == second.seal_id != first.seal_id
    assert state.last_hashes["b.txt"] == hash_bytes(b"bravo-2")


def test_seal_artifact_holds_only_the_delta(storage: MemoryStorage, source: MemorySource, policy, present, renew_presence, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, _ = _build(storage, source)
    pipeline.run_pass(policy, now=now)
    source.files["a.txt"] = b"alpha-2"
    renew_presence()

    result = pipeline.run_pass(policy, now=now)

    assert result.seal_id is not None
    artifact = json.loads(storage.read_text(seal_artifact_path(result.seal_id)) or "")
    assert [entry["path"] for entry in artifact["delta"]] == ["a.txt"]
    assert base64.b64decode(artifact["delta"][0]["content_b64"]) == b"alpha-2"
    assert artifact["parent_generation"] == 1
    assert artifact["manifest"] == {"a.txt": hash_bytes(b"alpha-2"), "b.txt": hash_bytes(b"bravo")}
    assert HashJournal(storage).contains(hash_bytes(b"alpha-2"))
    assert len(list(HashJournal(storage).records())) == 3


def test_failed_anchor_submission_never_commits(storage: MemoryStorage, source: MemorySource, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source, log=_DownLog())
    before = storage.read_text("out/STATE.json")

    result = pipeline.run_pass(policy, now=now)

    assert result.status == "failed"
    assert result.stage is SealStage.FAILED
    assert result.failed_stage is SealStage.SEALED
    assert result.reasons == ["anchor_submit_failed"]
    assert state_store.commits == 0
    assert storage.read_text("out/STATE.json") == before


def test_failed_anchor_verification_never_commits(storage: MemoryStorage, source: MemorySource, policy, present, renew_presence, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source)
    pipeline.run_pass(policy, now=now)
    committed = state_store.load()
    strict, strict_store = _build(storage, source, min_pins=2)
    source.files["c.txt"] = b"charlie"
    renew_presence()

    result = strict.run_pass(policy, now=now)

    assert result.failed_stage is SealStage.ANCHOR_SUBMITTED
    assert result.reasons == ["anchors", "pin_replication_insufficient"]
    assert strict_store.commits == 0
    assert state_store.load() == committed


def test_missing_presence_fails_from_idle(storage: MemoryStorage, source: MemorySource, policy, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source)

    result = pipeline.run_pass(policy, now=now)

    assert result.failed_stage is SealStage.IDLE
    assert result.reasons == ["missing_beacon"]
    assert storage.read_text("out/wa_hash.log") is None
    assert state_store.commits == 0


def test_unchanged_pass_commits_nothing(storage: MemoryStorage, source: MemorySource, policy, present, renew_presence, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source)
    first = pipeline.run_pass(policy, now=now)
    renew_presence()

    second = pipeline.run_pass(policy, now=now)

    assert second.status == "unchanged"
    assert second.ok
    assert second.stage is SealStage.DELTA_COMPUTED
    assert second.seal_id == first.seal_id
    assert state_store.commits == 1


def test_deletions_are_reported_but_not_sealed(storage: MemoryStorage, source: MemorySource, policy, present, renew_presence, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source)
    pipeline.run_pass(policy, now=now)
    del source.files["a.txt"]
    renew_presence()

    result = pipeline.run_pass(policy, now=now)

    assert result.status == "unchanged"
    assert result.delta == []
    assert result.removed == ["a.txt"]
    assert "a.txt" in state_store.load().last_hashes


class _GappySource(MemorySource):
    def read(self, path: str) -> bytes:
        if path.endswith(".locked"):
            raise PermissionError(path)
        return super().read(path)


def test_gaps_block_the_seal(storage: MemoryStorage, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, _GappySource({"a.txt": b"a", "b.txt": b"b", "c.locked": b"c"}))

    result = pipeline.run_pass(policy, now=now)

    assert result.failed_stage is SealStage.ANCHOR_SUBMITTED
    assert result.reasons == ["seal_denied", "coverage", "gaps"]
    assert result.gaps == 1
    assert state_store.commits == 0


def test_concurrent_seal_is_refused(storage: MemoryStorage, source: MemorySource, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, source)

    with state_store.seal_lock():
        result = pipeline.run_pass(policy, now=now)

    assert result.failed_stage is SealStage.PRESENCE_CHECKED
    assert result.reasons == ["seal_in_progress"]


def test_corrupt_state_fails_the_pass(storage: MemoryStorage, source: MemorySource, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    storage.write_atomic("out/STATE.json", "{torn")
    pipeline, state_store = _build(storage, source)

    result = pipeline.run_pass(policy, now=now)

    assert result.reasons == ["state_unparseable"]
    assert isinstance(result.error, StateCorruption)
    assert storage.read_text("out/STATE.json") == "{torn"
    assert not storage.exists("out/SEAL.lock")


class _ShiftingSource(MemorySource):
    def __init__(self, files: dict[str, bytes]) -> None:
        super().__init__(files)
        self.reads = 0

    def read(self, path: str) -> bytes:
        self.reads += 1
        if self.reads > len(self.files):
            return b"rewritten mid-pass"
        return super().read(path)


def test_content_changed_after_scan_fails_the_pass(storage: MemoryStorage, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, state_store = _build(storage, _ShiftingSource({"a.txt": b"alpha"}))

    result = pipeline.run_pass(policy, now=now)

    assert result.failed_stage is SealStage.DELTA_COMPUTED
    assert result.reasons == ["content_changed"]
    assert state_store.commits == 0


def test_to_dict_is_json_ready(storage: MemoryStorage, source: MemorySource, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    pipeline, _ = _build(storage, source)

    payload = pipeline.run_pass(policy, now=now).to_dict()

    assert json.loads(json.dumps(payload))["status"] == "committed"
    assert payload["anchors"]["status"] == "ok"  # type: ignore[index]


def _fail_writes(monkeypatch: pytest.MonkeyPatch, storage: MemoryStorage, method: str, prefix: str) -> None:
    original = getattr(storage, method)

    def _maybe_fail(path: str, *args, **kwargs):  # type: ignore[no-untyped-def]
        if path.startswith(prefix):
            raise OSError(28, "No space left on device")
        return original(path, *args, **kwargs)

    monkeypatch.setattr(storage, method, _maybe_fail)


@pytest.mark.parametrize(
    ("method", "prefix", "failed_stage", "reason"),
    [
        ("create_exclusive", "out/SEAL.lock", SealStage.PRESENCE_CHECKED, "seal_lock_failed"),
        ("append_line", "out/wa_hash.log", SealStage.DELTA_COMPUTED, "journal_write_failed"),
        ("write_atomic", "out/seals/", SealStage.DELTA_COMPUTED, "seal_write_failed"),
        ("write_atomic", "out/STATE.json", SealStage.ANCHOR_SUBMITTED, "state_write_failed"),
    ],
)
def test_storage_errors_fail_the_pass_at_their_stage(  # type: ignore[no-untyped-def]
    storage: MemoryStorage,
    source: MemorySource,
    policy,
    present,
    renew_presence,
    now: datetime,
    monkeypatch: pytest.MonkeyPatch,
    method: str,
    prefix: str,
    failed_stage: SealStage,
    reason: str,
) -> None:
    pipeline, state_store = _build(storage, source)
    assert pipeline.run_pass(policy, now=now).status == "committed"
    before = storage.read_text("out/STATE.json")
    source.files["c.txt"] = b"charlie"
    renew_presence()
    _fail_writes(monkeypatch, storage, method, prefix)

    result = pipeline.run_pass(policy, now=now)

    assert result.status == "failed"
    assert result.stage is SealStage.FAILED
    assert result.failed_stage is failed_stage
    assert result.reasons == [reason]
    assert result.error is not None and result.error.reason == reason
    assert storage.read_text("out/STATE.json") == before
    assert state_store.load().generation == 1
    assert not storage.exists("out/SEAL.lock")


class _CrashingLog:
    def submit(self, artifact_digest: str) -> dict[str, object]:
        raise RuntimeError("unexpected log response")


class _RejectingPins:
    def pin(self, artifact: bytes, artifact_digest: str) -> dict[str, object]:
        raise ValueError("artifact does not match digest")


class _ListLog:
    def submit(self, artifact_digest: str) -> list[str]:
        return [artifact_digest]


@pytest.mark.parametrize(
    ("collaborators", "reason"),
    [
        ({"log": _CrashingLog()}, "anchor_submit_failed"),
        ({"pins": _RejectingPins()}, "anchor_submit_failed"),
        ({"log": _ListLog()}, "anchor_response_malformed"),
    ],
)
def test_collaborator_errors_fail_the_pass_after_sealing(  # type: ignore[no-untyped-def]
    storage: MemoryStorage, source: MemorySource, policy, present, now: datetime, collaborators, reason: str
) -> None:
    pipeline, state_store = _build(storage, source, **collaborators)

    result = pipeline.run_pass(policy, now=now)

    assert result.status == "failed"
    assert result.failed_stage is SealStage.SEALED
    assert result.reasons == [reason]
    assert state_store.commits == 0
    assert storage.read_text("out/STATE.json") is None


def test_evidence_lookup_errors_fail_verification(storage: MemoryStorage, source: MemorySource, policy, present, now: datetime) -> None:  # type: ignore[no-untyped-def]
    def _broken_lookup(seal_id: str) -> dict[str, object] | None:
        raise OSError(5, "Input/output error")

    verifier = AnchorVerifier(storage, timeout=5.0, proof_lookup=_broken_lookup)
    pipeline, state_store = _build(storage, source, verifier=verifier)

    result = pipeline.run_pass(policy, now=now)

    assert result.status == "failed"
    assert result.failed_stage is SealStage.ANCHOR_SUBMITTED
    assert result.reasons == ["anchors", "proof_lookup_failed"]
    assert state_store.commits == 0


def test_each_pass_needs_a_fresh_acknowledgment(  # type: ignore[no-untyped-def]
    storage: MemoryStorage, source: MemorySource, policy, present, renew_presence, now: datetime
) -> None:
    pipeline, state_store = _build(storage, source)
    assert pipeline.run_pass(policy, now=now).status == "committed"
    source.files["c.txt"] = b"charlie"

    reused = pipeline.run_pass(policy, now=now)

    assert reused.status == "failed"
    assert reused.failed_stage is SealStage.IDLE
    assert reused.reasons == ["ack_already_consumed"]
    assert state_store.commits == 1

    renew_presence()
    assert pipeline.run_pass(policy, now=now).status == "committed"
    assert state_store.commits == 2
