"""Shared fixtures for feedgate tests."""
from __future__ import annotations

import base64
import copy
import functools
import itertools
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import types

from nacl.signing import SigningKey
import pytest
import yaml

from feedgate.anchors import AnchorRecorder, AnchorVerifier
from feedgate.backends import FilePinStore, FileTransparencyLog
from feedgate.clock import to_iso
from feedgate.config import FeedGateConfig
from feedgate.journal import HashJournal
from feedgate.manifest import MemorySource
from feedgate.pipeline import SealPipeline
from feedgate.policy import policy_from_mapping
from feedgate.presence import PresenceGate
from feedgate.quorum import sign_authorization
from feedgate.runner import FeedGate
from feedgate.state_store import DeltaStateStore
from feedgate.storage import MemoryStorage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

POLICY = {
    "schema_version": 1,
    "coverage_threshold": 0.99,
    "critical_actions": ["publish_feed"],
    "presence": {"require_start_beacon": True},
    "quorum": {"required": 2},
    "promote": {"only_if": ["presence", "anchors", "quorum", "coverage", "gaps"]},
}


def write_presence(storage, *, at: datetime = NOW, status: str = "ack") -> None:  # type: ignore[no-untyped-def]
    beacon_at = at - timedelta(minutes=2)
    storage.write_atomic(
        "out/START_BEACON.json",
        json.dumps({"operator_id": "op-1", "timezone": "UTC", "timestamp": to_iso(beacon_at)}),
    )
    storage.write_atomic(
        "out/ACK_HUMAN.json",
        json.dumps({"status": status, "timestamp": to_iso(at - timedelta(minutes=1)), "note": "on shift"}),
    )


def write_authorized_keys(storage, signers: dict[str, SigningKey], **extra: dict[str, object]) -> None:  # type: ignore[no-untyped-def]
    entries = []
    for key_id, signing_key in signers.items():
        entry: dict[str, object] = {
            "key_id": key_id,
            "public_key": base64.b64encode(bytes(signing_key.verify_key)).decode("ascii"),
        }
        entry.update(extra.get(key_id, {}))
        entries.append(entry)
    storage.write_atomic("keys/authorized_keys.yaml", yaml.safe_dump({"keys": entries}))


def write_credential(storage, name: str, signing_key: SigningKey, key_id: str, action_id: str, **kwargs: object) -> None:  # type: ignore[no-untyped-def]
    credential = sign_authorization(signing_key, key_id, action_id, **kwargs)  # type: ignore[arg-type]
    storage.write_atomic(f"keys/signed/{name}.sig", json.dumps(credential))


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def policy_mapping() -> dict[str, object]:
    return copy.deepcopy(POLICY)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def policy():  # type: ignore[no-untyped-def]
    return policy_from_mapping(POLICY)


@pytest.fixture
def signers() -> dict[str, SigningKey]:
    return {"alice": SigningKey.generate(), "bob": SigningKey.generate(), "carol": SigningKey.generate()}


@pytest.fixture
def keyring(storage: MemoryStorage) -> types.SimpleNamespace:
    return types.SimpleNamespace(
        register=functools.partial(write_authorized_keys, storage),
        issue=functools.partial(write_credential, storage),
    )


@pytest.fixture
def present(storage: MemoryStorage) -> None:
    write_presence(storage)


@pytest.fixture
def renew_presence(storage: MemoryStorage):  # type: ignore[no-untyped-def]
    """Write a newer acknowledgment; every pass consumes the one it used."""

    offsets = itertools.count(1)

    def _renew() -> None:
        acked_at = NOW - timedelta(minutes=1) + timedelta(seconds=next(offsets))
        storage.write_atomic("out/ACK_HUMAN.json", json.dumps({"status": "ack", "timestamp": to_iso(acked_at), "note": "still here"}))

    return _renew


@pytest.fixture
def authorize(storage: MemoryStorage, signers: dict[str, SigningKey]):  # type: ignore[no-untyped-def]
    """Register every signer and issue credentials for the named ones."""

    write_authorized_keys(storage, signers)

    def _authorize(action_id: str, *names: str, episode: str | None = None) -> None:
        for name in names:
            write_credential(storage, f"{name}-{action_id}", signers[name], name, action_id, episode=episode)

    return _authorize


@pytest.fixture
def source() -> MemorySource:
    return MemorySource({"a.txt": b"alpha", "b.txt": b"bravo"})


@pytest.fixture
def pipeline(storage: MemoryStorage, source: MemorySource) -> SealPipeline:
    return SealPipeline(
        storage,
        source,
        journal=HashJournal(storage),
        state_store=DeltaStateStore(storage),
        presence_gate=PresenceGate(storage),
        recorder=AnchorRecorder(storage, FileTransparencyLog(storage), FilePinStore(storage)),
        verifier=AnchorVerifier(storage, timeout=5.0),
        node_id="test-node",
    )


@pytest.fixture
def gate(tmp_path: Path, storage: MemoryStorage, source: MemorySource) -> FeedGate:
    storage.write_atomic("FEED_LOCK", yaml.safe_dump(POLICY))
    config = FeedGateConfig(repo_root=tmp_path, node_id="test-node", lookup_timeout_seconds=5.0)
    return FeedGate(config, storage=storage, source=source)
