"""Anchor submission and verification for sealed artifacts.

A seal is anchored when two independent pieces of evidence exist for the
artifact digest: an inclusion proof from a transparency log
(``REKOR_PROOFS.jsonl``) and a pin report from content-addressed storage
(``PIN_REPORT.json``). The verifier only reads that evidence; proofs are
produced by the external collaborators behind :class:`TransparencyLog` and
:class:`PinningService`.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
import json
import logging
from typing import Callable, Protocol

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from feedgate.clock import iso_now
from feedgate.errors import AnchorError
from feedgate.lookup import LookupTimeout, call_with_timeout, with_retries
from feedgate.manifest import hash_bytes
from feedgate.merkle import leaf_hash, verify_inclusion
from feedgate.storage import Storage, canonical_json, read_json, read_jsonl

LOGGER = logging.getLogger(__name__)

PROOFS_PATH = "out/REKOR_PROOFS.jsonl"
PIN_REPORT_PATH = "out/PIN_REPORT.json"
SEALS_DIR = "out/seals"


class TransparencyLog(Protocol):
    def submit(self, artifact_digest: str) -> dict[str, object]:
        ...


class PinningService(Protocol):
    def pin(self, artifact: bytes, artifact_digest: str) -> dict[str, object]:
        ...


def seal_artifact_path(seal_id: str, seals_dir: str = SEALS_DIR) -> str:
    return f"{seals_dir}/{seal_id}.json"


def leaf_for_digest(artifact_digest: str) -> bytes:
    """Merkle leaf hash the log records for ``artifact_digest``."""

    return leaf_hash(bytes.fromhex(artifact_digest))


def tree_head_message(log_id: str, tree_size: int, root_hash_hex: str) -> bytes:
    return canonical_json({"log_id": log_id, "root_hash": root_hash_hex, "tree_size": tree_size}).encode("utf-8")


@dataclass(slots=True)
class AnchorReceipt:
    seal_id: str
    artifact_digest: str
    proof: dict[str, object]
    pin_report: dict[str, object]


@dataclass(slots=True)
class AnchorVerification:
    status: str
    checked_at: str
    seal_id: str | None = None
    artifact_digest: str | None = None
    reasons: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "checked_at": self.checked_at,
            "seal_id": self.seal_id,
            "artifact_digest": self.artifact_digest,
        }
        if self.reasons:
            payload["reasons"] = list(self.reasons)
        return payload


class AnchorRecorder:
    """Submits a sealed artifact to both anchor collaborators and records the evidence."""

    def __init__(
        self,
        storage: Storage,
        log: TransparencyLog,
        pins: PinningService,
        *,
        attempts: int = 3,
        proofs_path: str = PROOFS_PATH,
        pin_report_path: str = PIN_REPORT_PATH,
    ) -> None:
        self.storage = storage
        self.log = log
        self.pins = pins
        self.attempts = attempts
        self.proofs_path = proofs_path
        self.pin_report_path = pin_report_path

    def submit(self, seal_id: str, artifact: bytes) -> AnchorReceipt:
        artifact_digest = hash_bytes(artifact)
        try:
            proof = with_retries(lambda: self.log.submit(artifact_digest), attempts=self.attempts, label="transparency_log_submit")
            report = with_retries(lambda: self.pins.pin(artifact, artifact_digest), attempts=self.attempts, label="pin_submit")
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            LOGGER.warning("anchor_submit_failed", extra={"seal_id": seal_id, "error": error})
            raise AnchorError("anchor_submit_failed", {"seal_id": seal_id, "error": error}) from exc
        if not isinstance(proof, dict) or not isinstance(report, dict):
            raise AnchorError("anchor_response_malformed", {"seal_id": seal_id})

        proof_row = {**proof, "seal_id": seal_id, "artifact_digest": artifact_digest, "recorded_at": iso_now()}
        report_row = {**report, "seal_id": seal_id, "artifact_digest": artifact_digest, "recorded_at": iso_now()}
        try:
            with_retries(lambda: self.storage.append_line(self.proofs_path, canonical_json(proof_row)), attempts=self.attempts, label="proof_record")
            with_retries(
                lambda: self.storage.write_atomic(self.pin_report_path, json.dumps(report_row, indent=2, sort_keys=True) + "\n"),
                attempts=self.attempts,
                label="pin_report_record",
            )
        except OSError as exc:
            raise AnchorError("anchor_record_failed", {"seal_id": seal_id, "error": str(exc)}) from exc
        LOGGER.info("anchor_submitted", extra={"seal_id": seal_id, "artifact_digest": artifact_digest})
        return AnchorReceipt(seal_id=seal_id, artifact_digest=artifact_digest, proof=proof_row, pin_report=report_row)


class AnchorVerifier:
    """Read-only check that both anchors exist and validate for a seal."""

    def __init__(
        self,
        storage: Storage,
        *,
        min_pins: int = 1,
        timeout: float = 10.0,
        log_keys: dict[str, VerifyKey] | None = None,
        proofs_path: str = PROOFS_PATH,
        pin_report_path: str = PIN_REPORT_PATH,
        seals_dir: str = SEALS_DIR,
        proof_lookup: Callable[[str], dict[str, object] | None] | None = None,
        pin_lookup: Callable[[str], dict[str, object] | None] | None = None,
    ) -> None:
        self.storage = storage
        self.min_pins = min_pins
        self.timeout = timeout
        self.log_keys = dict(log_keys or {})
        self.proofs_path = proofs_path
        self.pin_report_path = pin_report_path
        self.seals_dir = seals_dir
        self._proof_lookup = proof_lookup or self._latest_proof
        self._pin_lookup = pin_lookup or self._pin_report

    def anchors_ok(self, seal_id: str) -> bool:
        return self.verify(seal_id).ok

    def verify(self, seal_id: str) -> AnchorVerification:
        checked_at = iso_now()
        try:
            artifact = self.storage.read_bytes(seal_artifact_path(seal_id, self.seals_dir))
        except OSError as exc:
            LOGGER.warning("seal_artifact_unreadable", extra={"seal_id": seal_id, "error": str(exc)})
            return AnchorVerification(status="invalid", checked_at=checked_at, seal_id=seal_id, reasons=["seal_artifact_unreadable"])
        if artifact is None:
            return AnchorVerification(status="missing", checked_at=checked_at, seal_id=seal_id, reasons=["seal_artifact_missing"])
        artifact_digest = hash_bytes(artifact)

        reasons: list[str] = []
        try:
            proof = call_with_timeout(lambda: self._proof_lookup(seal_id), self.timeout)
        except LookupTimeout:
            reasons.append("proof_lookup_timeout")
        except Exception:
            LOGGER.warning("proof_lookup_failed", extra={"seal_id": seal_id}, exc_info=True)
            reasons.append("proof_lookup_failed")
        else:
            if proof is None:
                reasons.append("inclusion_proof_missing")
            else:
                reasons.extend(self._check_proof(proof, artifact_digest))

        try:
            report = call_with_timeout(lambda: self._pin_lookup(seal_id), self.timeout)
        except LookupTimeout:
            reasons.append("pin_lookup_timeout")
        except Exception:
            LOGGER.warning("pin_lookup_failed", extra={"seal_id": seal_id}, exc_info=True)
            reasons.append("pin_lookup_failed")
        else:
            if report is None:
                reasons.append("pin_report_missing")
            else:
                reasons.extend(self._check_pins(report, seal_id, artifact_digest))

        status = "ok" if not reasons else "invalid"
        if reasons:
            LOGGER.warning("anchor_verification_failed", extra={"seal_id": seal_id, "reasons": reasons})
        return AnchorVerification(status=status, checked_at=checked_at, seal_id=seal_id, artifact_digest=artifact_digest, reasons=reasons)

    def _check_proof(self, proof: dict[str, object], artifact_digest: str) -> list[str]:
        if proof.get("artifact_digest") != artifact_digest:
            return ["inclusion_proof_digest_mismatch"]
        index = proof.get("log_index")
        tree_size = proof.get("tree_size")
        root_hex = proof.get("root_hash")
        hashes = proof.get("hashes")
        if not isinstance(index, int) or not isinstance(tree_size, int) or not isinstance(root_hex, str) or not isinstance(hashes, list):
            return ["inclusion_proof_malformed"]
        try:
            path = [bytes.fromhex(str(item)) for item in hashes]
            root = bytes.fromhex(root_hex)
            leaf = leaf_for_digest(artifact_digest)
        except ValueError:
            return ["inclusion_proof_malformed"]
        if not verify_inclusion(leaf, index, tree_size, path, root):
            return ["inclusion_proof_invalid"]

        log_id = proof.get("log_id")
        key = self.log_keys.get(log_id) if isinstance(log_id, str) else None
        if self.log_keys and key is None:
            return ["transparency_log_unknown"]
        if key is not None:
            signature = proof.get("signed_tree_head")
            if not isinstance(signature, str):
                return ["tree_head_unsigned"]
            try:
                key.verify(tree_head_message(str(log_id), tree_size, root_hex), base64.b64decode(signature, validate=True))
            except (BadSignatureError, binascii.Error, ValueError):
                return ["tree_head_signature_invalid"]
        return []

    def _check_pins(self, report: dict[str, object], seal_id: str, artifact_digest: str) -> list[str]:
        if report.get("seal_id") != seal_id or report.get("artifact_digest") != artifact_digest:
            return ["pin_report_digest_mismatch"]
        pins = report.get("pins")
        if not isinstance(pins, list):
            return ["pin_report_malformed"]
        pinned = {
            str(pin.get("provider"))
            for pin in pins
            if isinstance(pin, dict) and pin.get("status") == "pinned" and pin.get("provider")
        }
        if len(pinned) < self.min_pins:
            return ["pin_replication_insufficient"]
        return []

    def _latest_proof(self, seal_id: str) -> dict[str, object] | None:
        matches = [row for row in read_jsonl(self.storage, self.proofs_path) if row.get("seal_id") == seal_id]
        return matches[-1] if matches else None

    def _pin_report(self, seal_id: str) -> dict[str, object] | None:
        report = read_json(self.storage, self.pin_report_path)
        if report is None or report.get("seal_id") != seal_id:
            return None
        return report
