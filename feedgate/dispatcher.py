"""One-shot dispatcher for irreversible critical actions.

A trigger episode is identified by the action, the seal id and the manifest
digest recorded in that seal's artifact. Evidence naming any other digest is
refused, so one anchored seal yields exactly one episode per action. The
episode marker under ``out/episodes`` is claimed with an exclusive create, so
of any number of concurrent callers at most one fires.
A claimed episode stays consumed even if the payload step later fails.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import hashlib
import json
import logging
from typing import Mapping, Protocol

from feedgate.actions import CriticalAction
from feedgate.anchors import SEALS_DIR, AnchorVerifier, seal_artifact_path
from feedgate.clock import iso_now
from feedgate.errors import AlreadyFired, AnchorError, FeedGateError, PolicyDenied, QuorumError
from feedgate.lookup import with_retries
from feedgate.policy import Decision, PolicyRule, Signals, evaluate
from feedgate.quorum import QuorumResult, QuorumVerifier
from feedgate.storage import Storage, canonical_json, read_json, read_jsonl

LOGGER = logging.getLogger(__name__)

EPISODES_DIR = "out/episodes"
DISPATCH_LEDGER_PATH = "out/DISPATCH_LEDGER.jsonl"


@dataclass(frozen=True, slots=True)
class DispatchEvidence:
    seal_id: str
    manifest_digest: str
    coverage: float
    gaps: int
    presence_ok: bool


class PayloadAssembler(Protocol):
    def assemble(self, action: CriticalAction, components: Mapping[str, object]) -> str:
        """Assemble and emit the action payload; return a reference to it."""


class EvidenceReferenceAssembler:
    """Assembler that emits nothing beyond a reference to the sealed evidence."""

    def assemble(self, action: CriticalAction, components: Mapping[str, object]) -> str:
        return f"{action.value}:{components['seal_id']}"


@dataclass(slots=True)
class ActionReceipt:
    action: str
    episode: str
    seal_id: str
    manifest_digest: str
    node_id: str
    claimed_at: str
    status: str = "claimed"
    fired_at: str | None = None
    payload_ref: str | None = None
    quorum_signers: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class DispatchOutcome:
    status: str
    action: str
    episode: str | None = None
    receipt: ActionReceipt | None = None
    reasons: list[str] = field(default_factory=list)
    decision: Decision | None = None
    quorum: QuorumResult | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fired"

    def raise_for_status(self) -> ActionReceipt:
        if self.status == "fired" and self.receipt is not None:
            return self.receipt
        detail = {"action": self.action, "episode": self.episode, "reasons": ",".join(self.reasons)}
        if self.status == "already_fired":
            raise AlreadyFired(detail=detail)
        if self.status == "denied":
            if "anchors" in self.reasons:
                raise AnchorError(detail=detail)
            if "quorum" in self.reasons:
                raise QuorumError(detail=detail)
            raise PolicyDenied(detail=detail)
        raise FeedGateError("dispatch_failed", detail)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "action": self.action,
            "episode": self.episode,
            "reasons": list(self.reasons),
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "quorum": self.quorum.to_dict() if self.quorum else None,
        }


def episode_key(action: CriticalAction, seal_id: str, manifest_digest: str) -> str:
    payload = canonical_json({"action": action.value, "manifest_digest": manifest_digest, "seal_id": seal_id})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


class CriticalActionDispatcher:
    def __init__(
        self,
        storage: Storage,
        policy: PolicyRule,
        anchors: AnchorVerifier,
        quorum: QuorumVerifier,
        assembler: PayloadAssembler,
        *,
        quorum_required: int = 2,
        episodes_dir: str = EPISODES_DIR,
        seals_dir: str = SEALS_DIR,
        ledger_path: str = DISPATCH_LEDGER_PATH,
        node_id: str = "local",
        io_attempts: int = 3,
    ) -> None:
        self.storage = storage
        self.policy = policy
        self.anchors = anchors
        self.quorum = quorum
        self.assembler = assembler
        self.quorum_required = policy.quorum_required or quorum_required
        self.episodes_dir = episodes_dir
        self.seals_dir = seals_dir
        self.ledger_path = ledger_path
        self.node_id = node_id
        self.io_attempts = io_attempts

    def episode_path(self, episode: str) -> str:
        return f"{self.episodes_dir}/{episode}.json"

    def consumed(self, action: CriticalAction | str, evidence: DispatchEvidence) -> bool:
        parsed = CriticalAction.parse(action)
        return self.storage.exists(self.episode_path(episode_key(parsed, evidence.seal_id, evidence.manifest_digest)))

    def dispatch(self, action: CriticalAction | str, evidence: DispatchEvidence) -> DispatchOutcome:
        try:
            parsed = CriticalAction.parse(action)
        except ValueError:
            LOGGER.warning("dispatch_denied", extra={"action": str(action), "reasons": ["action_not_declared"]})
            return DispatchOutcome(status="denied", action=str(action), reasons=["action_not_declared"])
        if not self.policy.requires_quorum(parsed):
            return self._deny(parsed, ["action_not_declared"])

        sealed_digest = self._sealed_manifest_digest(evidence.seal_id)
        if sealed_digest is None:
            return self._deny(parsed, ["anchors"])
        if sealed_digest != evidence.manifest_digest:
            return self._deny(parsed, ["evidence_mismatch"])

        episode = episode_key(parsed, evidence.seal_id, sealed_digest)
        marker = self.episode_path(episode)
        if self.storage.exists(marker):
            return self._already_fired(parsed, episode)

        anchors_ok = self.anchors.anchors_ok(evidence.seal_id)
        quorum = self.quorum.evaluate(parsed.value, self.quorum_required, episode=episode)
        decision = evaluate(
            self.policy,
            Signals(
                coverage=evidence.coverage,
                gaps=evidence.gaps,
                anchors_ok=anchors_ok,
                quorum_ok=quorum.ok,
                presence_ok=evidence.presence_ok,
            ),
        )
        if not decision.promote:
            LOGGER.warning("dispatch_denied", extra={"action": parsed.value, "episode": episode, "reasons": list(decision.reasons)})
            return DispatchOutcome(
                status="denied",
                action=parsed.value,
                episode=episode,
                reasons=list(decision.reasons),
                decision=decision,
                quorum=quorum,
            )

        receipt = ActionReceipt(
            action=parsed.value,
            episode=episode,
            seal_id=evidence.seal_id,
            manifest_digest=evidence.manifest_digest,
            node_id=self.node_id,
            claimed_at=iso_now(),
            quorum_signers=list(quorum.valid_signers),
        )
        try:
            claimed = self.storage.create_exclusive(marker, json.dumps(receipt.to_dict(), indent=2, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.error("episode_claim_failed", extra={"episode": episode, "error": str(exc)})
            return DispatchOutcome(status="failed", action=parsed.value, episode=episode, reasons=["episode_claim_failed"], decision=decision, quorum=quorum)
        if not claimed:
            return self._already_fired(parsed, episode)

        # The episode is consumed from here on; the payload step is never retried.
        try:
            receipt.payload_ref = self.assembler.assemble(
                parsed,
                {
                    "seal_id": evidence.seal_id,
                    "manifest_digest": evidence.manifest_digest,
                    "episode": episode,
                    "quorum_signers": list(quorum.valid_signers),
                },
            )
        except Exception as exc:
            LOGGER.exception("dispatch_payload_failed", extra={"action": parsed.value, "episode": episode})
            receipt.status = "failed"
            receipt.error = str(exc) or type(exc).__name__
            self._record(marker, receipt)
            return DispatchOutcome(
                status="failed",
                action=parsed.value,
                episode=episode,
                receipt=receipt,
                reasons=["payload_failed"],
                decision=decision,
                quorum=quorum,
            )

        receipt.status = "fired"
        receipt.fired_at = iso_now()
        self._record(marker, receipt)
        LOGGER.info("critical_action_fired", extra={"action": parsed.value, "episode": episode, "seal_id": evidence.seal_id})
        return DispatchOutcome(status="fired", action=parsed.value, episode=episode, receipt=receipt, decision=decision, quorum=quorum)

    def receipts(self) -> list[dict[str, object]]:
        return read_jsonl(self.storage, self.ledger_path)

    def _sealed_manifest_digest(self, seal_id: str) -> str | None:
        """Manifest digest recorded in the seal artifact, or ``None`` when there is no usable artifact."""

        try:
            artifact = read_json(self.storage, seal_artifact_path(seal_id, self.seals_dir))
        except OSError as exc:
            LOGGER.warning("seal_artifact_unreadable", extra={"seal_id": seal_id, "error": str(exc)})
            return None
        digest = artifact.get("manifest_digest") if artifact else None
        return digest if isinstance(digest, str) and digest else None

    def _deny(self, action: CriticalAction, reasons: list[str]) -> DispatchOutcome:
        LOGGER.warning("dispatch_denied", extra={"action": action.value, "reasons": reasons})
        return DispatchOutcome(status="denied", action=action.value, reasons=reasons)

    def _already_fired(self, action: CriticalAction, episode: str) -> DispatchOutcome:
        existing = read_json(self.storage, self.episode_path(episode)) or {}
        LOGGER.info("dispatch_already_fired", extra={"action": action.value, "episode": episode, "prior_status": existing.get("status")})
        return DispatchOutcome(status="already_fired", action=action.value, episode=episode, reasons=["already_fired"])

    def _record(self, marker: str, receipt: ActionReceipt) -> None:
        payload = receipt.to_dict()
        try:
            with_retries(
                lambda: self.storage.write_atomic(marker, json.dumps(payload, indent=2, sort_keys=True) + "\n"),
                attempts=self.io_attempts,
                label="episode_marker",
            )
            with_retries(
                lambda: self.storage.append_line(self.ledger_path, canonical_json(payload)),
                attempts=self.io_attempts,
                label="dispatch_ledger",
            )
        except OSError as exc:
            LOGGER.error("dispatch_record_failed", extra={"episode": receipt.episode, "status": receipt.status, "error": str(exc)})
