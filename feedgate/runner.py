"""Gated pass orchestration: presence, seal, policy, dispatch, health."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from nacl.signing import VerifyKey

from feedgate.actions import CriticalAction
from feedgate.anchors import AnchorRecorder, AnchorVerification, AnchorVerifier, PinningService, TransparencyLog
from feedgate.backends import FilePinStore, FileTransparencyLog
from feedgate.clock import iso_now
from feedgate.config import FeedGateConfig
from feedgate.dispatcher import (
    CriticalActionDispatcher,
    DispatchEvidence,
    DispatchOutcome,
    EvidenceReferenceAssembler,
    PayloadAssembler,
    episode_key,
)
from feedgate.errors import PresenceError, StateCorruption
from feedgate.health import HealthRecord, HealthReporter
from feedgate.journal import HashJournal
from feedgate.manifest import ContentSource, DirectorySource
from feedgate.pipeline import PassResult, SealPipeline
from feedgate.policy import Decision, PolicyRule, Signals, evaluate, load_policy
from feedgate.presence import PresenceGate
from feedgate.quorum import QuorumResult, QuorumVerifier, load_authorized_keys
from feedgate.state_store import DeltaStateStore
from feedgate.storage import Storage, read_jsonl

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class GateReport:
    action: str | None = None
    pass_result: PassResult | None = None
    decision: Decision | None = None
    dispatch: DispatchOutcome | None = None
    promoted: bool = False
    health: HealthRecord | None = None

    @property
    def ok(self) -> bool:
        if self.pass_result is None or not self.pass_result.ok:
            return False
        if self.action is not None:
            return self.dispatch is not None and self.dispatch.ok
        return self.promoted

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "action": self.action,
            "promoted": self.promoted,
            "pass": self.pass_result.to_dict() if self.pass_result else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "health": self.health.to_dict() if self.health else None,
        }


class FeedGate:
    """Wires every component from one :class:`FeedGateConfig`."""

    def __init__(
        self,
        config: FeedGateConfig,
        *,
        storage: Storage | None = None,
        source: ContentSource | None = None,
        log: TransparencyLog | None = None,
        pins: PinningService | None = None,
        assembler: PayloadAssembler | None = None,
        log_keys: dict[str, VerifyKey] | None = None,
    ) -> None:
        self.config = config
        self.storage = storage or config.storage()
        self.source = source or DirectorySource(config.repo_root / config.ingest_dir, config.ingest_globs)
        self.assembler = assembler or EvidenceReferenceAssembler()
        self.journal = HashJournal(self.storage, path=config.journal_path)
        self.state_store = DeltaStateStore(self.storage, path=config.state_path, lock_name=config.seal_lock_name)
        self.presence_gate = PresenceGate(
            self.storage,
            window_seconds=config.presence_window_seconds,
            beacon_path=config.beacon_path,
            ack_path=config.default_ack_path,
            consumed_dir=config.presence_dir,
        )
        self.recorder = AnchorRecorder(
            self.storage,
            log or FileTransparencyLog(self.storage, leaves_path=f"{config.out_dir}/tlog/leaves.jsonl"),
            pins or FilePinStore(self.storage, root=f"{config.out_dir}/cas"),
            attempts=config.io_attempts,
            proofs_path=config.proofs_path,
            pin_report_path=config.pin_report_path,
        )
        self.verifier = AnchorVerifier(
            self.storage,
            min_pins=config.min_pins,
            timeout=config.lookup_timeout_seconds,
            log_keys=log_keys,
            proofs_path=config.proofs_path,
            pin_report_path=config.pin_report_path,
            seals_dir=config.seals_dir,
        )
        self.health = HealthReporter(self.storage, config.node_id, path=config.health_path)
        self.pipeline = SealPipeline(
            self.storage,
            self.source,
            journal=self.journal,
            state_store=self.state_store,
            presence_gate=self.presence_gate,
            recorder=self.recorder,
            verifier=self.verifier,
            node_id=config.node_id,
            seals_dir=config.seals_dir,
        )

    def load_policy(self) -> PolicyRule:
        return load_policy(self.storage, self.config.policy_path)

    def quorum_verifier(self) -> QuorumVerifier:
        # Keys are re-read so revocations apply from the next call on.
        keys = load_authorized_keys(self.storage, self.config.authorized_keys_path)
        return QuorumVerifier(
            self.storage,
            keys,
            signatures_dir=self.config.signatures_dir,
            timeout=self.config.lookup_timeout_seconds,
        )

    def dispatcher(self, policy: PolicyRule) -> CriticalActionDispatcher:
        return CriticalActionDispatcher(
            self.storage,
            policy,
            self.verifier,
            self.quorum_verifier(),
            self.assembler,
            quorum_required=self.config.quorum_required,
            episodes_dir=self.config.episodes_dir,
            seals_dir=self.config.seals_dir,
            ledger_path=self.config.dispatch_ledger_path,
            node_id=self.config.node_id,
            io_attempts=self.config.io_attempts,
        )

    def run_once(self, action: CriticalAction | str | None = None, *, now: datetime | None = None) -> GateReport:
        """Run one gated pass and, when ``action`` is given, try to fire it.

        Presence and state corruption are re-raised after the health record is
        written; every other outcome is reported on the returned report.
        """

        action_name = action.value if isinstance(action, CriticalAction) else action
        report = GateReport(action=action_name)
        try:
            policy = self.load_policy()
            result = self.pipeline.run_pass(policy, now=now)
            report.pass_result = result
            if isinstance(result.error, (PresenceError, StateCorruption)):
                raise result.error
            if not result.ok:
                return report
            if action is None:
                report.decision = self._promotion_decision(policy, result)
                report.promoted = report.decision.promote
            else:
                report.dispatch = self._dispatch(policy, action, result)
                report.decision = report.dispatch.decision
                report.promoted = report.dispatch.ok
            return report
        finally:
            result = report.pass_result
            report.health = self.health.record(
                coverage=result.coverage if result else 0.0,
                gaps=result.gaps if result else 0,
                backlog=result.backlog if result else 0,
                promoted=report.promoted,
                stage=result.stage.value if result else None,
                status=result.status if result else "aborted",
            )
            LOGGER.info("gate_pass_finished", extra={"promoted": report.promoted, "pass_status": result.status if result else None})

    def _promotion_decision(self, policy: PolicyRule, result: PassResult) -> Decision:
        anchors_ok = bool(result.seal_id) and self.verifier.anchors_ok(str(result.seal_id))
        return evaluate(
            policy,
            Signals(
                coverage=result.coverage,
                gaps=result.gaps,
                anchors_ok=anchors_ok,
                quorum_ok=False,
                presence_ok=result.presence is not None,
            ),
            skip=("quorum",),
        )

    def _dispatch(self, policy: PolicyRule, action: CriticalAction | str, result: PassResult) -> DispatchOutcome:
        state = result.state
        if not result.seal_id or state is None or not state.manifest_digest:
            return DispatchOutcome(status="denied", action=str(action), reasons=["seal_missing"])
        evidence = DispatchEvidence(
            seal_id=result.seal_id,
            manifest_digest=state.manifest_digest,
            coverage=result.coverage,
            gaps=result.gaps,
            presence_ok=result.presence is not None,
        )
        return self.dispatcher(policy).dispatch(action, evidence)

    def verify_anchors(self, seal_id: str | None = None) -> AnchorVerification:
        target = seal_id or self.state_store.load().seal_id
        if target is None:
            return AnchorVerification(status="missing", checked_at=iso_now(), reasons=["seal_missing"])
        return self.verifier.verify(target)

    def verify_quorum(self, action: CriticalAction | str) -> QuorumResult:
        policy = self.load_policy()
        parsed = CriticalAction.parse(action)
        state = self.state_store.load()
        episode = episode_key(parsed, state.seal_id, state.manifest_digest) if state.seal_id and state.manifest_digest else None
        return self.quorum_verifier().evaluate(parsed.value, policy.quorum_required or self.config.quorum_required, episode=episode)

    def status(self) -> dict[str, object]:
        state = self.state_store.load()
        return {
            "state": state.to_dict(),
            "health": self.health.recent(5),
            "dispatches": read_jsonl(self.storage, self.config.dispatch_ledger_path)[-5:],
        }
