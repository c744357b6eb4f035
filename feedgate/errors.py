"""Error taxonomy for the gated feed pipeline."""

from __future__ import annotations

from typing import Mapping


class FeedGateError(RuntimeError):
    """Base error carrying a machine reason code and optional detail."""

    default_reason = "feedgate_error"

    def __init__(self, reason: str | None = None, detail: Mapping[str, object] | str | None = None) -> None:
        self.reason = reason or self.default_reason
        if isinstance(detail, str):
            detail = {"message": detail}
        self.detail: dict[str, object] = dict(detail or {})
        message = self.reason
        if self.detail:
            message += ":" + ",".join(f"{key}={value}" for key, value in sorted(self.detail.items()))
        super().__init__(message)


class ConfigError(FeedGateError):
    """Policy file missing or malformed; no pass may proceed."""

    default_reason = "config_invalid"


class PresenceError(FeedGateError):
    """Live-operator presence could not be established for this pass."""

    default_reason = "presence_missing"


class MissingBeacon(PresenceError):
    default_reason = "missing_beacon"


class MissingAck(PresenceError):
    default_reason = "missing_ack"


class AckRejected(PresenceError):
    default_reason = "ack_rejected"


class StalePresence(PresenceError):
    default_reason = "stale_presence"


class JournalWriteError(FeedGateError):
    default_reason = "journal_write_failed"


class AnchorError(FeedGateError):
    default_reason = "anchors_invalid"


class QuorumError(FeedGateError):
    default_reason = "quorum_not_met"


class StateCorruption(FeedGateError):
    """Persisted seal state is unreadable or inconsistent. Operator must intervene."""

    default_reason = "state_corrupt"


class SealInProgress(FeedGateError):
    default_reason = "seal_in_progress"


class PolicyDenied(FeedGateError):
    default_reason = "policy_denied"


class AlreadyFired(FeedGateError):
    """The trigger episode was already consumed by an earlier dispatch."""

    default_reason = "already_fired"


__all__ = [
    "AckRejected",
    "AlreadyFired",
    "AnchorError",
    "ConfigError",
    "FeedGateError",
    "JournalWriteError",
    "MissingAck",
    "MissingBeacon",
    "PolicyDenied",
    "PresenceError",
    "QuorumError",
    "SealInProgress",
    "StalePresence",
    "StateCorruption",
]
