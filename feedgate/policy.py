"""Declarative promotion policy (``FEED_LOCK``) and its evaluator."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Mapping

import yaml

from feedgate.actions import CriticalAction
from feedgate.errors import ConfigError
from feedgate.storage import Storage

LOGGER = logging.getLogger(__name__)

POLICY_PATH = "FEED_LOCK"
SCHEMA_VERSION = 1

PREDICATES = ("presence", "anchors", "quorum", "coverage", "gaps")
ALWAYS_ENFORCED = ("coverage", "gaps")


@dataclass(frozen=True)
class PolicyRule:
    coverage_threshold: float
    critical_actions: frozenset[CriticalAction]
    require_start_beacon: bool = True
    ack_file: str | None = None
    promote_only_if: tuple[str, ...] = PREDICATES
    quorum_required: int | None = None
    presence_window_seconds: int | None = None
    schema_version: int = SCHEMA_VERSION

    def requires_quorum(self, action: CriticalAction) -> bool:
        return action in self.critical_actions


@dataclass(frozen=True, slots=True)
class Signals:
    coverage: float
    gaps: int
    anchors_ok: bool
    quorum_ok: bool
    presence_ok: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "coverage": self.coverage,
            "gaps": self.gaps,
            "anchors_ok": self.anchors_ok,
            "quorum_ok": self.quorum_ok,
            "presence_ok": self.presence_ok,
        }


@dataclass(frozen=True, slots=True)
class Decision:
    promote: bool
    reasons: tuple[str, ...] = ()
    checked: tuple[str, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return self.promote

    def to_dict(self) -> dict[str, object]:
        return {"decision": "promote" if self.promote else "deny", "reasons": list(self.reasons), "checked": list(self.checked)}


def _predicate_holds(name: str, policy: PolicyRule, signals: Signals) -> bool:
    if name == "coverage":
        return signals.coverage >= policy.coverage_threshold
    if name == "gaps":
        return signals.gaps <= 0
    if name == "anchors":
        return signals.anchors_ok
    if name == "quorum":
        return signals.quorum_ok
    if name == "presence":
        return signals.presence_ok
    raise ValueError(f"unknown predicate: {name}")


def evaluate(policy: PolicyRule, signals: Signals, *, skip: Iterable[str] = ()) -> Decision:
    """Evaluate ``promote.only_if`` in order and report every failing predicate.

    ``coverage`` and ``gaps`` are enforced even when the policy omits them.
    ``skip`` drops predicates that do not apply at the call site, such as
    ``quorum`` when approving a seal rather than an action.
    """

    skipped = set(skip) - set(ALWAYS_ENFORCED)
    order = list(policy.promote_only_if) + [name for name in ALWAYS_ENFORCED if name not in policy.promote_only_if]
    checked: list[str] = []
    reasons: list[str] = []
    for name in order:
        if name in skipped:
            continue
        checked.append(name)
        if not _predicate_holds(name, policy, signals):
            reasons.append(name)
    decision = Decision(promote=not reasons, reasons=tuple(reasons), checked=tuple(checked))
    LOGGER.info("policy_evaluated", extra={"promote": decision.promote, "reasons": list(decision.reasons)})
    return decision


def load_policy(storage: Storage, path: str = POLICY_PATH) -> PolicyRule:
    try:
        text = storage.read_text(path)
    except OSError as exc:
        raise ConfigError("policy_unreadable", {"path": path, "error": str(exc)}) from exc
    if text is None:
        raise ConfigError("policy_missing", {"path": path})
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError("policy_malformed", {"path": path, "error": str(exc)}) from exc
    if not isinstance(loaded, Mapping):
        raise ConfigError("policy_malformed", {"path": path, "error": "top level must be a mapping"})
    return policy_from_mapping(loaded, path=path)


def policy_from_mapping(mapping: Mapping[str, Any], *, path: str = POLICY_PATH) -> PolicyRule:
    def fail(message: str) -> ConfigError:
        return ConfigError("policy_invalid", {"path": path, "error": message})

    schema_version = mapping.get("schema_version")
    if schema_version != SCHEMA_VERSION:
        raise fail(f"unsupported schema_version {schema_version!r}")

    threshold = mapping.get("coverage_threshold")
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0.0 <= float(threshold) <= 1.0:
        raise fail("coverage_threshold must be a number in [0, 1]")

    raw_actions = mapping.get("critical_actions", [])
    if not isinstance(raw_actions, list):
        raise fail("critical_actions must be a list")
    actions: set[CriticalAction] = set()
    for item in raw_actions:
        try:
            actions.add(CriticalAction.parse(item))
        except ValueError as exc:
            raise fail(str(exc)) from exc

    presence = _section(mapping, "presence", fail)
    require_beacon = presence.get("require_start_beacon", True)
    if not isinstance(require_beacon, bool):
        raise fail("presence.require_start_beacon must be a boolean")
    ack_file = presence.get("ack_file")
    if ack_file is not None and (not isinstance(ack_file, str) or not ack_file):
        raise fail("presence.ack_file must be a path")
    window = _optional_positive_int(presence.get("window_seconds"), "presence.window_seconds", fail)

    quorum = _section(mapping, "quorum", fail)
    quorum_required = _optional_positive_int(quorum.get("required"), "quorum.required", fail)

    promote = _section(mapping, "promote", fail)
    only_if = promote.get("only_if", list(PREDICATES))
    if not isinstance(only_if, list) or not all(isinstance(item, str) for item in only_if):
        raise fail("promote.only_if must be a list of predicate names")
    unknown = [item for item in only_if if item not in PREDICATES]
    if unknown:
        raise fail(f"unknown predicates {unknown}")
    if len(set(only_if)) != len(only_if):
        raise fail("promote.only_if has duplicates")

    return PolicyRule(
        coverage_threshold=float(threshold),
        critical_actions=frozenset(actions),
        require_start_beacon=require_beacon,
        ack_file=ack_file,
        promote_only_if=tuple(only_if),
        quorum_required=quorum_required,
        presence_window_seconds=window,
        schema_version=SCHEMA_VERSION,
    )


def _section(mapping: Mapping[str, Any], name: str, fail: Any) -> Mapping[str, Any]:
    value = mapping.get(name) or {}
    if not isinstance(value, Mapping):
        raise fail(f"{name} must be a mapping")
    return value


def _optional_positive_int(value: object, label: str, fail: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise fail(f"{label} must be a positive integer")
    return value
