"""Live-operator presence gate.

Presence is two files: a start beacon written when an operator begins a
session and an acknowledgment confirming the operator is attending this pass.
Both are re-read on every call. A successful check is good for one pass only:
the pass claims the acknowledgment it used with an exclusive marker under
``out/presence``, and a claimed acknowledgment is refused from then on.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import json
import logging
from typing import TYPE_CHECKING

from feedgate.clock import parse_iso, to_iso, utc_now
from feedgate.errors import AckRejected, MissingAck, MissingBeacon, PresenceError, StalePresence
from feedgate.storage import Storage, canonical_json, read_json

if TYPE_CHECKING:
    from feedgate.policy import PolicyRule

LOGGER = logging.getLogger(__name__)

BEACON_PATH = "out/START_BEACON.json"
ACK_PATH = "out/ACK_HUMAN.json"
CONSUMED_DIR = "out/presence"
DEFAULT_WINDOW_SECONDS = 900
AFFIRMATIVE_ACK_STATUSES = frozenset({"ack", "acknowledged", "approved", "ok", "present"})
_CLOCK_SKEW = timedelta(seconds=60)


@dataclass(frozen=True, slots=True)
class PresenceRecord:
    operator_id: str | None
    timezone: str | None
    beacon_at: str | None
    ack_status: str
    ack_at: str
    note: str
    ack_path: str = ACK_PATH

    def to_dict(self) -> dict[str, object]:
        return {
            "operator_id": self.operator_id,
            "timezone": self.timezone,
            "beacon_at": self.beacon_at,
            "ack_status": self.ack_status,
            "ack_at": self.ack_at,
            "note": self.note,
        }


class PresenceGate:
    def __init__(
        self,
        storage: Storage,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        beacon_path: str = BEACON_PATH,
        ack_path: str = ACK_PATH,
        consumed_dir: str = CONSUMED_DIR,
    ) -> None:
        self.storage = storage
        self.window_seconds = window_seconds
        self.beacon_path = beacon_path
        self.ack_path = ack_path
        self.consumed_dir = consumed_dir

    def require_presence(self, policy: PolicyRule, *, now: datetime | None = None) -> PresenceRecord:
        current = now or utc_now()
        window = timedelta(seconds=policy.presence_window_seconds or self.window_seconds)

        beacon = read_json(self.storage, self.beacon_path)
        beacon_at: datetime | None = None
        if policy.require_start_beacon:
            if beacon is None:
                raise MissingBeacon(detail={"path": self.beacon_path})
            beacon_at = parse_iso(beacon.get("timestamp"))
            if beacon_at is None:
                raise MissingBeacon("beacon_timestamp_invalid", {"path": self.beacon_path})
            _check_fresh("beacon", beacon_at, current, window)

        ack_path = policy.ack_file or self.ack_path
        ack = read_json(self.storage, ack_path)
        if ack is None:
            raise MissingAck(detail={"path": ack_path})
        ack_at = parse_iso(ack.get("timestamp"))
        if ack_at is None:
            raise MissingAck("ack_timestamp_invalid", {"path": ack_path})
        status = str(ack.get("status", "")).strip().lower()
        if status not in AFFIRMATIVE_ACK_STATUSES:
            raise AckRejected(detail={"status": status or "<empty>"})
        _check_fresh("ack", ack_at, current, window)
        if beacon_at is not None and ack_at < beacon_at:
            raise StalePresence("ack_predates_beacon", {"beacon_at": to_iso(beacon_at), "ack_at": to_iso(ack_at)})
        if self.storage.exists(self._consumed_path(ack_path, to_iso(ack_at))):
            raise StalePresence("ack_already_consumed", {"ack_at": to_iso(ack_at)})

        record = PresenceRecord(
            operator_id=_optional_str(beacon.get("operator_id")) if beacon else None,
            timezone=_optional_str(beacon.get("timezone")) if beacon else None,
            beacon_at=to_iso(beacon_at) if beacon_at else None,
            ack_status=status,
            ack_at=to_iso(ack_at),
            note=str(ack.get("note") or ""),
            ack_path=ack_path,
        )
        LOGGER.info("presence_confirmed", extra={"operator_id": record.operator_id, "ack_at": record.ack_at})
        return record

    def consume(self, record: PresenceRecord, *, now: datetime | None = None) -> None:
        """Claim the acknowledgment behind ``record`` for the current pass."""

        path = self._consumed_path(record.ack_path, record.ack_at)
        body = canonical_json({"ack_at": record.ack_at, "ack_path": record.ack_path, "consumed_at": to_iso(now or utc_now())})
        try:
            claimed = self.storage.create_exclusive(path, body + "\n")
        except OSError as exc:
            raise PresenceError("presence_claim_failed", {"path": path, "error": str(exc)}) from exc
        if not claimed:
            raise StalePresence("ack_already_consumed", {"ack_at": record.ack_at})
        LOGGER.debug("presence_consumed", extra={"ack_at": record.ack_at})

    def _consumed_path(self, ack_path: str, ack_at: str) -> str:
        key = hashlib.sha256(canonical_json({"ack_at": ack_at, "ack_path": ack_path}).encode("utf-8")).hexdigest()[:32]
        return f"{self.consumed_dir}/{key}.json"

    def write_beacon(self, operator_id: str, timezone_name: str, *, now: datetime | None = None) -> dict[str, object]:
        payload = {"operator_id": operator_id, "timezone": timezone_name, "timestamp": to_iso(now or utc_now())}
        self.storage.write_atomic(self.beacon_path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return payload

    def write_ack(self, policy: PolicyRule, *, status: str = "ack", note: str = "", now: datetime | None = None) -> dict[str, object]:
        payload = {"status": status, "timestamp": to_iso(now or utc_now()), "note": note}
        self.storage.write_atomic(policy.ack_file or self.ack_path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return payload


def _check_fresh(kind: str, stamp: datetime, now: datetime, window: timedelta) -> None:
    if stamp > now + _CLOCK_SKEW:
        raise StalePresence(f"{kind}_from_future", {"timestamp": to_iso(stamp)})
    if now - stamp > window:
        raise StalePresence(
            f"{kind}_stale",
            {"timestamp": to_iso(stamp), "window_seconds": int(window.total_seconds())},
        )


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None
