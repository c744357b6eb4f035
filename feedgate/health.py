"""Per-pass heartbeat records in ``FEED_HEALTH.jsonl``."""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging

from feedgate.clock import iso_now
from feedgate.storage import Storage, canonical_json, read_jsonl

LOGGER = logging.getLogger(__name__)

HEALTH_PATH = "out/FEED_HEALTH.jsonl"


@dataclass(frozen=True, slots=True)
class HealthRecord:
    timestamp: str
    node_id: str
    coverage: float
    gaps: int
    backlog: int
    promoted: bool
    stage: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class HealthReporter:
    """Appends one record per pass. Never raises into the caller."""

    def __init__(self, storage: Storage, node_id: str, *, path: str = HEALTH_PATH) -> None:
        self.storage = storage
        self.node_id = node_id
        self.path = path

    def record(
        self,
        coverage: float,
        gaps: int,
        backlog: int,
        promoted: bool,
        *,
        stage: str | None = None,
        status: str | None = None,
    ) -> HealthRecord | None:
        try:
            record = HealthRecord(
                timestamp=iso_now(),
                node_id=self.node_id,
                coverage=round(float(coverage), 6),
                gaps=int(gaps),
                backlog=int(backlog),
                promoted=bool(promoted),
                stage=stage,
                status=status,
            )
            self.storage.append_line(self.path, canonical_json(record.to_dict()))
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("health_record_failed", extra={"health_path": self.path, "error": str(exc)})
            return None
        return record

    def recent(self, limit: int = 10) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        return read_jsonl(self.storage, self.path)[-limit:]
