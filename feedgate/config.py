from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import socket
from typing import Mapping

from feedgate.storage import FileStorage

LOGGER = logging.getLogger(__name__)

_DEFAULT_OUT_DIR = "out"
_DEFAULT_KEYS_DIR = "keys"
_DEFAULT_POLICY_PATH = "FEED_LOCK"
_DEFAULT_INGEST_DIR = "feed"
_DEFAULT_PRESENCE_WINDOW_SECONDS = 900
_DEFAULT_LOOKUP_TIMEOUT_SECONDS = 10.0
_DEFAULT_IO_ATTEMPTS = 3
_DEFAULT_QUORUM_REQUIRED = 2
_DEFAULT_MIN_PINS = 1


@dataclass(frozen=True)
class FeedGateConfig:
    """Resolved locations and tunables for one feedgate installation.

    Artifact locations are storage-relative so the same configuration works
    against :class:`~feedgate.storage.FileStorage` rooted at ``repo_root`` and
    against an in-memory store in tests.
    """

    repo_root: Path
    out_dir: str = _DEFAULT_OUT_DIR
    keys_dir: str = _DEFAULT_KEYS_DIR
    policy_path: str = _DEFAULT_POLICY_PATH
    ingest_dir: str = _DEFAULT_INGEST_DIR
    ingest_globs: tuple[str, ...] = ("**/*",)
    node_id: str = field(default_factory=socket.gethostname)
    presence_window_seconds: int = _DEFAULT_PRESENCE_WINDOW_SECONDS
    lookup_timeout_seconds: float = _DEFAULT_LOOKUP_TIMEOUT_SECONDS
    io_attempts: int = _DEFAULT_IO_ATTEMPTS
    quorum_required: int = _DEFAULT_QUORUM_REQUIRED
    min_pins: int = _DEFAULT_MIN_PINS

    @property
    def beacon_path(self) -> str:
        return f"{self.out_dir}/START_BEACON.json"

    @property
    def default_ack_path(self) -> str:
        return f"{self.out_dir}/ACK_HUMAN.json"

    @property
    def journal_path(self) -> str:
        return f"{self.out_dir}/wa_hash.log"

    @property
    def state_path(self) -> str:
        return f"{self.out_dir}/STATE.json"

    @property
    def proofs_path(self) -> str:
        return f"{self.out_dir}/REKOR_PROOFS.jsonl"

    @property
    def pin_report_path(self) -> str:
        return f"{self.out_dir}/PIN_REPORT.json"

    @property
    def health_path(self) -> str:
        return f"{self.out_dir}/FEED_HEALTH.jsonl"

    @property
    def seals_dir(self) -> str:
        return f"{self.out_dir}/seals"

    @property
    def episodes_dir(self) -> str:
        return f"{self.out_dir}/episodes"

    @property
    def presence_dir(self) -> str:
        return f"{self.out_dir}/presence"

    @property
    def dispatch_ledger_path(self) -> str:
        return f"{self.out_dir}/DISPATCH_LEDGER.jsonl"

    @property
    def signatures_dir(self) -> str:
        return f"{self.keys_dir}/signed"

    @property
    def authorized_keys_path(self) -> str:
        return f"{self.keys_dir}/authorized_keys.yaml"

    @property
    def seal_lock_name(self) -> str:
        return f"{self.out_dir}/SEAL"

    def storage(self) -> FileStorage:
        return FileStorage(self.repo_root)


def resolve_config(repo_root: Path, env: Mapping[str, str] | None = None) -> FeedGateConfig:
    """Build a :class:`FeedGateConfig` from ``FEEDGATE_*`` environment values."""

    data = os.environ if env is None else env
    globs_raw = data.get("FEEDGATE_INGEST_GLOBS", "")
    globs = tuple(item.strip() for item in globs_raw.split(",") if item.strip()) or ("**/*",)
    node_id = data.get("FEEDGATE_NODE_ID") or socket.gethostname()
    return FeedGateConfig(
        repo_root=Path(repo_root),
        out_dir=data.get("FEEDGATE_OUT_DIR", _DEFAULT_OUT_DIR),
        keys_dir=data.get("FEEDGATE_KEYS_DIR", _DEFAULT_KEYS_DIR),
        policy_path=data.get("FEEDGATE_POLICY_PATH", _DEFAULT_POLICY_PATH),
        ingest_dir=data.get("FEEDGATE_INGEST_DIR", _DEFAULT_INGEST_DIR),
        ingest_globs=globs,
        node_id=node_id,
        presence_window_seconds=_env_int(data, "FEEDGATE_PRESENCE_WINDOW_SECONDS", _DEFAULT_PRESENCE_WINDOW_SECONDS, minimum=1),
        lookup_timeout_seconds=_env_float(data, "FEEDGATE_LOOKUP_TIMEOUT_SECONDS", _DEFAULT_LOOKUP_TIMEOUT_SECONDS),
        io_attempts=_env_int(data, "FEEDGATE_IO_ATTEMPTS", _DEFAULT_IO_ATTEMPTS, minimum=1),
        quorum_required=_env_int(data, "FEEDGATE_QUORUM_REQUIRED", _DEFAULT_QUORUM_REQUIRED, minimum=1),
        min_pins=_env_int(data, "FEEDGATE_MIN_PINS", _DEFAULT_MIN_PINS, minimum=1),
    )


def _env_int(data: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = data.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s", name, raw)
        return default
    if value < minimum:
        LOGGER.warning("Value for %s below minimum %s: %s", name, minimum, raw)
        return default
    return value


def _env_float(data: Mapping[str, str], name: str, default: float) -> float:
    raw = data.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s", name, raw)
        return default
    if value <= 0:
        LOGGER.warning("Non-positive value for %s: %s", name, raw)
        return default
    return value
