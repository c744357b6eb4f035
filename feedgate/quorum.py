"""Quorum verification over ed25519-signed authorization credentials.

Each credential under ``keys/signed/*.sig`` is a JSON document::

    {"key_id": "...", "action_id": "...", "episode": null | "...",
     "signed_at": "...Z", "signature": "<base64>"}

Only credentials whose signature verifies against an authorized, unexpired,
unrevoked key count, and each signer counts once.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import json
import logging

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey
import yaml

from feedgate.clock import parse_iso, to_iso, utc_now
from feedgate.errors import ConfigError
from feedgate.lookup import LookupTimeout, call_with_timeout
from feedgate.storage import Storage, canonical_json

LOGGER = logging.getLogger(__name__)

SIGNATURES_DIR = "keys/signed"
AUTHORIZED_KEYS_PATH = "keys/authorized_keys.yaml"
QUORUM_NAMESPACE = "feedgate-quorum-v1"
_CLOCK_SKEW = timedelta(minutes=5)


@dataclass(frozen=True, slots=True)
class AuthorizedKey:
    key_id: str
    verify_key: VerifyKey
    expires_at: datetime | None = None
    revoked: bool = False


@dataclass(slots=True)
class QuorumResult:
    action_id: str
    required_n: int
    valid_signers: list[str] = field(default_factory=list)
    rejected: list[dict[str, str]] = field(default_factory=list)
    status: str = "evaluated"

    @property
    def count(self) -> int:
        return len(self.valid_signers)

    @property
    def ok(self) -> bool:
        return self.status == "evaluated" and self.count >= self.required_n

    def to_dict(self) -> dict[str, object]:
        return {
            "action_id": self.action_id,
            "required_n": self.required_n,
            "valid_signers": list(self.valid_signers),
            "rejected": list(self.rejected),
            "status": self.status,
            "ok": self.ok,
        }


def authorization_message(key_id: str, action_id: str, episode: str | None, signed_at: str) -> bytes:
    payload = {
        "namespace": QUORUM_NAMESPACE,
        "key_id": key_id,
        "action_id": action_id,
        "episode": episode,
        "signed_at": signed_at,
    }
    return canonical_json(payload).encode("utf-8")


def sign_authorization(
    signing_key: SigningKey,
    key_id: str,
    action_id: str,
    *,
    episode: str | None = None,
    signed_at: str | None = None,
) -> dict[str, object]:
    """Issue one credential; used by operator tooling and tests."""

    stamp = signed_at or to_iso(utc_now())
    signature = signing_key.sign(authorization_message(key_id, action_id, episode, stamp)).signature
    return {
        "key_id": key_id,
        "action_id": action_id,
        "episode": episode,
        "signed_at": stamp,
        "signature": base64.b64encode(signature).decode("ascii"),
    }


def load_authorized_keys(storage: Storage, path: str = AUTHORIZED_KEYS_PATH) -> dict[str, AuthorizedKey]:
    text = storage.read_text(path)
    if text is None:
        LOGGER.warning("authorized_keys_missing", extra={"keys_path": path})
        return {}
    try:
        loaded = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError("authorized_keys_invalid", {"path": path, "error": str(exc)}) from exc
    entries = loaded.get("keys") if isinstance(loaded, dict) else None
    if not isinstance(entries, list):
        raise ConfigError("authorized_keys_invalid", {"path": path, "error": "keys must be a list"})

    keys: dict[str, AuthorizedKey] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError("authorized_keys_invalid", {"path": path, "error": "entry must be a mapping"})
        key_id = entry.get("key_id")
        public_key = entry.get("public_key")
        if not isinstance(key_id, str) or not key_id or not isinstance(public_key, str):
            raise ConfigError("authorized_keys_invalid", {"path": path, "error": "key_id and public_key required"})
        if key_id in keys:
            raise ConfigError("authorized_keys_invalid", {"path": path, "error": f"duplicate key_id {key_id}"})
        try:
            verify_key = VerifyKey(base64.b64decode(public_key, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise ConfigError("authorized_keys_invalid", {"path": path, "key_id": key_id, "error": str(exc)}) from exc
        expires_raw = entry.get("expires_at")
        if isinstance(expires_raw, datetime):
            expires_raw = to_iso(expires_raw)
        expires_at = parse_iso(expires_raw) if expires_raw is not None else None
        if expires_raw is not None and expires_at is None:
            raise ConfigError("authorized_keys_invalid", {"path": path, "key_id": key_id, "error": "expires_at unparseable"})
        keys[key_id] = AuthorizedKey(key_id=key_id, verify_key=verify_key, expires_at=expires_at, revoked=bool(entry.get("revoked", False)))
    return keys


class QuorumVerifier:
    def __init__(
        self,
        storage: Storage,
        keys: dict[str, AuthorizedKey],
        *,
        signatures_dir: str = SIGNATURES_DIR,
        timeout: float = 10.0,
    ) -> None:
        self.storage = storage
        self.keys = keys
        self.signatures_dir = signatures_dir
        self.timeout = timeout

    def quorum_ok(self, action_id: str, required_n: int, *, episode: str | None = None) -> bool:
        return self.evaluate(action_id, required_n, episode=episode).ok

    def evaluate(
        self,
        action_id: str,
        required_n: int,
        *,
        episode: str | None = None,
        now: datetime | None = None,
    ) -> QuorumResult:
        try:
            return call_with_timeout(lambda: self._evaluate(action_id, required_n, episode, now or utc_now()), self.timeout)
        except LookupTimeout:
            LOGGER.warning("quorum_lookup_timeout", extra={"action_id": action_id})
            return QuorumResult(action_id=action_id, required_n=required_n, status="timeout")

    def _evaluate(self, action_id: str, required_n: int, episode: str | None, now: datetime) -> QuorumResult:
        result = QuorumResult(action_id=action_id, required_n=required_n)
        for path in self.storage.list(self.signatures_dir, "*.sig"):
            reason, key_id = self._check(path, action_id, episode, now)
            if reason is not None or key_id is None:
                result.rejected.append({"file": path, "reason": reason or "key_id_missing"})
                continue
            if key_id in result.valid_signers:
                result.rejected.append({"file": path, "reason": "duplicate_signer"})
                continue
            result.valid_signers.append(key_id)
        LOGGER.info(
            "quorum_evaluated",
            extra={"action_id": action_id, "valid": result.count, "required": required_n, "rejected": len(result.rejected)},
        )
        return result

    def _check(self, path: str, action_id: str, episode: str | None, now: datetime) -> tuple[str | None, str | None]:
        text = self.storage.read_text(path)
        try:
            credential = json.loads(text or "")
        except json.JSONDecodeError:
            return "credential_unparseable", None
        if not isinstance(credential, dict):
            return "credential_unparseable", None
        key_id = credential.get("key_id")
        signed_at_raw = credential.get("signed_at")
        signature = credential.get("signature")
        credential_episode = credential.get("episode")
        if not isinstance(key_id, str) or not isinstance(signed_at_raw, str) or not isinstance(signature, str):
            return "credential_incomplete", None
        if credential.get("action_id") != action_id:
            return "action_mismatch", None
        if credential_episode is not None and credential_episode != episode:
            return "episode_mismatch", None

        key = self.keys.get(key_id)
        if key is None:
            return "unknown_signer", None
        if key.revoked:
            return "key_revoked", None
        signed_at = parse_iso(signed_at_raw)
        if signed_at is None:
            return "signed_at_invalid", None
        if signed_at > now + _CLOCK_SKEW:
            return "signed_in_future", None
        if key.expires_at is not None and (now >= key.expires_at or signed_at >= key.expires_at):
            return "key_expired", None
        try:
            key.verify_key.verify(
                authorization_message(key_id, action_id, credential_episode, signed_at_raw),
                base64.b64decode(signature, validate=True),
            )
        except (BadSignatureError, binascii.Error, ValueError):
            return "signature_invalid", None
        return None, key_id
