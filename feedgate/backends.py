"""Local anchor backends: an append-only Merkle log and a content-addressed pin store.

These stand in for remote transparency-log and pinning services in development
and tests. They produce evidence in the same shape the remote collaborators
are expected to return.
"""

from __future__ import annotations

import base64
import logging
import threading

from nacl.signing import SigningKey

from feedgate.anchors import leaf_for_digest, tree_head_message
from feedgate.clock import iso_now
from feedgate.manifest import hash_bytes
from feedgate.merkle import audit_path, root_hash
from feedgate.storage import Storage, canonical_json, read_jsonl

LOGGER = logging.getLogger(__name__)


class FileTransparencyLog:
    def __init__(
        self,
        storage: Storage,
        *,
        leaves_path: str = "out/tlog/leaves.jsonl",
        log_id: str = "local",
        signing_key: SigningKey | None = None,
    ) -> None:
        self.storage = storage
        self.leaves_path = leaves_path
        self.log_id = log_id
        self.signing_key = signing_key
        self._mutex = threading.Lock()

    def submit(self, artifact_digest: str) -> dict[str, object]:
        with self._mutex:
            self.storage.append_line(self.leaves_path, canonical_json({"artifact_digest": artifact_digest, "integrated_at": iso_now()}))
            leaves = [leaf_for_digest(str(row["artifact_digest"])) for row in read_jsonl(self.storage, self.leaves_path)]
        index = len(leaves) - 1
        root_hex = root_hash(leaves).hex()
        proof: dict[str, object] = {
            "log_id": self.log_id,
            "log_index": index,
            "tree_size": len(leaves),
            "root_hash": root_hex,
            "hashes": [item.hex() for item in audit_path(index, leaves)],
            "signed_tree_head": None,
        }
        if self.signing_key is not None:
            signature = self.signing_key.sign(tree_head_message(self.log_id, len(leaves), root_hex)).signature
            proof["signed_tree_head"] = base64.b64encode(signature).decode("ascii")
        LOGGER.debug("tlog_integrated", extra={"log_index": index, "artifact_digest": artifact_digest})
        return proof


class FilePinStore:
    """Content-addressed object store; each configured replica is a directory."""

    def __init__(self, storage: Storage, *, root: str = "out/cas", replicas: tuple[str, ...] = ("local",)) -> None:
        self.storage = storage
        self.root = root
        self.replicas = replicas

    def pin(self, artifact: bytes, artifact_digest: str) -> dict[str, object]:
        if hash_bytes(artifact) != artifact_digest:
            raise ValueError("artifact does not match digest")
        pins: list[dict[str, object]] = []
        for replica in self.replicas:
            path = f"{self.root}/{replica}/{artifact_digest}"
            existing = self.storage.read_bytes(path)
            if existing is None or hash_bytes(existing) != artifact_digest:
                self.storage.write_atomic(path, artifact)
            pins.append({"provider": replica, "status": "pinned", "path": path, "pinned_at": iso_now()})
        return {"cid": f"sha256:{artifact_digest}", "size": len(artifact), "pins": pins}
