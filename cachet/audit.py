"""
cachet/audit.py

Tamper-evident login audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <audit_dir>/login_audit.state
- Uses file locking (flock) to keep chain consistent across workers.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "login_audit.jsonl"
STATE_NAME = "login_audit.state"
LOCK_NAME = "login_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Produce deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


# -----------------------------------------------------------------------------
# Event helpers
# -----------------------------------------------------------------------------
def build_common(
    *,
    challenge: Optional[bytes] = None,
    pubkey: Optional[bytes] = None,
    signature: Optional[bytes] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.

    Signatures are stored as length + hash only, so logs stay small and
    carry nothing replayable.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if challenge is not None:
        out["k1"] = challenge.hex()
    if pubkey is not None:
        out["pubkey"] = pubkey.hex()
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if signature is not None:
        out["signature_len"] = len(signature)
        out["signature_sha3_256"] = _sha3_256_hex(signature)

    return out


# -----------------------------------------------------------------------------
# Audit log
# -----------------------------------------------------------------------------
class AuditLog:
    def __init__(self, directory, enabled: bool = True):
        self.enabled = enabled
        self.dir = Path(directory)
        self.log_path = self.dir / LOG_NAME
        self.state_path = self.dir / STATE_NAME
        self.lock_path = self.dir / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing or unreadable.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining; returns the new chain hash.

        The function:
        - locks the lock file
        - reads prev hash
        - computes next hash over canonical event (excluding hash fields)
        - writes JSONL line containing prev_hash + hash
        - updates state file
        """
        if not self.enabled:
            return None

        self.dir.mkdir(parents=True, exist_ok=True)

        # Dedicated lock file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                canon = _canonical_json_bytes(e)
                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + canon)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def record(self, result: str, reason: str, **fields: Any) -> None:
        """
        Append a login event. I/O failures are logged, never raised.
        """
        common_keys = ("challenge", "pubkey", "signature", "request_ip", "user_agent")
        common = build_common(**{k: fields.pop(k) for k in common_keys if k in fields})
        try:
            self.append({**common, "result": result, "reason": reason, **fields})
        except OSError as e:
            logger.error("audit append failed (%s/%s): %s", result, reason, e)


# -----------------------------------------------------------------------------
# Verification utility
# -----------------------------------------------------------------------------
def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid, False otherwise.
    """
    path = Path(path)
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False
            if not isinstance(obj, dict):
                return False

            line_prev = obj.get("prev_hash")
            line_hash = obj.get("hash")
            if line_prev != prev:
                return False

            # recompute from event excluding hash fields
            obj2 = dict(obj)
            obj2.pop("prev_hash", None)
            obj2.pop("hash", None)

            expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
            if expect != line_hash:
                return False

            prev = line_hash

    return True
