"""
Audit trail for guarded account state transitions.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import AuditChainError
from .storage import ensure_private_dir, ensure_private_file, exclusive_lock

logger = logging.getLogger(__name__)


DEFAULT_AUDIT_PATH = Path.home() / ".x402guard" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".x402guard-secrets" / "audit_hmac.key"


def _parse_line(line) -> dict:
    try:
        return json.loads(line)
    except ValueError as e:
        raise AuditChainError(f"Audit log has an unreadable entry: {e}") from e


class EventType(str, Enum):
    GUARD_CREATED = "guard_created"
    POLICY_UPDATED = "policy_updated"
    AGENT_UPDATED = "agent_updated"
    ENDPOINT_ALLOWED = "endpoint_allowed"
    ALL_ENDPOINTS_TOGGLED = "all_endpoints_toggled"
    PAYMENT_EXECUTED = "payment_executed"
    PAYMENT_BLOCKED = "payment_blocked"
    PAYMENT_QUEUED = "payment_queued"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_FAILED = "payment_failed"
    FUNDED = "funded"
    WITHDRAWN = "withdrawn"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    account_id: Optional[str] = None
    actor: Optional[str] = None
    amount: Optional[int] = None
    to: Optional[str] = None
    endpoint_id: Optional[str] = None
    payment_id: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._lock_path = self.path.parent / f".{self.path.name}.lock"
        self._thread_lock = threading.Lock()
        # (inode, size, last hash) as of our last read or write
        self._head: tuple[int, int, str] = (0, 0, "")
        self._hmac_key = self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("X402GUARD_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _chain_head(self) -> str:
        stat = os.stat(self.path)
        inode, offset, last = self._head
        if stat.st_ino != inode or stat.st_size < offset:
            offset, last = 0, ""
        if stat.st_size > offset:
            with open(self.path, "rb") as f:
                f.seek(offset)
                for line in f:
                    if not line.strip():
                        continue
                    last = _parse_line(line).get("event_hash", "")
        self._head = (stat.st_ino, stat.st_size, last)
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        account_id: Optional[str] = None,
        actor: Optional[str] = None,
        amount: Optional[int] = None,
        to: Optional[str] = None,
        endpoint_id: Optional[str] = None,
        payment_id: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "account_id": account_id,
            "actor": actor,
            "amount": amount,
            "to": to,
            "endpoint_id": endpoint_id,
            "payment_id": payment_id,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        # Only bytes appended since our last read or write are scanned.
        with self._thread_lock, exclusive_lock(self._lock_path):
            prev_hash = self._chain_head()
            current_hash = self._event_hash(payload, prev_hash)
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
                stat = os.fstat(f.fileno())
            self._head = (stat.st_ino, stat.st_size, current_hash)
        ensure_private_file(self.path)
        return event

    def record(self, event_type: EventType, **fields: Any) -> Optional[AuditEvent]:
        """Like ``log``, for changes that are already committed.

        A write failure is logged at ERROR and swallowed so callers still
        report the committed outcome.
        """
        try:
            return self.log(event_type, **fields)
        except (OSError, AuditChainError):
            logger.exception(
                "Failed to write %s audit event for %s", event_type.value, fields.get("account_id")
            )
            return None

    def read_events(
        self,
        account_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = _parse_line(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise AuditChainError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise AuditChainError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if account_id and raw.get("account_id") != account_id:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        return events[-limit:]

    def summary(self, account_id: Optional[str] = None) -> dict:
        events = self.read_events(account_id=account_id, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": len(failures),
            "last_event": events[-1].to_json() if events else None,
        }
