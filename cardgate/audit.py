"""
Audit sink for Cardgate.

Every verification attempt, granted or denied, produces exactly one
AuditEvent. Events are append-only. The default sink stores them in
SQLite as a hash chain so that edits or deletions are detectable; the
S3 sink writes each event as an Object Lock protected object.
"""

import json
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional

from . import config
from . import db
from .locks import retry_transient
from .util import canonicalize, chain_entry_hash, now_millis, sha256_hex


class EventType:
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_DENIED = "ACCESS_DENIED"
    QR_SCAN = "QR_SCAN"
    CARD_CREATED = "CARD_CREATED"
    CARD_EXTENDED = "CARD_EXTENDED"
    CARD_REVOKED = "CARD_REVOKED"


class EventCategory:
    AUTHENTICATION = "AUTHENTICATION"
    ADMINISTRATION = "ADMINISTRATION"
    SYSTEM = "SYSTEM"


# Fields covered by payload_hash, in the order they are stored
AUDIT_FIELDS = (
    "event_type", "event_category", "card_id", "reader_id", "owner", "user_role",
    "event_timestamp", "success", "message", "error_code", "counter_value",
    "response_time_ms", "ip_address", "user_agent", "request_id",
)


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit record. event_timestamp is epoch milliseconds."""
    event_type: str
    event_category: str
    success: bool
    card_id: Optional[str] = None
    reader_id: Optional[str] = None
    owner: Optional[str] = None
    user_role: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    counter_value: Optional[int] = None
    response_time_ms: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    event_timestamp: int = 0

    def __post_init__(self):
        if not self.event_timestamp:
            object.__setattr__(self, "event_timestamp", now_millis())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def payload_hash(fields: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the hashed audit fields."""
    body = {k: fields.get(k) for k in AUDIT_FIELDS}
    body["success"] = bool(body["success"])
    return sha256_hex(canonicalize(body))


class AuditSink:
    def record(self, event: AuditEvent) -> None:
        raise NotImplementedError


class SqliteHashChainSink(AuditSink):
    def record(self, event: AuditEvent) -> None:
        fields = event.to_dict()
        ph = payload_hash(fields)
        retry_transient(
            lambda: db.append_audit_event(fields, ph),
            attempts=config.STORE_RETRY_ATTEMPTS,
            base_delay=config.STORE_RETRY_BASE_DELAY,
            operation="append_audit_event"
        )


class S3ObjectLockSink(AuditSink):
    """Writes each audit event JSON as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF"):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = None

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 Object Lock audit sink. Install with: pip install 'cardgate[aws]'") from e
            self._client = boto3.client("s3")
        return self._client

    def record(self, event: AuditEvent) -> None:
        from datetime import datetime, timedelta, timezone

        fields = event.to_dict()
        ph = payload_hash(fields)
        key = f"{self.prefix}{event.event_timestamp}-{event.event_type}-{ph[:16]}.json"
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=json.dumps({**fields, "payload_hash": ph}, sort_keys=True).encode("utf-8"),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )


def get_audit_sink() -> AuditSink:
    backend = config.AUDIT_SINK
    if backend == "s3_object_lock":
        bucket = os.environ["S3_BUCKET"]
        prefix = os.getenv("S3_PREFIX", "cardgate/audit/")
        retention_days = int(os.getenv("S3_RETENTION_DAYS", "365"))
        legal_hold = os.getenv("S3_LEGAL_HOLD", "OFF")
        return S3ObjectLockSink(bucket=bucket, prefix=prefix, retention_days=retention_days, legal_hold=legal_hold)
    return SqliteHashChainSink()


def verify_chain(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Verify an exported audit log in append order.

    Recomputes every payload hash and chain link. Returns
    {"valid": bool, "checked": n} plus "broken_at" (seq) and "reason"
    on the first failure.
    """
    prev: Optional[str] = None
    checked = 0
    for row in rows:
        seq = row.get("seq")
        if payload_hash(row) != row.get("payload_hash"):
            return {"valid": False, "checked": checked, "broken_at": seq, "reason": "payload_hash mismatch"}
        if row.get("prev_entry_hash") != prev:
            return {"valid": False, "checked": checked, "broken_at": seq, "reason": "prev_entry_hash mismatch"}
        if chain_entry_hash(prev, row["payload_hash"]) != row.get("entry_hash"):
            return {"valid": False, "checked": checked, "broken_at": seq, "reason": "entry_hash mismatch"}
        prev = row["entry_hash"]
        checked += 1
    return {"valid": True, "checked": checked}


def recent_events(**filters) -> List[Dict[str, Any]]:
    rows = retry_transient(lambda: db.query_audit_events(**filters), operation="query_audit_events")
    for r in rows:
        r["success"] = bool(r["success"])
    return rows
