"""
Payload fingerprinting helpers: content hashing, dedup keys, redacted
summaries and time bucketing. Pure functions, no database access.
"""
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from gateway.config import BUCKET_MINUTES, SENSITIVE_FIELDS

REDACTED = "[REDACTED]"

# Ordered: the first one present in the payload wins
IDENTITY_FIELDS = ("id", "patientRid", "appointmentId", "billId", "mrn")
IDENTITY_FALLBACK_CHARS = 100

SUMMARY_MAX_STRING = 500
SUMMARY_MAX_DEPTH = 6


def canonical_json(payload: Any) -> str:
    """Serialize so that structurally equal payloads produce identical text."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_payload(payload: Any) -> str:
    """SHA-256 of the canonical serialization (independent of key order)."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def payload_size(payload: Any) -> int:
    return len(canonical_json(payload).encode("utf-8"))


def _is_sensitive(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_FIELDS:
        return True
    return any(normalized.endswith(f"_{name}") for name in SENSITIVE_FIELDS)


def extract_safe_payload(payload: Any, _depth: int = 0) -> Any:
    """
    Build a display-safe copy of a payload.
    Sensitive keys keep their place but lose their value; long strings are
    clipped and very deep structures are collapsed.
    """
    if _depth >= SUMMARY_MAX_DEPTH:
        return "..."
    if isinstance(payload, dict):
        safe = {}
        for key in sorted(payload, key=str):
            value = payload[key]
            if isinstance(key, str) and _is_sensitive(key):
                safe[key] = REDACTED
            else:
                safe[str(key)] = extract_safe_payload(value, _depth + 1)
        return safe
    if isinstance(payload, (list, tuple)):
        return [extract_safe_payload(item, _depth + 1) for item in payload]
    if isinstance(payload, str) and len(payload) > SUMMARY_MAX_STRING:
        return payload[:SUMMARY_MAX_STRING] + "..."
    return payload


def to_naive_utc(ts: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def get_bucket_timestamp(ts: datetime, minutes: int = BUCKET_MINUTES) -> datetime:
    """Floor a timestamp to the start of its fixed-width bucket."""
    bucket = timedelta(minutes=minutes)
    epoch = datetime(1970, 1, 1, tzinfo=ts.tzinfo)
    return epoch + ((ts - epoch) // bucket) * bucket


def payload_identity(payload: Dict[str, Any]) -> str:
    """Best-effort identity of a payload for dedup purposes."""
    for field in IDENTITY_FIELDS:
        value = payload.get(field)
        if value is not None and value != "":
            return str(value)
    return canonical_json(payload)[:IDENTITY_FALLBACK_CHARS]


def build_event_key(event_type: str, payload: Dict[str, Any], org_id: int) -> str:
    return f"{event_type}-{payload_identity(payload)}-{org_id}"


def format_lag(ms: Optional[float]) -> str:
    if ms is None:
        return "unknown"
    ms = int(ms)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms // 1000}s"
    if ms < 3600000:
        return f"{ms // 60000}m"
    return f"{ms // 3600000}h"
