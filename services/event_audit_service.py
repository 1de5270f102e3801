"""
Event Audit Service — durable lifecycle record for every ingested event.

Dedup is enforced by the (org_id, event_key) unique constraint: inserts are
attempted blindly and an IntegrityError is translated into DuplicateEventError.
"""
import csv
import io
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gateway.config import EXPORT_CHUNK_ROWS
from gateway.database import SessionLocal
from gateway.errors import DuplicateEventError, InternalError, NotFoundError, ValidationError
from gateway.models import EventAudit
from services.checkpoint_service import CheckpointService
from services.payload_utils import (
    build_event_key, canonical_json, extract_safe_payload, get_bucket_timestamp,
    hash_payload, payload_size, to_naive_utc,
)

logger = logging.getLogger(__name__)

RECEIVED = "RECEIVED"
VALIDATED = "VALIDATED"
SKIPPED = "SKIPPED"
MATCHED = "MATCHED"
DELIVERING = "DELIVERING"
DELIVERED = "DELIVERED"
FAILED = "FAILED"

STATUSES = (RECEIVED, VALIDATED, SKIPPED, MATCHED, DELIVERING, DELIVERED, FAILED)
TERMINAL_STATUSES = {DELIVERED, SKIPPED, FAILED}

TRANSITIONS = {
    RECEIVED: {VALIDATED, SKIPPED},
    VALIDATED: {MATCHED, SKIPPED},
    MATCHED: {DELIVERING, SKIPPED},
    DELIVERING: {DELIVERED, FAILED},
    DELIVERED: set(),
    SKIPPED: set(),
    FAILED: set(),
}

MAX_PAGE_SIZE = 500

EXPORT_HEADERS = [
    "Event ID", "Received At", "Source", "Source ID", "Event Type", "Org ID",
    "Status", "Skip Category", "Skip Reason", "Integrations Matched",
    "Delivered Count", "Failed Count", "Processing Time (ms)", "Payload Hash",
    "Payload Size",
]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _percentile(sorted_values: List[int], pct: float) -> Optional[int]:
    if not sorted_values:
        return None
    index = max(0, math.ceil(pct / 100 * len(sorted_values)) - 1)
    return sorted_values[index]


def serialize_event(row: EventAudit, include_payload: bool = False) -> Dict[str, Any]:
    data = {
        "eventId": row.event_id,
        "orgId": row.org_id,
        "source": row.source,
        "sourceId": row.source_id,
        "eventType": row.event_type,
        "eventKey": row.event_key,
        "payloadHash": row.payload_hash,
        "payloadSize": row.payload_size,
        "payloadSummary": row.payload_summary,
        "status": row.status,
        "receivedAt": _iso(row.received_at),
        "receivedAtBucket": _iso(row.received_at_bucket),
        "timeline": list(row.timeline or []),
        "deliveryStatus": {
            "integrationsMatched": row.integrations_matched or 0,
            "deliveredCount": row.delivered_count or 0,
            "failedCount": row.failed_count or 0,
        },
        "skipCategory": row.skip_category,
        "skipReason": row.skip_reason,
        "processingTimeMs": row.processing_time_ms,
        "sourceMetadata": row.source_metadata,
    }
    if include_payload:
        data["payload"] = row.payload
    return data


def _apply_filters(query, org_id: int, filters: Optional[Dict[str, Any]]):
    query = query.filter(EventAudit.org_id == org_id)
    filters = filters or {}

    if filters.get("status"):
        query = query.filter(EventAudit.status == filters["status"])
    if filters.get("eventType"):
        query = query.filter(EventAudit.event_type == filters["eventType"])
    if filters.get("source"):
        query = query.filter(EventAudit.source == filters["source"])
    if filters.get("skipCategory"):
        query = query.filter(EventAudit.skip_category == filters["skipCategory"])
    if filters.get("search"):
        term = str(filters["search"]).strip().lower()
        if term:
            query = query.filter(EventAudit.search_text.contains(term, autoescape=True))

    # Bucket predicates narrow the scan before the exact timestamp check
    start = filters.get("startDate")
    end = filters.get("endDate")
    if start:
        start = to_naive_utc(start)
        query = query.filter(
            EventAudit.received_at_bucket >= get_bucket_timestamp(start),
            EventAudit.received_at >= start,
        )
    if end:
        end = to_naive_utc(end)
        query = query.filter(
            EventAudit.received_at_bucket <= get_bucket_timestamp(end),
            EventAudit.received_at <= end,
        )
    return query


class EventAuditService:
    @staticmethod
    def build_record(
        org_id: int,
        event_type: str,
        payload: Dict[str, Any],
        source: str,
        source_id: Optional[str] = None,
        event_id: Optional[str] = None,
        event_key: Optional[str] = None,
        received_at: Optional[datetime] = None,
        source_metadata: Optional[Dict[str, Any]] = None,
        status: str = RECEIVED,
        stage_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Fingerprint a payload and assemble the fields of a new audit record."""
        received_at = to_naive_utc(received_at) if received_at else datetime.utcnow()
        event_id = event_id or str(uuid.uuid4())
        summary = extract_safe_payload(payload)

        timeline = [{"ts": received_at.isoformat(), "stage": RECEIVED, "details": stage_details or {}}]
        if status != RECEIVED:
            timeline.append({"ts": received_at.isoformat(), "stage": status, "details": {}})

        return {
            "event_id": event_id,
            "org_id": org_id,
            "source": source,
            "source_id": source_id,
            "event_type": event_type,
            "event_key": event_key or build_event_key(event_type, payload, org_id),
            "payload_hash": hash_payload(payload),
            "payload_size": payload_size(payload),
            "payload_summary": summary,
            "payload": payload,
            "source_metadata": source_metadata,
            "status": status,
            "received_at": received_at,
            "received_at_bucket": get_bucket_timestamp(received_at),
            "timeline": timeline,
            "search_text": " ".join(
                str(part) for part in (event_id, source_id or "", event_type, canonical_json(summary))
            ).lower(),
        }

    @staticmethod
    def record_event_audit(record: Dict[str, Any], expected_interval_ms: Optional[int] = None) -> Dict[str, Any]:
        """
        Insert one audit record.

        Raises DuplicateEventError when (org_id, event_key) already exists; the
        existing record is never touched. On success the source checkpoint is
        advanced.
        """
        if record.get("status", RECEIVED) not in STATUSES:
            raise ValidationError(f"Unknown status '{record.get('status')}'")

        session = SessionLocal()
        try:
            row = EventAudit(**record)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                existing = session.query(EventAudit.event_id).filter(
                    EventAudit.org_id == record["org_id"],
                    EventAudit.event_key == record["event_key"],
                ).first()
                if existing is None:
                    # Constraint other than the dedup key (e.g. event_id collision)
                    raise InternalError(f"Failed to record event: {e.orig}", code="INSERT_ERROR")
                logger.info(f"[AUDIT] Duplicate event for org={record['org_id']} key={record['event_key']}")
                raise DuplicateEventError(record["org_id"], record["event_key"], existing[0])
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"[AUDIT] Insert failed for {record.get('event_id')}: {e}")
                raise InternalError(f"Failed to record event: {e}", code="INSERT_ERROR")

            result = serialize_event(row)
        finally:
            session.close()

        try:
            CheckpointService.update_checkpoint(
                record["org_id"], record["source"], record["event_id"],
                record["received_at"], expected_interval_ms,
            )
        except SQLAlchemyError as e:
            # Checkpoints are a health view; ingestion already succeeded
            logger.error(f"[AUDIT] Checkpoint update failed for source={record['source']}: {e}")

        return result

    @staticmethod
    def update_event_audit(
        org_id: int,
        event_id: str,
        status: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        delivery_status: Optional[Dict[str, int]] = None,
        skip_category: Optional[str] = None,
        skip_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a timeline entry and, optionally, move the record to a new status."""
        session = SessionLocal()
        try:
            row = session.query(EventAudit).filter(
                EventAudit.org_id == org_id,
                EventAudit.event_id == event_id,
            ).first()
            if not row:
                raise NotFoundError(f"Event {event_id} not found")

            if status and status != row.status:
                if status not in STATUSES:
                    raise ValidationError(f"Unknown status '{status}'")
                if status not in TRANSITIONS[row.status]:
                    raise ValidationError(
                        f"Invalid status transition {row.status} -> {status}",
                        details={"from": row.status, "to": status},
                    )

            now = datetime.utcnow()
            timeline = list(row.timeline or [])
            if timeline:
                last_ts = datetime.fromisoformat(timeline[-1]["ts"])
                if now < last_ts:
                    now = last_ts
            timeline.append({"ts": now.isoformat(), "stage": stage or status or row.status, "details": details or {}})
            row.timeline = timeline

            if status and status != row.status:
                row.status = status
                if status in TERMINAL_STATUSES:
                    row.processing_time_ms = int((now - row.received_at).total_seconds() * 1000)

            if delivery_status:
                if "integrationsMatched" in delivery_status:
                    row.integrations_matched = delivery_status["integrationsMatched"]
                if "deliveredCount" in delivery_status:
                    row.delivered_count = delivery_status["deliveredCount"]
                if "failedCount" in delivery_status:
                    row.failed_count = delivery_status["failedCount"]
            if skip_category is not None:
                row.skip_category = skip_category
            if skip_reason is not None:
                row.skip_reason = skip_reason

            session.commit()
            return serialize_event(row)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def get_event_audit_by_id(org_id: int, event_id: str) -> Dict[str, Any]:
        session = SessionLocal()
        try:
            row = session.query(EventAudit).filter(
                EventAudit.org_id == org_id,
                EventAudit.event_id == event_id,
            ).first()
            if not row:
                raise NotFoundError(f"Event {event_id} not found")
            return serialize_event(row, include_payload=True)
        finally:
            session.close()

    @staticmethod
    def list_event_audit(org_id: int, filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 50):
        """Filtered, newest-first page of audit records."""
        page = max(1, int(page or 1))
        limit = min(MAX_PAGE_SIZE, max(1, int(limit or 50)))

        session = SessionLocal()
        try:
            query = _apply_filters(session.query(EventAudit), org_id, filters)
            total = query.count()
            rows = query.order_by(
                EventAudit.received_at.desc(), EventAudit.id.desc()
            ).offset((page - 1) * limit).limit(limit).all()

            return {
                "events": [serialize_event(r) for r in rows],
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
                "page": page,
            }
        finally:
            session.close()

    @staticmethod
    def iter_event_audit(
        org_id: int,
        filters: Optional[Dict[str, Any]] = None,
        page_size: int = EXPORT_CHUNK_ROWS,
        start_page: int = 1,
    ) -> Iterator[List[EventAudit]]:
        """
        Lazily yield pages of matching rows, oldest first.

        A fresh session is opened per page and closed before the page is
        handed out, so an abandoned iteration holds no connection. Resume by
        passing the next start_page.
        """
        page = start_page
        while True:
            session = SessionLocal()
            try:
                query = _apply_filters(session.query(EventAudit), org_id, filters)
                rows = query.order_by(
                    EventAudit.received_at.asc(), EventAudit.id.asc()
                ).offset((page - 1) * page_size).limit(page_size).all()
            finally:
                session.close()

            if not rows:
                return
            yield rows
            if len(rows) < page_size:
                return
            page += 1

    @staticmethod
    def iter_export_csv(
        org_id: int,
        filters: Optional[Dict[str, Any]] = None,
        chunk_rows: int = EXPORT_CHUNK_ROWS,
    ) -> Iterator[str]:
        """CSV text chunks: the header first, then one chunk per page of rows."""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_HEADERS)
        yield buffer.getvalue()

        for rows in EventAuditService.iter_event_audit(org_id, filters, chunk_rows):
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            for r in rows:
                writer.writerow([
                    r.event_id, _iso(r.received_at), r.source, r.source_id or "",
                    r.event_type, r.org_id, r.status, r.skip_category or "",
                    r.skip_reason or "", r.integrations_matched or 0,
                    r.delivered_count or 0, r.failed_count or 0,
                    r.processing_time_ms if r.processing_time_ms is not None else "",
                    r.payload_hash, r.payload_size or 0,
                ])
            yield buffer.getvalue()

    @staticmethod
    def get_event_audit_stats(org_id: int, hours_back: float = 24, now: Optional[datetime] = None):
        """Aggregate counts, breakdowns and processing-time percentiles for a window."""
        now = to_naive_utc(now) if now else datetime.utcnow()
        since = now - timedelta(hours=hours_back)

        session = SessionLocal()
        try:
            base = session.query(EventAudit).filter(
                EventAudit.org_id == org_id,
                EventAudit.received_at_bucket >= get_bucket_timestamp(since),
                EventAudit.received_at >= since,
                EventAudit.received_at <= now,
            )

            def grouped(column):
                rows = base.with_entities(column, func.count(EventAudit.id)).group_by(column).all()
                return {key: count for key, count in rows if key is not None}

            by_status = grouped(EventAudit.status)
            total = sum(by_status.values())

            times = sorted(
                t for (t,) in base.with_entities(EventAudit.processing_time_ms).filter(
                    EventAudit.processing_time_ms.isnot(None)
                ).all()
            )

            delivered = by_status.get(DELIVERED, 0)
            failed = by_status.get(FAILED, 0)
            attempted = delivered + failed

            return {
                "hoursBack": hours_back,
                "total": total,
                "byStatus": {status: by_status.get(status, 0) for status in STATUSES},
                "skipCategories": grouped(EventAudit.skip_category),
                "bySource": grouped(EventAudit.source),
                "byEventType": grouped(EventAudit.event_type),
                "processingTime": {
                    "avg": round(sum(times) / len(times), 2) if times else None,
                    "p50": _percentile(times, 50),
                    "p95": _percentile(times, 95),
                    "p99": _percentile(times, 99),
                },
                "successRate": round(delivered / attempted * 100, 2) if attempted else None,
            }
        finally:
            session.close()

    @staticmethod
    def purge_expired_events(retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete audit records older than the retention window. Returns the count removed."""
        if retention_days <= 0:
            raise ValidationError("retention_days must be positive")
        now = to_naive_utc(now) if now else datetime.utcnow()
        cutoff = now - timedelta(days=retention_days)

        session = SessionLocal()
        try:
            deleted = session.query(EventAudit).filter(
                EventAudit.received_at < cutoff
            ).delete(synchronize_session=False)
            session.commit()
            logger.info(f"[AUDIT] Purged {deleted} event(s) received before {cutoff.isoformat()}")
            return deleted
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()
