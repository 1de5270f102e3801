"""
Per-source ingestion markers and gap detection.

Checkpoints are written on every successful ingestion. Gaps are never stored:
they are derived on read from the audit trail of the requested look-back window.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from gateway.config import GAP_DEFAULT_THRESHOLD_MS, GAP_TOLERANCE
from gateway.database import SessionLocal
from gateway.models import EventAudit, SourceCheckpoint
from services.payload_utils import format_lag, get_bucket_timestamp, to_naive_utc

logger = logging.getLogger(__name__)


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


class CheckpointService:
    @staticmethod
    def gap_threshold_ms(expected_interval_ms: Optional[int]) -> int:
        if expected_interval_ms:
            return int(expected_interval_ms * GAP_TOLERANCE)
        return GAP_DEFAULT_THRESHOLD_MS

    @staticmethod
    def update_checkpoint(
        org_id: int,
        source: str,
        event_id: str,
        seen_at: datetime,
        expected_interval_ms: Optional[int] = None,
    ):
        """Upsert the checkpoint for (org, source). Never moves last_seen_at backwards."""
        session = SessionLocal()
        try:
            for attempt in range(2):
                checkpoint = session.query(SourceCheckpoint).filter(
                    SourceCheckpoint.org_id == org_id,
                    SourceCheckpoint.source == source,
                ).first()

                if checkpoint is None:
                    checkpoint = SourceCheckpoint(
                        org_id=org_id,
                        source=source,
                        last_seen_at=seen_at,
                        last_seen_event_id=event_id,
                        expected_interval_ms=expected_interval_ms,
                        events_seen=1,
                    )
                    session.add(checkpoint)
                else:
                    if seen_at >= checkpoint.last_seen_at:
                        checkpoint.last_seen_at = seen_at
                        checkpoint.last_seen_event_id = event_id
                    if expected_interval_ms:
                        checkpoint.expected_interval_ms = expected_interval_ms
                    checkpoint.events_seen = (checkpoint.events_seen or 0) + 1
                    checkpoint.updated_at = datetime.utcnow()

                try:
                    session.commit()
                    return
                except IntegrityError:
                    # A concurrent ingestion created the row first; retry as an update
                    session.rollback()
                    if attempt:
                        raise
        finally:
            session.close()

    @staticmethod
    def get_source_checkpoints(org_id: int, source: Optional[str] = None, now: Optional[datetime] = None):
        """List checkpoints for an org with a derived health view."""
        now = to_naive_utc(now) if now else datetime.utcnow()
        session = SessionLocal()
        try:
            query = session.query(SourceCheckpoint).filter(SourceCheckpoint.org_id == org_id)
            if source:
                query = query.filter(SourceCheckpoint.source == source)

            result = []
            for cp in query.order_by(SourceCheckpoint.source.asc()).all():
                lag_ms = _ms(now - cp.last_seen_at) if cp.last_seen_at else None
                healthy_within = 2 * CheckpointService.gap_threshold_ms(cp.expected_interval_ms)
                result.append({
                    "orgId": cp.org_id,
                    "source": cp.source,
                    "lastSeenAt": cp.last_seen_at.isoformat() if cp.last_seen_at else None,
                    "lastSeenEventId": cp.last_seen_event_id,
                    "expectedIntervalMs": cp.expected_interval_ms,
                    "health": {
                        "eventsSeen": cp.events_seen or 0,
                        "isHealthy": lag_ms is not None and lag_ms <= healthy_within,
                        "lag": format_lag(lag_ms),
                        "lagMs": lag_ms,
                    },
                })
            return result
        finally:
            session.close()

    @staticmethod
    def get_source_gaps(org_id: int, source: str, hours_back: float = 24, now: Optional[datetime] = None):
        """
        Walk the audit trail of (org, source) over the look-back window and
        report every interval between consecutive events that is wider than
        the gap threshold.
        """
        now = to_naive_utc(now) if now else datetime.utcnow()
        window_start = now - timedelta(hours=hours_back)

        session = SessionLocal()
        try:
            checkpoint = session.query(SourceCheckpoint).filter(
                SourceCheckpoint.org_id == org_id,
                SourceCheckpoint.source == source,
            ).first()
            expected = checkpoint.expected_interval_ms if checkpoint else None
            threshold_ms = CheckpointService.gap_threshold_ms(expected)

            rows = session.query(EventAudit.received_at, EventAudit.event_id).filter(
                EventAudit.org_id == org_id,
                EventAudit.source == source,
                EventAudit.received_at_bucket >= get_bucket_timestamp(window_start),
                EventAudit.received_at >= window_start,
                EventAudit.received_at <= now,
            ).order_by(EventAudit.received_at.asc(), EventAudit.id.asc()).yield_per(1000)

            gaps = []
            seen = 0
            previous = None
            for received_at, event_id in rows:
                seen += 1
                if previous is not None:
                    width_ms = _ms(received_at - previous[0])
                    if width_ms > threshold_ms:
                        gaps.append({
                            "start": previous[0].isoformat(),
                            "end": received_at.isoformat(),
                            "durationMs": width_ms,
                            "duration": format_lag(width_ms),
                            "fromEventId": previous[1],
                            "toEventId": event_id,
                        })
                previous = (received_at, event_id)

            if gaps:
                logger.warning(f"[CHECKPOINT] {len(gaps)} gap(s) detected for org={org_id} source={source} in last {hours_back}h")

            return {
                "source": source,
                "expectedIntervalMs": expected,
                "thresholdMs": threshold_ms,
                "windowStart": window_start.isoformat(),
                "windowEnd": now.isoformat(),
                "eventsInWindow": seen,
                "totalGaps": len(gaps),
                "gaps": gaps,
            }
        finally:
            session.close()
