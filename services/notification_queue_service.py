"""
Notification Queue Service — producer side of the outbound delivery queue.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from gateway.config import NOTIFICATION_MAX_RETRIES
from gateway.database import SessionLocal
from gateway.errors import NotFoundError, ValidationError
from gateway.models import NotificationQueueItem

logger = logging.getLogger(__name__)

PENDING = "PENDING"
DELIVERED = "DELIVERED"
FAILED = "FAILED"

# Must be present and non-null
REQUIRED_FIELDS = ("topic", "transaction_type", "message", "org_id")
# Must be present; an explicit None is accepted
OPTIONAL_FIELDS = ("org_unit_id",)


def serialize_item(item: NotificationQueueItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "topic": item.topic,
        "transactionType": item.transaction_type,
        "message": item.message,
        "orgId": item.org_id,
        "orgUnitId": item.org_unit_id,
        "eventId": item.event_id,
        "status": item.status,
        "retryCount": item.retry_count,
        "errorMessage": item.error_message,
        "createdAt": item.created_at.isoformat() if item.created_at else None,
        "deliveredAt": item.delivered_at.isoformat() if item.delivered_at else None,
        "lastCheckedAt": item.last_checked_at.isoformat() if item.last_checked_at else None,
    }


class NotificationQueueService:
    @staticmethod
    def enqueue_notification(item: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a PENDING work item.

        A key that is absent is a caller bug and fails fast; an explicit None
        is only allowed for the nullable scoping fields.
        """
        missing = [f for f in REQUIRED_FIELDS + OPTIONAL_FIELDS if f not in item]
        if missing:
            raise ValidationError(
                f"Notification item missing field(s): {', '.join(missing)}",
                details={"missing": missing},
            )
        nulls = [f for f in REQUIRED_FIELDS if item[f] is None]
        if nulls:
            raise ValidationError(
                f"Notification item field(s) must not be null: {', '.join(nulls)}",
                details={"null": nulls},
            )

        session = SessionLocal()
        try:
            row = NotificationQueueItem(
                topic=item["topic"],
                transaction_type=item["transaction_type"],
                message=item["message"],
                org_id=item["org_id"],
                org_unit_id=item["org_unit_id"],
                event_id=item.get("event_id"),
                status=PENDING,
                retry_count=0,
                error_message=None,
                delivered_at=None,
                last_checked_at=None,
            )
            session.add(row)
            session.commit()
            logger.info(f"[QUEUE] Enqueued {row.topic}/{row.transaction_type} #{row.id} for org={row.org_id}")
            return serialize_item(row)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def mark_delivery_attempt(
        item_id: int,
        delivered: bool,
        error: Optional[str] = None,
        max_retries: int = NOTIFICATION_MAX_RETRIES,
    ) -> Dict[str, Any]:
        """Record the outcome of one delivery attempt."""
        session = SessionLocal()
        try:
            row = session.get(NotificationQueueItem, item_id)
            if not row:
                raise NotFoundError(f"Notification {item_id} not found")

            now = datetime.utcnow()
            row.retry_count = (row.retry_count or 0) + 1
            row.last_checked_at = now

            if delivered:
                row.status = DELIVERED
                row.delivered_at = now
                row.error_message = None
            else:
                row.error_message = error
                row.status = FAILED if row.retry_count >= max_retries else PENDING
                logger.warning(
                    f"[QUEUE] Delivery attempt {row.retry_count}/{max_retries} failed for #{row.id}: {error}"
                )

            session.commit()
            return serialize_item(row)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def list_notifications(org_id: int, status: Optional[str] = None, limit: int = 50):
        session = SessionLocal()
        try:
            query = session.query(NotificationQueueItem).filter(NotificationQueueItem.org_id == org_id)
            if status:
                query = query.filter(NotificationQueueItem.status == status)
            rows = query.order_by(NotificationQueueItem.id.desc()).limit(limit).all()
            return [serialize_item(r) for r in rows]
        finally:
            session.close()
