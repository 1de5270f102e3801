"""
Webhook push entry point.
"""
import json
import logging
import uuid
from typing import Any, Dict, Optional

from gateway.errors import DuplicateEventError, ValidationError
from services.event_audit_service import VALIDATED, EventAuditService
from services.notification_queue_service import NotificationQueueService

logger = logging.getLogger(__name__)

PUSH_SOURCE = "http_push"
PUSH_TOPIC = "event-push"


class IngestionService:
    @staticmethod
    def push_event(
        org_id: int,
        event_type: Any,
        payload: Any,
        source_id: Optional[str] = None,
        org_unit_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Record a pushed event and queue it for delivery.

        A repeated push of the same event is not an error: the response points
        at the event that was recorded first.
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("eventType is required and must be a non-empty string")
        if not isinstance(payload, dict):
            raise ValidationError("payload is required and must be an object")
        event_type = event_type.strip()

        event_id = f"push-{org_id}-{event_type}-{uuid.uuid4()}"
        record = EventAuditService.build_record(
            org_id=org_id,
            event_type=event_type,
            payload=payload,
            source=PUSH_SOURCE,
            source_id=source_id,
            event_id=event_id,
            source_metadata={"receivedVia": PUSH_SOURCE},
        )
        try:
            EventAuditService.record_event_audit(record)
        except DuplicateEventError as e:
            return {"eventId": e.existing_event_id, "status": "duplicate"}

        EventAuditService.update_event_audit(org_id, event_id, status=VALIDATED)
        NotificationQueueService.enqueue_notification({
            "topic": PUSH_TOPIC,
            "transaction_type": event_type,
            "message": json.dumps(payload, default=str),
            "org_id": org_id,
            "org_unit_id": org_unit_id,
            "event_id": event_id,
        })
        logger.info(f"[AUDIT] Accepted push {event_id}")
        return {"eventId": event_id, "status": "accepted"}
