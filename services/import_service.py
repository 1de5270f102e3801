"""
Bulk Import Service — validates, sanitizes and writes batches of events
through the audit store. Items are processed sequentially, in input order.
"""
import csv
import io
import json
import logging
import re
import time
import uuid
import zipfile
from typing import Any, Dict, List, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from gateway.config import IMPORT_MAX_EVENTS, MAX_PAYLOAD_SIZE
from gateway.errors import DuplicateEventError, GatewayError, ValidationError
from services.event_audit_service import RECEIVED, VALIDATED, EventAuditService
from services.payload_utils import build_event_key, payload_size

logger = logging.getLogger(__name__)

BULK_SOURCE = "BULK_IMPORT"
MAX_STRING_LENGTH = 10000
FORBIDDEN_KEYS = {"__proto__", "constructor", "prototype"}

_SANITIZE_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<iframe[^>]*>.*?</iframe>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
]

TEMPLATE_EVENTS = [
    {
        "eventType": "APPOINTMENT_SCHEDULED",
        "orgId": 12345,
        "payload": {"patientRid": 100, "doctorId": 50, "appointmentDate": "2024-03-20", "clinicId": 5},
        "source": BULK_SOURCE,
        "sourceId": "optional-tracking-id",
    },
    {
        "eventType": "LAB_RESULT",
        "orgId": 12345,
        "payload": {"patientRid": 100, "testId": 200, "status": "COMPLETED", "resultDate": "2024-03-21"},
        "source": BULK_SOURCE,
        "sourceId": "optional-tracking-id-2",
    },
]


# ============================================================================
# Sanitization & validation
# ============================================================================

def sanitize_string(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    for pattern in _SANITIZE_PATTERNS:
        value = pattern.sub("", value)
    return value.strip()[:MAX_STRING_LENGTH]


def sanitize_object(value: Any) -> Any:
    """Recursively sanitize strings and drop prototype-pollution keys."""
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, list):
        return [sanitize_object(v) for v in value]
    if isinstance(value, dict):
        clean = {}
        for key, item in value.items():
            clean_key = sanitize_string(str(key))
            if clean_key in FORBIDDEN_KEYS:
                continue
            clean[clean_key] = sanitize_object(item)
        return clean
    return value


def validate_event_count(events: Any, max_count: int = IMPORT_MAX_EVENTS):
    if not isinstance(events, list):
        raise ValidationError("events must be an array", code="INVALID_COUNT")
    if not events:
        raise ValidationError("events array cannot be empty", code="INVALID_COUNT")
    if len(events) > max_count:
        raise ValidationError(
            f"Cannot import more than {max_count} events. Found {len(events)}",
            code="INVALID_COUNT",
            details={"max": max_count, "found": len(events)},
        )


def validate_event(event: Any, org_id: int) -> Tuple[List[str], Dict[str, Any]]:
    """Return (errors, sanitized_event). An empty error list means the item is importable."""
    if not isinstance(event, dict):
        return ["event must be an object"], {}

    errors = []
    event_type = event.get("eventType")
    if not isinstance(event_type, str) or not event_type.strip():
        errors.append("eventType is required and must be a string")

    if "tenantId" in event:
        errors.append("tenantId is not supported; use orgId")

    item_org = event.get("orgId", org_id)
    if isinstance(item_org, bool) or not isinstance(item_org, int):
        errors.append("orgId must be an integer")
    elif item_org != org_id:
        errors.append(f"orgId {item_org} does not match the requesting organization")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        errors.append("payload is required and must be an object")
    else:
        try:
            size = payload_size(payload)
            if size > MAX_PAYLOAD_SIZE:
                errors.append(f"Payload size {size} bytes exceeds maximum {MAX_PAYLOAD_SIZE} bytes")
        except (TypeError, ValueError):
            errors.append("Payload contains non-serializable data")

    clean = {
        "eventType": sanitize_string(event_type) if isinstance(event_type, str) else event_type,
        "orgId": item_org,
        "payload": sanitize_object(payload) if isinstance(payload, dict) else payload,
        "source": sanitize_string(event.get("source")) or BULK_SOURCE,
        "sourceId": sanitize_string(event.get("sourceId")),
    }
    return errors, clean


# ============================================================================
# File parsing
# ============================================================================

def _parse_json(content: bytes) -> Tuple[List[Any], List[Dict[str, Any]]]:
    try:
        data = json.loads(content.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ValidationError(f"Invalid JSON: {e}", code="INVALID_FILE")
    if isinstance(data, dict) and isinstance(data.get("events"), list):
        return data["events"], []
    if isinstance(data, list):
        return data, []
    raise ValidationError('JSON must contain an "events" array or be an array', code="INVALID_FILE")


def _first(row: Dict[str, Any], *names: str):
    for name in names:
        value = row.get(name)
        if value not in (None, ""):
            return value
    return None


def _rows_to_events(rows) -> Tuple[List[Any], List[Dict[str, Any]]]:
    events, errors = [], []
    # Row numbers are spreadsheet-style: the header is row 1
    for i, row in enumerate(rows):
        row_num = i + 2
        if all(value in (None, "") for value in row.values()):
            continue
        event_type = _first(row, "eventType", "event_type", "EventType")
        org_raw = _first(row, "orgId", "org_id", "OrgId")
        payload_raw = _first(row, "payload", "Payload")

        if not event_type or org_raw is None or not payload_raw:
            errors.append({"row": row_num, "error": "Missing required fields: eventType, orgId, payload"})
            continue
        try:
            org_id = _parse_org_id(org_raw)
        except ValueError:
            errors.append({"row": row_num, "error": "orgId must be a valid number"})
            continue
        try:
            payload = json.loads(payload_raw) if isinstance(payload_raw, str) else payload_raw
        except ValueError as e:
            errors.append({"row": row_num, "error": f"Invalid payload JSON: {e}"})
            continue

        source_id = _first(row, "sourceId", "source_id", "SourceId")
        events.append({
            "eventType": str(event_type),
            "orgId": org_id,
            "payload": payload,
            "source": _first(row, "source", "Source") or BULK_SOURCE,
            "sourceId": str(source_id) if source_id is not None else None,
        })
    return events, errors


def _parse_org_id(value: Any) -> int:
    # Spreadsheet cells hold numbers as floats
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(value)
        return int(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return int(str(value).strip())


def _parse_csv(content: bytes) -> Tuple[List[Any], List[Dict[str, Any]]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValidationError(f"Failed to parse CSV: {e}", code="INVALID_FILE")
    return _rows_to_events(csv.DictReader(io.StringIO(text)))


def _parse_xlsx(content: bytes) -> Tuple[List[Any], List[Dict[str, Any]]]:
    """Read the first worksheet; row 1 holds the column names."""
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        raise ValidationError(f"Failed to parse Excel file: {e}", code="INVALID_FILE")

    try:
        rows = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return [], []
        names = [str(cell).strip() if cell is not None else "" for cell in header]
        records = [dict(zip(names, values)) for values in rows]
    finally:
        workbook.close()
    return _rows_to_events(records)


def parse_import_file(filename: str, content: bytes) -> Tuple[List[Any], List[Dict[str, Any]]]:
    """Parse an uploaded file into (events, parse_errors)."""
    ext = (filename or "").rsplit(".", 1)[-1].lower()
    if ext == "json":
        return _parse_json(content)
    if ext == "csv":
        return _parse_csv(content)
    if ext == "xlsx":
        return _parse_xlsx(content)
    if ext == "xls":
        raise ValidationError("Legacy .xls workbooks are not supported. Save the file as .xlsx",
                              code="UNSUPPORTED_FORMAT")
    raise ValidationError(f"Unsupported file format '.{ext}'. Use .json, .csv or .xlsx", code="UNSUPPORTED_FORMAT")


TEMPLATE_COLUMNS = ["eventType", "orgId", "payload", "source", "sourceId"]
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def generate_import_template(fmt: str = "csv") -> Tuple[Any, str]:
    """Return (body, media_type) of a sample import file. xlsx bodies are bytes."""
    if fmt == "json":
        return json.dumps({"events": TEMPLATE_EVENTS}, indent=2), "application/json"

    rows = [{**item, "payload": json.dumps(item["payload"])} for item in TEMPLATE_EVENTS]
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=TEMPLATE_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue(), "text/csv"
    if fmt == "xlsx":
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.title = "Events"
        sheet.append(TEMPLATE_COLUMNS)
        for row in rows:
            sheet.append([row[c] for c in TEMPLATE_COLUMNS])
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue(), XLSX_MEDIA_TYPE
    raise ValidationError(f"Unsupported template format '{fmt}'")


# ============================================================================
# Import
# ============================================================================

class ImportService:
    @staticmethod
    def process_import(
        events: List[Any],
        org_id: int,
        dry_run: bool = False,
        continue_on_error: bool = True,
    ) -> Dict[str, Any]:
        """
        Classify every item as successful, failed or duplicate.

        The batch cap is checked before anything is written. When
        continue_on_error is False, items after the first failure are reported
        as failed with code NOT_PROCESSED.
        """
        validate_event_count(events)

        results = {"successful": [], "failed": [], "duplicates": []}
        summary = {"total": len(events), "successful": 0, "failed": 0, "duplicates": 0}
        started = int(time.time() * 1000)
        stopped_at = None

        for i, raw in enumerate(events):
            event_type = raw.get("eventType") if isinstance(raw, dict) else None

            if stopped_at is not None:
                results["failed"].append({
                    "index": i,
                    "eventType": event_type,
                    "error": f"Not processed: import stopped at index {stopped_at}",
                    "code": "NOT_PROCESSED",
                })
                summary["failed"] += 1
                continue

            errors, event = validate_event(raw, org_id)
            if errors:
                results["failed"].append({
                    "index": i, "eventType": event_type, "error": "; ".join(errors), "code": "VALIDATION_ERROR",
                })
                summary["failed"] += 1
                if not continue_on_error:
                    stopped_at = i
                continue

            if dry_run:
                results["successful"].append({"index": i, "eventType": event["eventType"], "status": VALIDATED})
                summary["successful"] += 1
                continue

            event_id = f"BULK_IMPORT-{uuid.uuid4()}"
            record = EventAuditService.build_record(
                org_id=org_id,
                event_type=event["eventType"],
                payload=event["payload"],
                source=event["source"],
                source_id=event["sourceId"] or f"bulk-{started}-{i}",
                event_id=event_id,
                event_key=build_event_key(event["eventType"], event["payload"], org_id),
                source_metadata={"importedVia": BULK_SOURCE, "batchIndex": i},
                stage_details={"message": "Event imported via bulk import"},
            )

            try:
                EventAuditService.record_event_audit(record)
            except DuplicateEventError as e:
                results["duplicates"].append({
                    "index": i,
                    "eventType": event["eventType"],
                    "error": "Duplicate event",
                    "code": e.code,
                    "existingEventId": e.existing_event_id,
                })
                summary["duplicates"] += 1
                continue
            except GatewayError as e:
                logger.error(f"[IMPORT] Item {i} failed for org={org_id}: {e.message}")
                results["failed"].append({"index": i, "eventType": event["eventType"], "error": e.message, "code": e.code})
                summary["failed"] += 1
                if not continue_on_error:
                    stopped_at = i
                continue

            results["successful"].append({"index": i, "eventId": event_id, "eventType": event["eventType"], "status": RECEIVED})
            summary["successful"] += 1

        logger.info(f"[IMPORT] org={org_id} dryRun={dry_run} summary={summary}")
        return {"success": summary["failed"] == 0, "summary": summary, "results": results}
