"""
Error taxonomy shared by the services and the HTTP layer.
Every error carries an HTTP status and a stable machine-readable code.
"""
from typing import Any, Optional


class GatewayError(Exception):
    status_code = 500
    code = "APP_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(GatewayError):
    """Malformed or missing input. User-correctable."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(GatewayError):
    status_code = 404
    code = "NOT_FOUND"


class DuplicateEventError(GatewayError):
    """An event with the same dedup key already exists for the org."""
    status_code = 409
    code = "DUPLICATE_EVENT"

    def __init__(self, org_id: int, event_key: str, existing_event_id: Optional[str] = None):
        super().__init__(
            "Duplicate event",
            details={"orgId": org_id, "eventKey": event_key, "existingEventId": existing_event_id},
        )
        self.org_id = org_id
        self.event_key = event_key
        self.existing_event_id = existing_event_id


class ExecutionTimeoutError(GatewayError, TimeoutError):
    """A data source call exceeded its time bound."""
    status_code = 504
    code = "EXECUTION_TIMEOUT"


class DataSourceError(GatewayError):
    """The upstream data source could not be read."""
    status_code = 502
    code = "DATA_SOURCE_ERROR"


class InternalError(GatewayError):
    status_code = 500
    code = "INTERNAL_ERROR"


class ConflictError(GatewayError):
    status_code = 409
    code = "CONFLICT"
