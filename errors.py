# errors.py
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base for every error the order core reports to a caller."""
    status_code = 500
    code = "error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class ValidationError(FulfillmentError):
    status_code = 400
    code = "validation_error"


class PermissionDenied(FulfillmentError):
    status_code = 403
    code = "permission_denied"


class NotFound(FulfillmentError):
    status_code = 404
    code = "not_found"


class StageRejection(FulfillmentError):
    """Raised by the stage graph. Terminal: never retried."""
    status_code = 400


class InvalidStage(StageRejection):
    code = "invalid_stage"

    def __init__(self, message: str, current_stage: Optional[str] = None):
        super().__init__(message, current_stage=current_stage)
        self.current_stage = current_stage


class MissingParameter(StageRejection):
    code = "missing_parameter"


class ConflictingParameter(StageRejection):
    code = "conflicting_parameter"


class ReferenceNotFound(StageRejection):
    status_code = 404
    code = "reference_not_found"


class Conflict(FulfillmentError):
    status_code = 409
    code = "conflict"


class IngestionFailure(FulfillmentError):
    # Detail stays in the failed-webhook record, the untrusted caller only sees this.
    status_code = 500
    code = "ingestion_failure"

    def __init__(self, message: str = "Failed to process order", failed_record_id: Optional[int] = None):
        super().__init__(message)
        self.failed_record_id = failed_record_id


class NotificationFailure(Exception):
    """Raised inside the notification workers only; logged, never propagated."""
