"""
Stage error taxonomy.

Every failure a stage handler can surface is one of these; provider-specific
exceptions are normalized into them in tools/ before they propagate.
The HTTP layer renders them as {"success": false, "error": {type, message}}.
"""
from datetime import datetime


class StageError(Exception):
    status_code = 500
    error_type = "InternalError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "type"     : self.error_type,
            "message"  : self.message,
            "timestamp": datetime.utcnow().isoformat(),
        }


class InvalidRequestError(StageError):
    """Missing or malformed request fields. Never retried."""
    status_code = 400
    error_type = "ValidationError"


class ResourceUnreachableError(StageError):
    """Image URL not fetchable (404) or download timed out (408)."""
    error_type = "ResourceUnreachable"

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout
        self.status_code = 408 if timeout else 404


class BackendError(StageError):
    """OCR / translation / extraction provider failure or malformed provider response."""
    status_code = 502
    error_type = "BackendError"


class EmptyRecognitionError(BackendError):
    status_code = 422
    error_type = "NoTextDetected"


class PrerequisiteError(StageError):
    """Stage invoked before the stage it depends on has completed."""
    status_code = 409
    error_type = "PrerequisiteMissing"


class NotFoundError(StageError):
    status_code = 404
    error_type = "NotFound"


class StaleResultError(StageError):
    """The page was retried or reset while this result was in flight."""
    status_code = 409
    error_type = "StaleResult"


class ConfigurationError(StageError):
    """Missing credentials. Raised before any network or database work."""
    status_code = 500
    error_type = "ConfigurationError"


class QueueStateError(ValueError):
    """Operator action not valid for the current batch/page state."""
