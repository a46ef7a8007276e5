"""Error taxonomy shared by the query, rating and store layers."""

from enum import Enum
from typing import Optional
import uuid


class ErrorCode(str, Enum):
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    TRANSIENT_STORE_FAILURE = "TRANSIENT_STORE_FAILURE"


class RatingsError(Exception):
    """Base error; carries a code the HTTP layer maps to a status."""

    code = ErrorCode.INVALID_ARGUMENT
    retryable = False

    def __init__(self, message: str, hint: Optional[str] = None):
        self.error_id = str(uuid.uuid4())
        self.message = message
        self.hint = hint
        super().__init__(self.message)

    def model_dump(self):
        """Return dict representation for API responses"""
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "message": self.message,
            "hint": self.hint,
            "retryable": self.retryable,
        }

    @property
    def http_status(self) -> int:
        mapping = {
            ErrorCode.INVALID_ARGUMENT: 400,
            ErrorCode.NOT_FOUND: 404,
            ErrorCode.TRANSIENT_STORE_FAILURE: 503,
        }
        return mapping.get(self.code, 500)


class InvalidArgument(RatingsError):
    """Malformed caller input. Raised before the store is touched."""
    code = ErrorCode.INVALID_ARGUMENT


class NotFound(RatingsError):
    code = ErrorCode.NOT_FOUND


class TransientStoreFailure(RatingsError):
    """Network trouble or contention that outlasted the retry budget."""
    code = ErrorCode.TRANSIENT_STORE_FAILURE
    retryable = True
