"""
Shared error handling for the optical offers platform.

Hard failures abort a request and map to an HTTP status through
``status_code``. Eligibility misses (a rule or coupon that does not apply)
are not exceptions; they are reported inside the calculation result.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    model_config = ConfigDict(populate_by_name=True)

    trace_id: Optional[str] = Field(default=None, alias="traceId")
    code: str
    message: str
    details: Dict[str, Any] = {}


class OffersPlatformException(Exception):
    """Base exception for offers platform services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(OffersPlatformException):
    """Malformed or missing required input; fails the whole call."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(OffersPlatformException):
    """Referenced record does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConfigurationConflict(OffersPlatformException):
    """Admin write rejected because it conflicts with existing configuration."""

    status_code = 409

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class ConcurrencyConflict(OffersPlatformException):
    """A contended counter could not be updated."""

    status_code = 409

    def __init__(self, message: str = "Concurrent update conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("COUPON_USAGE_EXHAUSTED", message, details)


class ServiceError(OffersPlatformException):
    """Service-related errors."""

    status_code = 503

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)
