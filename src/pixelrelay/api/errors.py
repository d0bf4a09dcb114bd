"""Mapping of service errors onto HTTP errors."""

from fastapi import HTTPException, status

from pixelrelay.services.exceptions import (
    CapacityExhausted,
    ConfigurationError,
    InsufficientBalance,
    ProviderPermanentError,
    ServiceError,
    TaskAccessDenied,
    TaskNotFound,
    TransientError,
    TrialAlreadyUsed,
    ValidationFailed,
)

RETRY_AFTER_SECONDS = "30"


def to_http_exception(error: ServiceError) -> HTTPException:
    """Translate a ServiceError into an HTTPException with a `{code, message}` detail."""
    detail = {"code": error.code, "message": str(error)}
    headers = None

    if isinstance(error, ValidationFailed):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, InsufficientBalance):
        status_code = status.HTTP_402_PAYMENT_REQUIRED
        detail["required"] = error.required  # type: ignore[assignment]
        detail["available"] = error.available  # type: ignore[assignment]
    elif isinstance(error, TaskNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, TaskAccessDenied):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, TrialAlreadyUsed):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, ConfigurationError):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    elif isinstance(error, ProviderPermanentError):
        status_code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, (CapacityExhausted, TransientError)):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        headers = {"Retry-After": RETRY_AFTER_SECONDS}
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(status_code=status_code, detail=detail, headers=headers)
