"""Service error hierarchy for task orchestration.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (capacity, network, rate limits, timeouts)
- PermanentError: Non-retryable errors (validation, configuration, balance, auth)
"""


class ServiceError(Exception):
    """Base exception for all service errors.

    `code` is the stable machine-readable identifier stored in task error
    payloads and returned in API error bodies.
    """

    code = "internal_error"


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - No provider key with remaining quota
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    code = "transient_error"


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Invalid submission parameters
    - Authentication failures (401, 403)
    - Callback URL pointing at a local address
    """

    code = "permanent_error"


# Submission errors
class ValidationFailed(PermanentError):
    """Malformed submission parameters, rejected before any side effect."""

    code = "validation_error"


class ConfigurationError(PermanentError):
    """Deployment configuration makes the operation impossible."""

    code = "configuration_error"


class CapacityExhausted(TransientError):
    """No provider key with remaining daily quota."""

    code = "service_busy"


class InsufficientBalance(PermanentError):
    """Debit rejected because the balance does not cover the amount."""

    code = "insufficient_credits"

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


class TrialAlreadyUsed(PermanentError):
    """The browser fingerprint already consumed its free trial."""

    code = "trial_used"


# Provider-specific errors
class ProviderError(ServiceError):
    """Base exception for provider call errors."""

    code = "provider_error"


class ProviderTransientError(ProviderError, TransientError):
    """Rate limit, 5xx or connection failure talking to the provider."""

    code = "provider_unavailable"


class ProviderPermanentError(ProviderError, PermanentError):
    """Provider rejected the request (auth, bad request, unprocessable)."""

    code = "provider_rejected"


class ProviderTimeoutError(ProviderTransientError):
    """Provider call timed out; the provider may still have accepted the job."""

    code = "provider_timeout"


# Relay errors
class RelayError(TransientError):
    """Result download or object store upload failed."""

    code = "relay_failed"


# Infrastructure errors
class QueueError(TransientError):
    """Delay queue publish failed."""

    code = "queue_error"


class CoordinatorError(TransientError):
    """Coordination backend (Redis) unavailable."""

    code = "coordinator_error"


class StorageError(TransientError):
    """Object store write failed."""

    code = "storage_error"


# Task access errors
class TaskNotFound(PermanentError):
    code = "not_found"


class TaskAccessDenied(PermanentError):
    code = "forbidden"
