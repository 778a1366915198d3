"""
Base exception classes for application-wide error handling.

This module provides the error taxonomy shared by every domain app:
- Consistent, machine-readable error codes
- Structured details for logging and operator tooling
- A clear split between errors that must be acknowledged and errors
  that are worth retrying

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Bad input (never retried)
    ├── NotFoundError - Referenced entity absent (logged, acknowledged)
    ├── ConflictError - Illegal state transition or concurrent modification
    ├── TransientError - Downstream collaborator unavailable (retry later)
    ├── PolicyExhaustedError - A bounded policy ran out of steps
    └── ExternalServiceError - Third-party service failures

Usage:
    from core.exceptions import NotFoundError, ValidationError

    # Raise with message only
    raise ValidationError("Unknown jurisdiction 'ZZ'")

    # Raise with error code for operator tooling
    raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND")

    # Raise with additional details
    raise ConflictError(
        "Cannot cancel a cancelled subscription",
        error_code="INVALID_STATE_TRANSITION",
        details={"current_state": "cancelled", "transition": "cancel"},
    )

Note:
    PolicyExhaustedError is not a failure from the caller's point of view.
    It marks the deliberate terminal step of a bounded process (for
    example the last dunning retry) and is normally caught by the policy
    owner and turned into a terminal decision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (identifiers, amounts, states)

    Example:
        try:
            OrderService.apply_payment_succeeded("pi_123")
        except NotFoundError as e:
            logger.warning(f"Order missing: {e.error_code}")
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API responses and log records.

        Returns:
            Dict with error, error_code, and details keys

        Example:
            {
                "error": "Order not found",
                "error_code": "ORDER_NOT_FOUND",
                "details": {"payment_ref": "pi_123"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails.

    Use for:
    - Unknown jurisdiction codes
    - Negative or non-integer amounts
    - Malformed webhook payloads
    - Business rule violations on input

    Validation failures are rejected immediately and never retried;
    replaying the same input can only produce the same error.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a referenced entity does not exist.

    Example:
        order = Order.objects.filter(provider_payment_ref=ref).first()
        if not order:
            raise NotFoundError(
                f"No order for payment {ref}",
                error_code="ORDER_NOT_FOUND",
                details={"payment_ref": ref},
            )

    Note:
        The payment provider may reference objects created by another
        integration. Webhook handling logs and acknowledges these.
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Invalid state transitions (cancelling a cancelled subscription)
    - Optimistic locking failures
    - Duplicate application of an already-applied event

    Note:
        HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"


class TransientError(BaseApplicationError):
    """
    Raised when a downstream dependency is temporarily unavailable.

    Use for:
    - Database write failures
    - Lock contention that may clear on retry
    - Provider outages and timeouts

    Webhook processing reports these back to the provider as failures so
    the event is redelivered later.
    """

    default_error_code: str = "TRANSIENT_ERROR"


class PolicyExhaustedError(BaseApplicationError):
    """
    Raised when a bounded policy has no further steps.

    Example:
        try:
            run_at = policy.run_at(attempt_number=4, previous=last_run)
        except PolicyExhaustedError:
            return cancel_subscription_decision()
    """

    default_error_code: str = "POLICY_EXHAUSTED"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Use for:
    - Third-party API failures (Stripe)
    - Network timeouts
    - External service unavailability

    Example:
        raise ExternalServiceError(
            "Payment provider unavailable",
            error_code="PROVIDER_UNAVAILABLE",
            details={"service": "stripe", "status_code": 503},
        )
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
